"""`market`: pure-Python accounting core of a perpetual futures market.

- deterministic, integer-only fixed-point arithmetic (``math.UNIT`` = 1e6),
- immutable ledger records (frozen dataclasses),
- pull-based settlement against an append-only, timestamp-ordered version log,
- atomic entry points with fail-closed guards and invariant checks.

Public API:
- `Market(oracle, registry, verifier, transfer, risk, parameter)`
- `Market.update / update_intent / settle / close / claim_fee`
- `load_parameters(path) -> ParameterSet`
"""

from .engine import Market
from .errors import (
    AuthorizationError,
    IntentError,
    MarginError,
    MarketError,
    MarketInvariantError,
    ParameterError,
    PolicyError,
    ValidityError,
)
from .params import (
    MarketParameter,
    ParameterSet,
    PController,
    ProtocolParameter,
    RiskParameter,
    SpreadCurve,
    UtilizationCurve,
    load_parameters,
    parameters_from_dict,
)
from .state import MarketState, initial_state, state_from_dict, state_to_dict
from .types import (
    Checkpoint,
    Common,
    Event,
    Global,
    Guarantee,
    Intent,
    Local,
    OracleReceipt,
    OracleVersion,
    Order,
    Position,
    Version,
)

__all__ = [
    "Market",
    "MarketState",
    "initial_state",
    "state_from_dict",
    "state_to_dict",
    "load_parameters",
    "parameters_from_dict",
    "MarketParameter",
    "ParameterSet",
    "PController",
    "ProtocolParameter",
    "RiskParameter",
    "SpreadCurve",
    "UtilizationCurve",
    "Checkpoint",
    "Common",
    "Event",
    "Global",
    "Guarantee",
    "Intent",
    "Local",
    "OracleReceipt",
    "OracleVersion",
    "Order",
    "Position",
    "Version",
    "MarketError",
    "MarginError",
    "PolicyError",
    "ValidityError",
    "AuthorizationError",
    "IntentError",
    "ParameterError",
    "MarketInvariantError",
]
