"""Market state aggregate, construction and serialization.

``MarketState`` is the single owner of every mutable ledger structure. The
facade stages each call on copy-on-write views (``stage``) and folds them
back in on success (``commit``).
Per-account maps are keyed by account name; version and checkpoint maps are
keyed by oracle timestamp; pending maps by order id.

Round-trip property (tested): ``state_from_dict(state_to_dict(s)) == s``.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Mapping

from .orders import apply_all, pending_orders
from .params import MarketParameter, PController, RiskParameter, SpreadCurve, UtilizationCurve
from .staging import AppendLog, Overlay
from .types import Checkpoint, Global, Guarantee, Local, OracleVersion, Order, Position, Version


@dataclass
class MarketState:
    risk: RiskParameter
    market: MarketParameter
    global_: Global = Global()
    position: Position = Position()
    latest_oracle: OracleVersion = OracleVersion()
    pending: dict[int, Order] = field(default_factory=dict)
    pending_guarantees: dict[int, Guarantee] = field(default_factory=dict)
    carry: Order = Order()
    carry_guarantee: Guarantee = Guarantee()
    versions: dict[int, Version] = field(default_factory=dict)
    version_log: list[int] = field(default_factory=list)
    locals: dict[str, Local] = field(default_factory=dict)
    positions: dict[str, Position] = field(default_factory=dict)
    local_pending: dict[str, dict[int, Order]] = field(default_factory=dict)
    local_guarantees: dict[str, dict[int, Guarantee]] = field(default_factory=dict)
    local_carry: dict[str, Order] = field(default_factory=dict)
    local_carry_guarantee: dict[str, Guarantee] = field(default_factory=dict)
    # Ids whose position part is folded into local_carry, oldest first.
    local_carry_ids: dict[str, tuple[int, ...]] = field(default_factory=dict)
    checkpoints: dict[str, dict[int, Checkpoint]] = field(default_factory=dict)
    liquidators: dict[str, dict[int, str]] = field(default_factory=dict)
    referrers: dict[str, dict[int, str]] = field(default_factory=dict)
    originators: dict[str, dict[int, str]] = field(default_factory=dict)
    solvers: dict[str, dict[int, str]] = field(default_factory=dict)
    coordinator: str | None = None
    beneficiary: str | None = None


def initial_state(
    risk: RiskParameter,
    market: MarketParameter,
    coordinator: str | None = None,
    beneficiary: str | None = None,
) -> MarketState:
    return MarketState(risk=risk, market=market, coordinator=coordinator, beneficiary=beneficiary)


def stage(state: MarketState) -> MarketState:
    """A staged view of *state*: containers are wrapped, records are shared."""
    values = {}
    for f in dataclasses.fields(state):
        value = getattr(state, f.name)
        if isinstance(value, dict):
            value = Overlay(value)
        elif isinstance(value, list):
            value = AppendLog(value)
        values[f.name] = value
    return MarketState(**values)


def commit_staged(staged: MarketState, state: MarketState) -> None:
    """Fold the changes buffered in *staged* into *state*."""
    for f in dataclasses.fields(staged):
        value = getattr(staged, f.name)
        if isinstance(value, (Overlay, AppendLog)):
            value.merge()
        else:
            setattr(state, f.name, value)


# -- Accessors ---------------------------------------------------------------

def local_of(state: MarketState, account: str) -> Local:
    return state.locals.get(account, Local())


def position_of(state: MarketState, account: str) -> Position:
    return state.positions.get(account, Position())


def current_position(state: MarketState, account: str) -> Position:
    """Settled position plus every pending and carried delta."""
    local = local_of(state, account)
    orders = pending_orders(local, state.local_pending.get(account, {}))
    carry = state.local_carry.get(account)
    if carry is not None:
        orders.append(carry)
    return apply_all(position_of(state, account), orders)


def global_current_position(state: MarketState) -> Position:
    orders = pending_orders(state.global_, state.pending)
    orders.append(state.carry)
    return apply_all(state.position, orders)


# -- Serialization -----------------------------------------------------------

_NESTED_PARAMS = {"spread": SpreadCurve, "utilization_curve": UtilizationCurve, "p_controller": PController}


def _encode(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return {f.name: _encode(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(k): _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _record(cls: type, d: Mapping[str, Any]) -> Any:
    return cls(**{f.name: d[f.name] for f in dataclasses.fields(cls)})


def _params(cls: type, d: Mapping[str, Any]) -> Any:
    kwargs = {}
    for f in dataclasses.fields(cls):
        val = d[f.name]
        kwargs[f.name] = _record(_NESTED_PARAMS[f.name], val) if f.name in _NESTED_PARAMS else val
    return cls(**kwargs)


def _by_id(cls: type, d: Mapping[str, Any]) -> dict[int, Any]:
    return {int(k): _record(cls, v) for k, v in d.items()}


def _per_account(cls: type, d: Mapping[str, Any]) -> dict[str, dict[int, Any]]:
    return {account: _by_id(cls, inner) for account, inner in d.items()}


def _names(d: Mapping[str, Any]) -> dict[str, dict[int, str]]:
    return {account: {int(k): v for k, v in inner.items()} for account, inner in d.items()}


def state_to_dict(state: MarketState) -> dict[str, Any]:
    """Serialize to plain JSON-compatible data (string keys, ints, bools)."""
    return _encode(state)


def state_from_dict(d: Mapping[str, Any]) -> MarketState:
    """Deserialize the output of ``state_to_dict``. Raises KeyError on missing fields."""
    return MarketState(
        risk=_params(RiskParameter, d["risk"]),
        market=_record(MarketParameter, d["market"]),
        global_=_record(Global, d["global_"]),
        position=_record(Position, d["position"]),
        latest_oracle=_record(OracleVersion, d["latest_oracle"]),
        pending=_by_id(Order, d["pending"]),
        pending_guarantees=_by_id(Guarantee, d["pending_guarantees"]),
        carry=_record(Order, d["carry"]),
        carry_guarantee=_record(Guarantee, d["carry_guarantee"]),
        versions=_by_id(Version, d["versions"]),
        version_log=[int(t) for t in d["version_log"]],
        locals={a: _record(Local, v) for a, v in d["locals"].items()},
        positions={a: _record(Position, v) for a, v in d["positions"].items()},
        local_pending=_per_account(Order, d["local_pending"]),
        local_guarantees=_per_account(Guarantee, d["local_guarantees"]),
        local_carry={a: _record(Order, v) for a, v in d["local_carry"].items()},
        local_carry_guarantee={a: _record(Guarantee, v) for a, v in d["local_carry_guarantee"].items()},
        local_carry_ids={a: tuple(int(i) for i in ids) for a, ids in d["local_carry_ids"].items()},
        checkpoints=_per_account(Checkpoint, d["checkpoints"]),
        liquidators=_names(d["liquidators"]),
        referrers=_names(d["referrers"]),
        originators=_names(d["originators"]),
        solvers=_names(d["solvers"]),
        coordinator=d["coordinator"],
        beneficiary=d["beneficiary"],
    )
