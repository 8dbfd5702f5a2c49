"""Exception types for the market accounting core.

Every failure aborts the whole call: the facade works on a staged copy of the
state, so a raised ``MarketError`` leaves the committed state untouched.
``code`` is a stable identifier usable in logs and replay output.
"""

from __future__ import annotations


class MarketError(Exception):
    """Base class for every rejection raised by the market."""

    code = "market_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)


# -- (a) margin / solvency ---------------------------------------------------

class MarginError(MarketError):
    code = "margin"


class InsufficientMarginError(MarginError):
    code = "insufficient_margin"


class InsufficientCollateralError(MarginError):
    code = "insufficient_collateral"


# -- (b) policy limits -------------------------------------------------------

class PolicyError(MarketError):
    code = "policy"


class MakerOverLimitError(PolicyError):
    code = "maker_over_limit"


class EfficiencyUnderLimitError(PolicyError):
    code = "efficiency_under_limit"


class InsufficientLiquidityError(PolicyError):
    code = "insufficient_liquidity"


class PendingIdLimitError(PolicyError):
    code = "pending_id_limit"


class OverCloseError(PolicyError):
    code = "over_close"


class NotSingleSidedError(PolicyError):
    code = "not_single_sided"


class SettleOnlyError(PolicyError):
    code = "settle_only"


class ClosedError(PolicyError):
    code = "closed"


class ProtectedError(PolicyError):
    code = "protected"


class OutstandingDeficitError(PolicyError):
    code = "outstanding_deficit"


# -- (c) staleness / validity ------------------------------------------------

class ValidityError(MarketError):
    code = "validity"


class StalePriceError(ValidityError):
    code = "stale_price"


class InvalidProtectionError(ValidityError):
    code = "invalid_protection"


# -- (d) authorization -------------------------------------------------------

class AuthorizationError(MarketError):
    code = "authorization"


class OperatorNotAllowedError(AuthorizationError):
    code = "operator_not_allowed"


class SignerNotAllowedError(AuthorizationError):
    code = "signer_not_allowed"


class NotOwnerError(AuthorizationError):
    code = "not_owner"


class NotCoordinatorError(AuthorizationError):
    code = "not_coordinator"


class PausedError(AuthorizationError):
    code = "paused"


class ReentrancyError(AuthorizationError):
    code = "reentrancy"


# -- (e) referral / intent ---------------------------------------------------

class IntentError(MarketError):
    code = "intent"


class InvalidReferrerError(IntentError):
    code = "invalid_referrer"


class InvalidIntentError(IntentError):
    code = "invalid_intent"


class InvalidIntentFeeError(IntentError):
    code = "invalid_intent_fee"


class IntentPriceDeviationError(IntentError):
    code = "intent_price_deviation"


class InsufficientCollateralizationError(IntentError):
    code = "insufficient_collateralization"


# -- configuration / internal ------------------------------------------------

class ParameterError(MarketError):
    """Raised when a parameter set is outside its protocol-defined bounds."""

    code = "invalid_parameter"


class MarketInvariantError(MarketError):
    """Raised when a post-state violates one or more invariants."""

    code = "invariant"

    def __init__(self, violations: list[str]) -> None:
        self.violations = violations
        super().__init__(f"invariant violations: {', '.join(violations)}")
