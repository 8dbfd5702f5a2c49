"""Data types for the market accounting core.

All ledger types are frozen dataclasses updated with ``dataclasses.replace``.

Units/conventions:
- every quantity is an int scaled by ``math.UNIT`` (1e6);
- position sizes (``maker``/``long``/``short``) are unsigned;
- order deltas are split into unsigned ``*_pos``/``*_neg`` components;
- ``collateral`` values are signed;
- ``*_value`` fields of ``Version`` are cumulative per-unit accumulators.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, unique


@unique
class Side(Enum):
    MAKER = "maker"
    LONG = "long"
    SHORT = "short"


@unique
class Event(Enum):
    """One member per emitted fact."""
    ORDER_CREATED = "OrderCreated"
    POSITION_PROCESSED = "PositionProcessed"
    ACCOUNT_POSITION_PROCESSED = "AccountPositionProcessed"
    FEE_CLAIMED = "FeeClaimed"
    PARAMETER_UPDATED = "ParameterUpdated"


# -- Oracle ------------------------------------------------------------------

@dataclass(frozen=True)
class OracleVersion:
    timestamp: int = 0
    price: int = 0
    valid: bool = False


@dataclass(frozen=True)
class OracleReceipt:
    """Per-timestamp oracle charges: a flat settlement fee and a share of the market fee."""
    settlement_fee: int = 0
    oracle_fee: int = 0


# -- Positions and orders ----------------------------------------------------

@dataclass(frozen=True)
class Position:
    timestamp: int = 0
    maker: int = 0
    long: int = 0
    short: int = 0

    @property
    def magnitude(self) -> int:
        return max(self.maker, self.long, self.short)

    @property
    def major(self) -> int:
        return max(self.long, self.short)

    @property
    def minor(self) -> int:
        return min(self.long, self.short)

    @property
    def skew(self) -> int:
        return self.long - self.short

    @property
    def empty(self) -> bool:
        return self.maker == 0 and self.long == 0 and self.short == 0

    @property
    def single_sided(self) -> bool:
        return sum(1 for v in (self.maker, self.long, self.short) if v != 0) <= 1

    @property
    def socialized(self) -> bool:
        """True when makers plus the minor side cannot back the major side."""
        return self.maker + self.minor < self.major

    @property
    def side(self) -> Side | None:
        if self.maker:
            return Side.MAKER
        if self.long:
            return Side.LONG
        if self.short:
            return Side.SHORT
        return None


@dataclass(frozen=True)
class Order:
    timestamp: int = 0
    orders: int = 0
    collateral: int = 0
    maker_pos: int = 0
    maker_neg: int = 0
    long_pos: int = 0
    long_neg: int = 0
    short_pos: int = 0
    short_neg: int = 0
    protection: int = 0
    maker_referral: int = 0
    taker_referral: int = 0

    @property
    def maker_total(self) -> int:
        return self.maker_pos + self.maker_neg

    @property
    def taker_total(self) -> int:
        return self.long_pos + self.long_neg + self.short_pos + self.short_neg

    @property
    def taker_pos(self) -> int:
        """Taker quantity that pushes skew up (buys)."""
        return self.long_pos + self.short_neg

    @property
    def taker_neg(self) -> int:
        """Taker quantity that pushes skew down (sells)."""
        return self.short_pos + self.long_neg

    @property
    def pos(self) -> int:
        return self.maker_pos + self.long_pos + self.short_pos

    @property
    def neg(self) -> int:
        return self.maker_neg + self.long_neg + self.short_neg


@dataclass(frozen=True)
class Guarantee:
    """Price and fee terms locked in by an intent fill."""
    orders: int = 0
    notional: int = 0
    long_pos: int = 0
    long_neg: int = 0
    short_pos: int = 0
    short_neg: int = 0
    taker_fee: int = 0
    referral: int = 0

    @property
    def taker_pos(self) -> int:
        return self.long_pos + self.short_neg

    @property
    def taker_neg(self) -> int:
        return self.short_pos + self.long_neg

    @property
    def taker(self) -> int:
        """Signed net taker quantity (long positive)."""
        return self.long_pos - self.long_neg - self.short_pos + self.short_neg


# -- Ledger heads ------------------------------------------------------------

@dataclass(frozen=True)
class Local:
    current_id: int = 0
    latest_id: int = 0
    collateral: int = 0
    claimable: int = 0
    deficit: int = 0


@dataclass(frozen=True)
class Global:
    current_id: int = 0
    latest_id: int = 0
    latest_price: int = 0
    protocol_fee: int = 0
    oracle_fee: int = 0
    risk_fee: int = 0
    donation: int = 0
    p_value: int = 0
    deficit_long: int = 0
    deficit_short: int = 0
    deficit_maker: int = 0

    @property
    def deficit(self) -> int:
        return self.deficit_long + self.deficit_short + self.deficit_maker


@dataclass(frozen=True)
class Version:
    valid: bool = False
    price: int = 0
    maker_value: int = 0
    long_value: int = 0
    short_value: int = 0
    maker_fee: int = 0
    taker_fee: int = 0
    spread_pos: int = 0
    spread_neg: int = 0
    settlement_fee: int = 0
    liquidation_fee: int = 0


@dataclass(frozen=True)
class Checkpoint:
    collateral: int = 0
    transfer: int = 0
    trade_fee: int = 0
    settlement_fee: int = 0


# -- Intents -----------------------------------------------------------------

@dataclass(frozen=True)
class Common:
    account: str
    signer: str
    domain: str
    nonce: int
    group: int = 0
    expiry: int = 0


@dataclass(frozen=True)
class Intent:
    amount: int
    price: int
    fee: int
    originator: str | None
    solver: str | None
    collateralization: int
    common: Common


@dataclass(frozen=True)
class Authorization:
    is_operator: bool
    is_signer: bool
    referral_fee: int = 0


# -- Accumulation results ----------------------------------------------------

@dataclass(frozen=True)
class VersionAccumulationResult:
    trade_fee: int = 0
    subtractive_fee: int = 0
    spread_pos: int = 0
    spread_neg: int = 0
    spread_maker: int = 0
    spread_market: int = 0
    funding_maker: int = 0
    funding_long: int = 0
    funding_short: int = 0
    funding_fee: int = 0
    interest_maker: int = 0
    interest_long: int = 0
    interest_short: int = 0
    interest_fee: int = 0
    pnl_maker: int = 0
    pnl_long: int = 0
    pnl_short: int = 0
    settlement_fee: int = 0
    socialized_deficit: int = 0

    @property
    def market_fee(self) -> int:
        return self.trade_fee + self.spread_market + self.funding_fee + self.interest_fee


@dataclass(frozen=True)
class CheckpointAccumulationResult:
    collateral: int = 0
    price_override: int = 0
    trade_fee: int = 0
    spread: int = 0
    settlement_fee: int = 0
    liquidation_fee: int = 0
    subtractive_fee: int = 0
    guarantee_referral_fee: int = 0

    @property
    def total(self) -> int:
        """Net collateral change for the account."""
        return (
            self.collateral
            + self.price_override
            - self.trade_fee
            - self.spread
            - self.settlement_fee
            - self.liquidation_fee
        )


# -- Emitted events ----------------------------------------------------------

@dataclass(frozen=True)
class OrderCreated:
    account: str
    order_id: int
    order: Order
    guarantee: Guarantee = Guarantee()
    liquidator: str | None = None
    referrer: str | None = None
    originator: str | None = None
    solver: str | None = None
    event: Event = field(default=Event.ORDER_CREATED, init=False)


@dataclass(frozen=True)
class PositionProcessed:
    order_id: int
    timestamp: int
    order: Order
    result: VersionAccumulationResult
    event: Event = field(default=Event.POSITION_PROCESSED, init=False)


@dataclass(frozen=True)
class AccountPositionProcessed:
    account: str
    order_id: int
    timestamp: int
    order: Order
    result: CheckpointAccumulationResult
    event: Event = field(default=Event.ACCOUNT_POSITION_PROCESSED, init=False)


@dataclass(frozen=True)
class FeeClaimed:
    account: str
    receiver: str
    amount: int
    event: Event = field(default=Event.FEE_CLAIMED, init=False)


@dataclass(frozen=True)
class ParameterUpdated:
    kind: str
    sender: str
    event: Event = field(default=Event.PARAMETER_UPDATED, init=False)


MarketEvent = OrderCreated | PositionProcessed | AccountPositionProcessed | FeeClaimed | ParameterUpdated
