"""Update validation for the market.

``validate_update`` runs after an order has been staged (collateral applied,
order enqueued) and before anything is committed. Checks run in a fixed order
and the first failure raises; callers rely on that order when two conditions
hold at once.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import (
    ClosedError,
    EfficiencyUnderLimitError,
    InsufficientCollateralError,
    InsufficientLiquidityError,
    InsufficientMarginError,
    MakerOverLimitError,
    NotSingleSidedError,
    OutstandingDeficitError,
    OverCloseError,
    PendingIdLimitError,
    ProtectedError,
    SettleOnlyError,
    StalePriceError,
)
from .liquidation import is_margined, validate_protection
from .math import UNIT
from .orders import (
    decreases_efficiency,
    decreases_liquidity,
    increases_maker,
    increases_position,
    is_empty,
    liquidity_check_applicable,
    negative,
    window_exceeded,
)
from .params import MarketParameter, RiskParameter
from .types import Global, Local, Order, Position


@dataclass(frozen=True)
class UpdateContext:
    order: Order
    local: Local
    latest: Position
    current: Position
    global_: Global
    global_current: Position
    protected_pending: bool
    had_pending: bool
    price: int
    latest_timestamp: int
    current_timestamp: int
    risk: RiskParameter
    market: MarketParameter


# -- Individual checks -------------------------------------------------------

def check_mode(ctx: UpdateContext) -> None:
    order = ctx.order
    if is_empty(order) and order.collateral == 0 and not order.protection:
        return
    if ctx.protected_pending:
        raise ProtectedError("account has a pending liquidation")
    if ctx.market.settle:
        raise SettleOnlyError()
    if ctx.market.closed and increases_position(order):
        raise ClosedError()
    if ctx.local.deficit > 0 and increases_position(order):
        raise OutstandingDeficitError()


def check_stale(ctx: UpdateContext) -> None:
    if ctx.order.protection or is_empty(ctx.order):
        return
    if ctx.current_timestamp - ctx.latest_timestamp >= ctx.risk.stale_after:
        raise StalePriceError()


def check_pending_window(ctx: UpdateContext) -> None:
    if window_exceeded(ctx.local, ctx.market.max_pending_local):
        raise PendingIdLimitError("local pending window exceeded")
    if window_exceeded(ctx.global_, ctx.market.max_pending_global):
        raise PendingIdLimitError("global pending window exceeded")


def check_shape(ctx: UpdateContext) -> None:
    if negative(ctx.current) or negative(ctx.global_current):
        raise OverCloseError()
    if not ctx.current.single_sided:
        raise NotSingleSidedError()
    if ctx.latest.empty or ctx.current.empty or ctx.latest.side is ctx.current.side:
        return
    # Switching sides is only allowed as a single closing-and-opening order.
    if ctx.had_pending:
        raise NotSingleSidedError("side change with other pending orders")


def check_liquidity(ctx: UpdateContext) -> None:
    order = ctx.order
    pos = ctx.global_current
    if is_empty(order):
        return
    if increases_maker(order) and pos.maker > ctx.risk.maker_limit:
        raise MakerOverLimitError()
    if not liquidity_check_applicable(order, ctx.market):
        return
    if decreases_efficiency(order, pos) and pos.maker * UNIT < ctx.risk.efficiency_limit * (pos.long + pos.short):
        raise EfficiencyUnderLimitError()
    if decreases_liquidity(order, pos) and pos.socialized:
        raise InsufficientLiquidityError()


def check_collateral(ctx: UpdateContext) -> None:
    order = ctx.order
    if order.collateral < 0 and ctx.local.collateral < 0:
        raise InsufficientCollateralError()
    if order.protection:
        return
    if is_empty(order) and order.collateral >= 0:
        return
    if not is_margined(ctx.current, ctx.price, ctx.local.collateral, ctx.risk):
        raise InsufficientMarginError()


# -- Entry point -------------------------------------------------------------

def validate_update(ctx: UpdateContext) -> None:
    """Raise the first ``MarketError`` that rejects the staged update."""
    check_mode(ctx)
    if ctx.order.protection:
        validate_protection(ctx.latest, ctx.current, ctx.order, ctx.price, ctx.local.collateral, ctx.risk)
    check_stale(ctx)
    check_pending_window(ctx)
    check_shape(ctx)
    check_liquidity(ctx)
    check_collateral(ctx)
