"""Margin requirements, liquidation and shortfall handling.

A liquidation is a protected order submitted by any sender against an account
that fails its maintenance requirement at the latest settled price. The order
must close the account's whole position, except that a pure maker position may
instead be reduced by exactly ``maker_close_amount``.

The liquidation fee is credited to the liquidator when the order settles. It is
funded from the market's donation pool first and from the account second. Any
collateral still negative afterwards is floored at zero, recorded as the
account's deficit and queued for socialization against the opposing aggregate
position at the next valid version.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from .errors import InvalidProtectionError
from .math import clamp, mul_up
from .params import RiskParameter
from .types import Global, Local, Order, Position, Side, Version

logger = logging.getLogger(__name__)


# -- Requirements ------------------------------------------------------------

def margin_required(position: Position, price: int, risk: RiskParameter) -> int:
    """``max(min_margin, margin * notional)``; zero for an empty position."""
    if position.empty:
        return 0
    return max(risk.min_margin, mul_up(mul_up(position.magnitude, price), risk.margin))


def maintenance_required(position: Position, price: int, risk: RiskParameter) -> int:
    """``max(min_maintenance, maintenance * notional)``; zero for an empty position."""
    if position.empty:
        return 0
    return max(risk.min_maintenance, mul_up(mul_up(position.magnitude, price), risk.maintenance))


def is_margined(position: Position, price: int, collateral: int, risk: RiskParameter) -> bool:
    return collateral >= margin_required(position, price, risk)


def is_maintained(position: Position, price: int, collateral: int, risk: RiskParameter) -> bool:
    return collateral >= maintenance_required(position, price, risk)


def maker_close_amount(position: Position, price: int, collateral: int, risk: RiskParameter) -> int:
    """Smallest maker reduction after which *collateral* meets maintenance."""
    if is_maintained(position, price, collateral, risk):
        return 0
    if collateral < risk.min_maintenance or price == 0 or risk.maintenance == 0:
        return position.maker

    # Largest remaining size whose maintenance fits; start from the exact
    # quotient and correct for the rounding inside maintenance_required.
    remaining = min(position.maker, collateral * 10**12 // (price * risk.maintenance))
    while remaining > 0 and not is_maintained(replace(position, maker=remaining), price, collateral, risk):
        remaining -= 1
    while remaining < position.maker and is_maintained(replace(position, maker=remaining + 1), price, collateral, risk):
        remaining += 1
    return position.maker - remaining


# -- Protection --------------------------------------------------------------

def validate_protection(
    latest: Position,
    current: Position,
    order: Order,
    price: int,
    collateral: int,
    risk: RiskParameter,
) -> None:
    """Raise ``InvalidProtectionError`` unless *order* is a valid liquidation.

    *latest* is the settled position, *current* the position after every
    pending order including *order*.
    """
    if is_maintained(latest, price, collateral, risk):
        raise InvalidProtectionError("account is maintained")
    if order.collateral != 0:
        raise InvalidProtectionError("liquidation may not move collateral")
    if current.empty:
        return
    if latest.side is Side.MAKER and current.long == 0 and current.short == 0:
        expected = latest.maker - maker_close_amount(latest, price, collateral, risk)
        if current.maker == expected:
            return
    raise InvalidProtectionError("liquidation must close the position")


def liquidation_fee(order: Order, version: Version, risk: RiskParameter) -> int:
    """Fee for the quantity *order* closes, within the configured bounds."""
    if not order.protection:
        return 0
    return clamp(mul_up(order.neg, version.liquidation_fee), risk.min_liquidation_fee, risk.max_liquidation_fee)


def fund_liquidation_fee(g: Global, fee: int) -> tuple[Global, int]:
    """Draw *fee* from the donation pool first; returns the part left to the account."""
    from_pool = min(fee, max(g.donation, 0))
    return replace(g, donation=g.donation - from_pool), fee - from_pool


# -- Shortfall ---------------------------------------------------------------

def resolve_shortfall(local: Local, g: Global, side: Side | None) -> tuple[Local, Global, int]:
    """Floor negative collateral at zero and queue the deficit for socialization.

    Returns the updated heads and the shortfall amount (zero when solvent).
    """
    if local.collateral >= 0:
        return local, g, 0
    shortfall = -local.collateral
    local = replace(local, collateral=0, deficit=local.deficit + shortfall)
    if side is Side.LONG:
        g = replace(g, deficit_long=g.deficit_long + shortfall)
    elif side is Side.SHORT:
        g = replace(g, deficit_short=g.deficit_short + shortfall)
    else:
        g = replace(g, deficit_maker=g.deficit_maker + shortfall)
    return local, g, shortfall


def repay_deficit(local: Local, g: Global, deposit: int) -> tuple[Local, Global, int]:
    """Apply a deposit to an outstanding deficit first.

    Returns the updated heads and the part of *deposit* left for collateral.
    """
    if deposit <= 0 or local.deficit == 0:
        return local, g, deposit
    repaid = min(deposit, local.deficit)
    local = replace(local, deficit=local.deficit - repaid)
    g = replace(g, donation=g.donation + repaid)
    return local, g, deposit - repaid