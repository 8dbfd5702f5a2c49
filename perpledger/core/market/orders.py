"""Order algebra and the pending order queue.

Orders are unsigned deltas. The queue is a plain ``dict[int, Order]`` keyed by
id together with a ledger head (``Local`` or ``Global``) whose ``current_id``
names the newest order and ``latest_id`` the newest settled one.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, TypeVar

from .math import mul
from .params import MarketParameter
from .types import Global, Guarantee, Local, Order, Position

Head = TypeVar("Head", Local, Global)


# -- Construction ------------------------------------------------------------

def _finish(order: Order, referral_fee: int) -> Order:
    return replace(
        order,
        orders=0 if is_empty(order) else 1,
        maker_referral=mul(order.maker_total, referral_fee),
        taker_referral=mul(order.taker_total, referral_fee),
    )


def order_from_deltas(
    timestamp: int,
    maker: int = 0,
    long: int = 0,
    short: int = 0,
    collateral: int = 0,
    protect: bool = False,
    referral_fee: int = 0,
) -> Order:
    """Order for explicit signed per-side deltas."""
    order = Order(
        timestamp=timestamp,
        collateral=collateral,
        maker_pos=max(maker, 0),
        maker_neg=max(-maker, 0),
        long_pos=max(long, 0),
        long_neg=max(-long, 0),
        short_pos=max(short, 0),
        short_neg=max(-short, 0),
        protection=1 if protect else 0,
    )
    return _finish(order, referral_fee)


def order_from_taker(
    timestamp: int,
    position: Position,
    maker: int,
    taker: int,
    collateral: int = 0,
    protect: bool = False,
    referral_fee: int = 0,
) -> Order:
    """Order for a signed taker amount (long positive).

    The opposite side of *position* is closed first; any remainder opens the
    requested side.
    """
    long_pos = long_neg = short_pos = short_neg = 0
    if taker > 0:
        short_neg = min(position.short, taker)
        long_pos = taker - short_neg
    elif taker < 0:
        long_neg = min(position.long, -taker)
        short_pos = -taker - long_neg
    order = Order(
        timestamp=timestamp,
        collateral=collateral,
        maker_pos=max(maker, 0),
        maker_neg=max(-maker, 0),
        long_pos=long_pos,
        long_neg=long_neg,
        short_pos=short_pos,
        short_neg=short_neg,
        protection=1 if protect else 0,
    )
    return _finish(order, referral_fee)


# -- Predicates --------------------------------------------------------------

def is_empty(order: Order) -> bool:
    """True when the order changes no position."""
    return order.pos == 0 and order.neg == 0


def increases_position(order: Order) -> bool:
    return order.pos > 0


def increases_maker(order: Order) -> bool:
    return order.maker_pos > 0


def increases_taker(order: Order) -> bool:
    return order.long_pos > 0 or order.short_pos > 0


def net_maker(order: Order) -> int:
    return order.maker_pos - order.maker_neg


def net_long(order: Order) -> int:
    return order.long_pos - order.long_neg


def net_short(order: Order) -> int:
    return order.short_pos - order.short_neg


def crosses_zero(order: Order) -> bool:
    """True when the order closes one side and opens another."""
    opened = {i for i, v in enumerate((order.maker_pos, order.long_pos, order.short_pos)) if v}
    closed = {i for i, v in enumerate((order.maker_neg, order.long_neg, order.short_neg)) if v}
    return bool(opened) and bool(closed) and opened != closed


def decreases_liquidity(order: Order, current: Position) -> bool:
    """True when the order removes makers or widens the skew of *current*.

    *current* already includes the order.
    """
    prior_skew = current.skew - net_long(order) + net_short(order)
    return order.maker_neg > order.maker_pos or abs(current.skew) > abs(prior_skew)


def decreases_efficiency(order: Order, current: Position) -> bool:
    """True when the order lowers ``maker / (long + short)`` of *current*."""
    taker_now = current.long + current.short
    taker_before = taker_now - net_long(order) - net_short(order)
    return order.maker_neg > order.maker_pos or taker_now > taker_before


def liquidity_check_applicable(order: Order, market: MarketParameter) -> bool:
    """False when a close-always mode exempts this (closing) order from liquidity checks."""
    if market.closed:
        return False
    maker_ok = order.maker_total == 0 or not market.maker_close_always or increases_maker(order)
    taker_ok = order.taker_total == 0 or not market.taker_close_always or increases_taker(order)
    return maker_ok and taker_ok


# -- Combination -------------------------------------------------------------

def add(a: Order, b: Order) -> Order:
    """Coalesce two orders targeting the same timestamp."""
    return Order(
        timestamp=a.timestamp or b.timestamp,
        orders=a.orders + b.orders,
        collateral=a.collateral + b.collateral,
        maker_pos=a.maker_pos + b.maker_pos,
        maker_neg=a.maker_neg + b.maker_neg,
        long_pos=a.long_pos + b.long_pos,
        long_neg=a.long_neg + b.long_neg,
        short_pos=a.short_pos + b.short_pos,
        short_neg=a.short_neg + b.short_neg,
        protection=max(a.protection, b.protection),
        maker_referral=a.maker_referral + b.maker_referral,
        taker_referral=a.taker_referral + b.taker_referral,
    )


def add_guarantee(a: Guarantee, b: Guarantee) -> Guarantee:
    return Guarantee(
        orders=a.orders + b.orders,
        notional=a.notional + b.notional,
        long_pos=a.long_pos + b.long_pos,
        long_neg=a.long_neg + b.long_neg,
        short_pos=a.short_pos + b.short_pos,
        short_neg=a.short_neg + b.short_neg,
        taker_fee=a.taker_fee + b.taker_fee,
        referral=a.referral + b.referral,
    )


def settled_part(order: Order) -> Order:
    """The part of *order* that settles even at an invalid version."""
    return Order(timestamp=order.timestamp, orders=order.orders, collateral=order.collateral)


def carry_part(order: Order) -> Order:
    """The position part of *order*, carried past an invalid version."""
    return replace(order, orders=0, collateral=0)


def apply(position: Position, order: Order, timestamp: int | None = None) -> Position:
    return Position(
        timestamp=position.timestamp if timestamp is None else timestamp,
        maker=position.maker + net_maker(order),
        long=position.long + net_long(order),
        short=position.short + net_short(order),
    )


def apply_all(position: Position, orders: Iterable[Order]) -> Position:
    for order in orders:
        position = apply(position, order)
    return position


def negative(position: Position) -> bool:
    return position.maker < 0 or position.long < 0 or position.short < 0


# -- Queue -------------------------------------------------------------------

def pending_ids(head: Local | Global) -> range:
    return range(head.latest_id + 1, head.current_id + 1)


def pending_orders(head: Local | Global, pending: dict[int, Order]) -> list[Order]:
    return [pending[i] for i in pending_ids(head)]


def enqueue(head: Head, pending: dict[int, Order], order: Order) -> tuple[Head, int, Order]:
    """Schedule *order* behind the queue described by *head*.

    Returns the new head, the id the order landed on and the (possibly
    coalesced) order to store under that id.
    """
    cid = head.current_id
    if cid > head.latest_id and pending[cid].timestamp == order.timestamp:
        return head, cid, add(pending[cid], order)
    return replace(head, current_id=cid + 1), cid + 1, order


def window_exceeded(head: Local | Global, limit: int) -> bool:
    return head.current_id - head.latest_id > limit
