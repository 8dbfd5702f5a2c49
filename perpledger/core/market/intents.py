"""Intent matching.

A signed intent from one account (the signer) is filled by a second account
(the counterparty) at the intent's price. Both fills land in the same oracle
version as opposite taker orders, each with a ``Guarantee`` that settles the
difference between the intent price and the version price.

The counterparty's quantity is exempt from the taker fee. The signer pays the
normal taker fee. A ``fee`` share of that fee is credited to the originator,
split with the solver when one is named.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import InsufficientCollateralizationError, IntentPriceDeviationError, InvalidIntentError, InvalidIntentFeeError
from .math import UNIT, abs_val, mul, mul_up
from .orders import order_from_taker
from .params import MarketParameter
from .types import Guarantee, Intent, Order, Position


@dataclass(frozen=True)
class Fill:
    account: str
    order: Order
    guarantee: Guarantee


def validate_intent(intent: Intent, latest_price: int, current_timestamp: int, market: MarketParameter) -> None:
    if intent.amount == 0:
        raise InvalidIntentError("intent amount is zero")
    if intent.price <= 0:
        raise InvalidIntentError("intent price must be positive")
    if not 0 <= intent.fee <= UNIT:
        raise InvalidIntentFeeError()
    if not 0 <= intent.collateralization <= UNIT:
        raise InsufficientCollateralizationError("collateralization out of bounds")
    if intent.common.expiry and intent.common.expiry < current_timestamp:
        raise InvalidIntentError("intent expired")
    # |price - latest| / latest <= max_price_deviation, cross-multiplied
    if abs_val(intent.price - latest_price) * UNIT > market.max_price_deviation * latest_price:
        raise IntentPriceDeviationError()


def _guarantee(order: Order, notional: int, taker_fee: int, referral: int) -> Guarantee:
    return Guarantee(
        orders=1,
        notional=notional,
        long_pos=order.long_pos,
        long_neg=order.long_neg,
        short_pos=order.short_pos,
        short_neg=order.short_neg,
        taker_fee=taker_fee,
        referral=referral,
    )


def match(
    intent: Intent,
    counterparty: str,
    counterparty_position: Position,
    signer_position: Position,
    timestamp: int,
) -> tuple[Fill, Fill]:
    """Build the counterparty and signer fills, in that order.

    Positions are each account's current position (settled plus pending).
    The two notionals are exact negations so the price overrides net to at
    most zero.
    """
    notional = mul(intent.amount, intent.price)

    counter_order = order_from_taker(timestamp, counterparty_position, 0, -intent.amount)
    counter = Fill(
        account=counterparty,
        order=counter_order,
        guarantee=_guarantee(counter_order, -notional, counter_order.taker_total, 0),
    )

    signer_order = order_from_taker(timestamp, signer_position, 0, intent.amount)
    signer = Fill(
        account=intent.common.account,
        order=signer_order,
        guarantee=_guarantee(signer_order, notional, 0, mul(abs_val(intent.amount), intent.fee)),
    )
    return counter, signer


def check_collateralization(collateral: int, position: Position, intent: Intent) -> None:
    """The signer's collateral must cover ``collateralization`` of its notional at the intent price."""
    required = mul_up(mul_up(position.magnitude, intent.price), intent.collateralization)
    if collateral < required:
        raise InsufficientCollateralizationError()


def split_referral(amount: int, solver: str | None) -> tuple[int, int]:
    """Returns ``(originator_share, solver_share)``."""
    if not solver:
        return amount, 0
    solver_share = amount // 2
    return amount - solver_share, solver_share
