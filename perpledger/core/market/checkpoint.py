"""Checkpoint ledger: per-account reconciliation against settled versions."""

from __future__ import annotations

from .liquidation import liquidation_fee
from .math import mul, mul_up
from .params import RiskParameter
from .types import Checkpoint, CheckpointAccumulationResult, Guarantee, Order, Position, Version


def accumulate(
    position: Position,
    order: Order,
    guarantee: Guarantee,
    from_version: Version,
    to_version: Version,
    risk: RiskParameter,
) -> CheckpointAccumulationResult:
    """Collateral change for an account holding *position* from *from_version*
    to *to_version*, plus the charges of *order* settling at *to_version*.

    Charges round up, credits (referral fees) round down.
    """
    collateral = (
        mul(position.maker, to_version.maker_value - from_version.maker_value)
        + mul(position.long, to_version.long_value - from_version.long_value)
        + mul(position.short, to_version.short_value - from_version.short_value)
    )
    settlement_fee = order.orders * to_version.settlement_fee
    if not to_version.valid:
        return CheckpointAccumulationResult(collateral=collateral, settlement_fee=settlement_fee)

    trade_fee = (
        mul_up(order.maker_total, to_version.maker_fee)
        + mul_up(order.taker_total - guarantee.taker_fee, to_version.taker_fee)
    )
    spread = (
        mul_up(order.taker_pos - guarantee.taker_pos, to_version.spread_pos)
        + mul_up(order.taker_neg - guarantee.taker_neg, to_version.spread_neg)
    )
    subtractive_fee, guarantee_referral_fee = referral_credits(order, guarantee, to_version)
    return CheckpointAccumulationResult(
        collateral=collateral,
        price_override=mul(guarantee.taker, to_version.price) - guarantee.notional,
        trade_fee=trade_fee,
        spread=spread,
        settlement_fee=settlement_fee,
        liquidation_fee=liquidation_fee(order, to_version, risk),
        subtractive_fee=subtractive_fee,
        guarantee_referral_fee=guarantee_referral_fee,
    )


def referral_credits(order: Order, guarantee: Guarantee, version: Version) -> tuple[int, int]:
    """Referrer credit and intent referral credit owed for *order* at *version*, both rounded down."""
    if not version.valid:
        return 0, 0
    subtractive_fee = mul(order.maker_referral, version.maker_fee) + mul(order.taker_referral, version.taker_fee)
    return subtractive_fee, mul(guarantee.referral, version.taker_fee)


def checkpoint_from(result: CheckpointAccumulationResult, collateral_before: int, order: Order) -> Checkpoint:
    return Checkpoint(
        collateral=collateral_before,
        transfer=order.collateral,
        trade_fee=result.trade_fee + result.spread,
        settlement_fee=result.settlement_fee + result.liquidation_fee,
    )
