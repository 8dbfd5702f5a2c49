"""Version accumulator: market-wide value transfer between two oracle versions.

``accumulate`` turns the interval ``from_oracle -> to_oracle`` plus the global
order settling at ``to_oracle`` into a new immutable ``Version``. Amounts are
computed in aggregate, then stored as per-unit accumulator increments so an
account's share is ``size * (end - start) // UNIT`` regardless of how many
versions elapsed.

Rounding: per-unit increments are floored, so receivers get at most their
amount and payers pay at least theirs. The global fee pools are credited from
the aggregate amounts, never from the per-account charges.

Steps run in a fixed order; reordering them changes results (spread pricing
depends on the order in which the two taker buckets hit the skew).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from .math import (
    SECONDS_PER_YEAR,
    UNIT,
    abs_val,
    clamp,
    div,
    div_up,
    mul,
    mul_div,
    mul_up,
    sign,
)
from .params import MarketParameter, PController, ProtocolParameter, RiskParameter, SpreadCurve, UtilizationCurve
from .types import (
    Global,
    Guarantee,
    OracleReceipt,
    OracleVersion,
    Order,
    Position,
    Version,
    VersionAccumulationResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VersionAccumulationContext:
    global_: Global
    from_position: Position
    order: Order
    guarantee: Guarantee
    from_oracle: OracleVersion
    to_oracle: OracleVersion
    receipt: OracleReceipt
    risk: RiskParameter
    market: MarketParameter
    protocol: ProtocolParameter


# -- Helpers -----------------------------------------------------------------

def _div_trunc(a: int, b: int) -> int:
    """Division truncated toward zero, so opposite skews are mirror images."""
    return sign(a) * sign(b) * (abs_val(a) // abs_val(b))


def _per_unit(amount: int, size: int) -> int:
    if size == 0:
        return 0
    return amount * UNIT // size


def _charge_per_unit(amount: int, size: int) -> int:
    """Per-unit decrement that collects at least *amount* from *size* units."""
    if size == 0:
        return 0
    return -div_up(amount, size)


# -- Curves ------------------------------------------------------------------

def spread_cost(curve: SpreadCurve, skew: int, change: int, price: int) -> int:
    """Price impact of moving the skew from *skew* by *change* units.

    Integrates ``d0 + d1*s + d2*s^2 + d3*s^3`` over the normalized skew
    ``s = skew / scale`` exactly, then scales by *price*. A negative *change*
    is priced on the mirrored curve. Never negative.
    """
    if change == 0 or curve.scale == 0:
        return 0
    s_from, s_to = skew, skew + change
    if change < 0:
        s_from, s_to = -s_from, -s_to
    b = curve.scale

    def antiderivative(a: int) -> int:
        # 12 * b^4 * F(a / b)
        return (
            12 * curve.d0 * a * b**3
            + 6 * curve.d1 * a**2 * b**2
            + 4 * curve.d2 * a**3 * b
            + 3 * curve.d3 * a**4
        )

    numerator = antiderivative(s_to) - antiderivative(s_from)
    return max(numerator * price // (12 * b**3 * UNIT * UNIT), 0)


def utilization(position: Position) -> int:
    base = position.maker + position.minor
    if base == 0:
        return UNIT if position.major else 0
    return min(UNIT, div(position.major, base))


def curve_rate(curve: UtilizationCurve, util: int) -> int:
    """Three-segment utilization curve: min -> target -> max, flat above 100%."""
    target = curve.target_utilization
    if util <= target:
        if target == 0:
            return curve.target_rate
        return curve.min_rate + mul_div(curve.target_rate - curve.min_rate, util, target)
    if util < UNIT:
        return curve.target_rate + mul_div(curve.max_rate - curve.target_rate, util - target, UNIT - target)
    return curve.max_rate


def controller_rate(ctl: PController, value: int, skew: int, dt: int) -> tuple[int, int]:
    """Advance the funding P-controller by *dt* seconds.

    Returns ``(new_value, area)`` where *area* is the integral of the
    annualized rate over the interval (rate-seconds). When the linear ramp
    hits a bound, the integral switches to the flat bound at the intercept.
    """
    if ctl.k == 0:
        held = clamp(value, ctl.min, ctl.max)
        return held, held * dt
    uncapped = value + _div_trunc(dt * skew * UNIT, ctl.k)
    new = clamp(uncapped, ctl.min, ctl.max)
    if new == uncapped or skew == 0:
        return new, _div_trunc((value + new) * dt, 2)
    intercept = clamp(_div_trunc((new - value) * ctl.k, skew * UNIT), 0, dt)
    area = _div_trunc((value + new) * intercept, 2) + new * (dt - intercept)
    return new, area


# -- Components --------------------------------------------------------------

def _funding(ctx: VersionAccumulationContext, price: int, dt: int) -> tuple[int, int, int, int, int]:
    """Returns ``(p_value, maker, long, short, fee)``; side amounts sum to ``-fee``."""
    pos = ctx.from_position
    risk = ctx.risk
    skew = clamp(_div_trunc(pos.skew * UNIT, risk.skew_scale), -UNIT, UNIT) if risk.skew_scale else 0
    p_value, area = controller_rate(risk.p_controller, ctx.global_.p_value, skew, dt)

    taker_socialized = min(pos.major, pos.minor + pos.maker)
    notional = mul(taker_socialized, price)
    funding = sign(area) * (abs_val(area) * notional // (SECONDS_PER_YEAR * UNIT))
    if risk.maker_receive_only and pos.skew != 0 and sign(funding) != sign(pos.skew):
        funding = -funding

    fee = mul(abs_val(funding), ctx.market.funding_fee)
    half = fee // 2
    f_long = -funding - fee + half
    f_short = funding - half
    f_maker = 0

    portion = UNIT - div(pos.minor, taker_socialized) if taker_socialized else 0
    if pos.long > pos.short:
        f_maker = mul(f_short, portion)
        f_short -= f_maker
    elif pos.short > pos.long:
        f_maker = mul(f_long, portion)
        f_long -= f_maker
    return p_value, f_maker, f_long, f_short, fee


def _interest(ctx: VersionAccumulationContext, price: int, dt: int) -> tuple[int, int, int, int]:
    """Returns ``(maker, long, short, fee)``; takers pay, makers receive net of fee."""
    pos = ctx.from_position
    util = utilization(pos)
    rate = curve_rate(ctx.risk.utilization_curve, util)
    notional = mul(min(pos.maker, pos.long + pos.short), price)
    interest = rate * dt * util * notional // (SECONDS_PER_YEAR * UNIT * UNIT)
    if interest <= 0:
        return 0, 0, 0, 0
    fee = mul(interest, ctx.market.interest_fee)
    i_long = -mul_div(interest, pos.long, pos.long + pos.short)
    i_short = -(interest + i_long)
    return interest - fee, i_long, i_short, fee


def _pnl(pos: Position, price_delta: int) -> tuple[int, int, int]:
    """Returns ``(maker, long, short)``; exactly zero-sum."""
    pnl_long = mul(price_delta, min(pos.long, pos.maker + pos.short))
    pnl_short = -mul(price_delta, min(pos.short, pos.maker + pos.long))
    return -(pnl_long + pnl_short), pnl_long, pnl_short


def _socialize(g: Global, pos: Position) -> tuple[Global, dict[str, int]]:
    """Charge pending shortfall to the aggregate opposing each bucket.

    Returns the global with charged buckets cleared and the per-side charge.
    """
    charges = {"maker": 0, "long": 0, "short": 0}
    sizes = {"maker": pos.maker, "long": pos.long, "short": pos.short}
    remaining = {}
    buckets = (
        ("deficit_long", "short", "maker"),
        ("deficit_short", "long", "maker"),
        ("deficit_maker", "long", "short"),
    )
    for bucket, side_a, side_b in buckets:
        amount = getattr(g, bucket)
        total = sizes[side_a] + sizes[side_b]
        if amount == 0 or total == 0:
            remaining[bucket] = amount
            continue
        part = mul_div(amount, sizes[side_a], total)
        charges[side_a] += part
        charges[side_b] += amount - part
        remaining[bucket] = 0
    return replace(g, **remaining), charges


def _split_fee(g: Global, market_fee: int, settlement_fee: int, ctx: VersionAccumulationContext) -> Global:
    protocol = mul(market_fee, ctx.protocol.protocol_fee)
    rest = market_fee - protocol
    oracle = mul(rest, ctx.receipt.oracle_fee)
    risk = mul(rest - oracle, ctx.market.risk_fee)
    return replace(
        g,
        protocol_fee=g.protocol_fee + protocol,
        oracle_fee=g.oracle_fee + oracle + settlement_fee,
        risk_fee=g.risk_fee + risk,
        donation=g.donation + rest - oracle - risk,
    )


# -- Entry point -------------------------------------------------------------

def accumulate(
    prev: Version, ctx: VersionAccumulationContext
) -> tuple[Version, Global, VersionAccumulationResult]:
    """Accumulate the interval ending at ``ctx.to_oracle`` on top of *prev*.

    *prev* is the version the global position was last settled at. On an
    invalid version only the settlement fee is charged; ``ctx.order`` must
    then carry no position change.
    """
    g = ctx.global_
    order = ctx.order
    guarantee = ctx.guarantee
    risk = ctx.risk
    valid = ctx.to_oracle.valid
    price = ctx.to_oracle.price if valid else g.latest_price

    per_order = ctx.receipt.settlement_fee // order.orders if order.orders else 0
    settlement_fee = per_order * order.orders
    version = Version(
        valid=valid,
        price=price,
        maker_value=prev.maker_value,
        long_value=prev.long_value,
        short_value=prev.short_value,
        settlement_fee=per_order,
        liquidation_fee=mul(mul(price, risk.maintenance), risk.liquidation_fee),
    )

    if not valid:
        g = _split_fee(g, 0, settlement_fee, ctx)
        logger.debug("invalid version at %d: settlement fee %d", ctx.to_oracle.timestamp, settlement_fee)
        return version, g, VersionAccumulationResult(settlement_fee=settlement_fee)

    pos = ctx.from_position
    maker_value, long_value, short_value = version.maker_value, version.long_value, version.short_value

    # Trade fees
    maker_fee = mul(price, risk.maker_fee)
    taker_fee = mul(price, risk.taker_fee)
    trade_total = mul(order.maker_total, maker_fee) + mul(order.taker_total - guarantee.taker_fee, taker_fee)
    subtractive = (
        mul_up(order.maker_referral, maker_fee)
        + mul_up(order.taker_referral, taker_fee)
        + mul_up(guarantee.referral, taker_fee)
    )
    trade_fee = max(trade_total - subtractive, 0)

    # Price impact: ask bucket first against the standing skew, then bid
    ask = order.taker_pos - guarantee.taker_pos
    bid = order.taker_neg - guarantee.taker_neg
    cost_pos = spread_cost(risk.spread, pos.skew, ask, price)
    cost_neg = spread_cost(risk.spread, pos.skew + ask, -bid, price)
    spread_total = cost_pos + cost_neg
    spread_maker = spread_market = 0
    if pos.maker > 0:
        spread_maker = spread_total
        maker_value += _per_unit(spread_total, pos.maker)
    else:
        spread_market = spread_total

    # Funding, interest and pnl need a prior valid price
    p_value = g.p_value
    f_maker = f_long = f_short = f_fee = 0
    i_maker = i_long = i_short = i_fee = 0
    pnl_maker = pnl_long = pnl_short = 0
    if ctx.from_oracle.valid and ctx.from_oracle.timestamp < ctx.to_oracle.timestamp:
        dt = ctx.to_oracle.timestamp - ctx.from_oracle.timestamp
        p_value, f_maker, f_long, f_short, f_fee = _funding(ctx, ctx.from_oracle.price, dt)
        i_maker, i_long, i_short, i_fee = _interest(ctx, ctx.from_oracle.price, dt)
        pnl_maker, pnl_long, pnl_short = _pnl(pos, price - ctx.from_oracle.price)

    maker_value += _per_unit(f_maker + i_maker + pnl_maker, pos.maker)
    long_value += _per_unit(f_long + i_long + pnl_long, pos.long)
    short_value += _per_unit(f_short + i_short + pnl_short, pos.short)

    # Shortfall socialization
    g, charges = _socialize(g, pos)
    maker_value += _charge_per_unit(charges["maker"], pos.maker)
    long_value += _charge_per_unit(charges["long"], pos.long)
    short_value += _charge_per_unit(charges["short"], pos.short)

    result = VersionAccumulationResult(
        trade_fee=trade_fee,
        subtractive_fee=subtractive,
        spread_pos=cost_pos,
        spread_neg=cost_neg,
        spread_maker=spread_maker,
        spread_market=spread_market,
        funding_maker=f_maker,
        funding_long=f_long,
        funding_short=f_short,
        funding_fee=f_fee,
        interest_maker=i_maker,
        interest_long=i_long,
        interest_short=i_short,
        interest_fee=i_fee,
        pnl_maker=pnl_maker,
        pnl_long=pnl_long,
        pnl_short=pnl_short,
        settlement_fee=settlement_fee,
        socialized_deficit=sum(charges.values()),
    )

    version = replace(
        version,
        maker_value=maker_value,
        long_value=long_value,
        short_value=short_value,
        maker_fee=maker_fee,
        taker_fee=taker_fee,
        spread_pos=div_up(cost_pos, ask),
        spread_neg=div_up(cost_neg, bid),
    )
    g = _split_fee(g, result.market_fee, settlement_fee, ctx)
    g = replace(g, latest_price=price, p_value=p_value)
    return version, g, result
