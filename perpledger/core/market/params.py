"""Risk, market and protocol parameters.

Parameters are frozen dataclasses of UNIT-scaled ints (ratios, rates, fees)
plus a few plain counts (seconds, ids) and flags. ``load_parameters`` reads a
YAML document::

    protocol:
      protocol_fee: "0.5"
    risk:
      margin: "0.35"
      maintenance: "0.3"
      p_controller: {k: "40000", min: "-1.2", max: "1.2"}
    market:
      funding_fee: "0.1"
      max_pending_local: 8

Decimal strings are parsed exactly; floats are rejected.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import ParameterError
from .math import UNIT, abs_val, to_fixed

MAX_AMOUNT: int = 10**18


@dataclass(frozen=True)
class SpreadCurve:
    """Cubic price-impact curve ``d0 + d1*s + d2*s^2 + d3*s^3`` over ``s = skew/scale``."""
    d0: int = 0
    d1: int = 0
    d2: int = 0
    d3: int = 0
    scale: int = 0


@dataclass(frozen=True)
class UtilizationCurve:
    min_rate: int = 0
    max_rate: int = 0
    target_rate: int = 0
    target_utilization: int = 0


@dataclass(frozen=True)
class PController:
    k: int = 0
    min: int = 0
    max: int = 0


@dataclass(frozen=True)
class RiskParameter:
    margin: int = 300_000
    maintenance: int = 300_000
    min_margin: int = 0
    min_maintenance: int = 0
    maker_fee: int = 0
    taker_fee: int = 0
    spread: SpreadCurve = SpreadCurve()
    maker_limit: int = MAX_AMOUNT
    efficiency_limit: int = 0
    liquidation_fee: int = 0
    min_liquidation_fee: int = 0
    max_liquidation_fee: int = MAX_AMOUNT
    utilization_curve: UtilizationCurve = UtilizationCurve()
    p_controller: PController = PController()
    skew_scale: int = 0
    stale_after: int = 7200
    maker_receive_only: bool = False


@dataclass(frozen=True)
class MarketParameter:
    funding_fee: int = 0
    interest_fee: int = 0
    risk_fee: int = 0
    max_pending_global: int = 16
    max_pending_local: int = 8
    max_price_deviation: int = UNIT
    maker_close_always: bool = False
    taker_close_always: bool = False
    closed: bool = False
    settle: bool = False


@dataclass(frozen=True)
class ProtocolParameter:
    protocol_fee: int = 0
    max_fee: int = UNIT
    max_liquidation_fee: int = MAX_AMOUNT
    max_cut: int = UNIT
    max_rate: int = 100 * UNIT
    min_maintenance: int = 0
    min_efficiency: int = 0
    referral_fee: int = 0
    max_stale_after: int = 172_800
    max_pending_ids: int = 64


@dataclass(frozen=True)
class ParameterSet:
    risk: RiskParameter
    market: MarketParameter
    protocol: ProtocolParameter


# Fields holding raw counts (seconds / ids) rather than fixed-point values.
_PLAIN_INT_FIELDS = frozenset(
    {"stale_after", "max_pending_global", "max_pending_local", "max_stale_after", "max_pending_ids"}
)

_NESTED = {
    "spread": SpreadCurve,
    "utilization_curve": UtilizationCurve,
    "p_controller": PController,
}


# -- Validation --------------------------------------------------------------

def _require(cond: bool, message: str) -> None:
    if not cond:
        raise ParameterError(message)


def validate_protocol_parameter(protocol: ProtocolParameter) -> None:
    _require(0 <= protocol.protocol_fee <= UNIT, "protocol_fee must be within [0, 1]")
    _require(0 <= protocol.referral_fee <= UNIT, "referral_fee must be within [0, 1]")
    _require(0 <= protocol.max_cut <= UNIT, "max_cut must be within [0, 1]")
    _require(protocol.max_fee >= 0 and protocol.max_rate >= 0, "caps must be non-negative")
    _require(protocol.max_pending_ids >= 1, "max_pending_ids must be positive")


def validate_risk_parameter(risk: RiskParameter, protocol: ProtocolParameter) -> None:
    """Raise ``ParameterError`` unless *risk* is within the protocol caps."""
    _require(risk.maintenance >= protocol.min_maintenance, "maintenance below protocol minimum")
    _require(risk.margin >= risk.maintenance, "margin must be at least maintenance")
    _require(risk.min_maintenance >= 0, "min_maintenance must be non-negative")
    _require(risk.min_margin >= risk.min_maintenance, "min_margin must be at least min_maintenance")
    _require(0 <= risk.maker_fee <= protocol.max_fee, "maker_fee out of range")
    _require(0 <= risk.taker_fee <= protocol.max_fee, "taker_fee out of range")
    _require(risk.maker_limit >= 0, "maker_limit must be non-negative")
    _require(risk.efficiency_limit >= protocol.min_efficiency, "efficiency_limit below protocol minimum")
    _require(0 <= risk.liquidation_fee <= protocol.max_cut, "liquidation_fee out of range")
    _require(
        0 <= risk.min_liquidation_fee <= risk.max_liquidation_fee <= protocol.max_liquidation_fee,
        "liquidation fee bounds out of range",
    )
    curve = risk.utilization_curve
    for rate in (curve.min_rate, curve.max_rate, curve.target_rate):
        _require(0 <= rate <= protocol.max_rate, "utilization rate out of range")
    _require(0 <= curve.target_utilization <= UNIT, "target_utilization must be within [0, 1]")
    ctl = risk.p_controller
    _require(ctl.k >= 0, "p_controller.k must be non-negative")
    _require(ctl.min <= ctl.max, "p_controller.min must not exceed max")
    _require(max(abs_val(ctl.min), abs_val(ctl.max)) <= protocol.max_rate, "p_controller bound out of range")
    _require(risk.skew_scale >= 0 and risk.spread.scale >= 0, "scales must be non-negative")
    _require(0 <= risk.stale_after <= protocol.max_stale_after, "stale_after out of range")


def validate_market_parameter(market: MarketParameter, protocol: ProtocolParameter) -> None:
    """Raise ``ParameterError`` unless *market* is within the protocol caps."""
    _require(0 <= market.funding_fee <= protocol.max_cut, "funding_fee out of range")
    _require(0 <= market.interest_fee <= protocol.max_cut, "interest_fee out of range")
    _require(0 <= market.risk_fee <= UNIT, "risk_fee must be within [0, 1]")
    _require(1 <= market.max_pending_global <= protocol.max_pending_ids, "max_pending_global out of range")
    _require(1 <= market.max_pending_local <= protocol.max_pending_ids, "max_pending_local out of range")
    _require(market.max_price_deviation >= 0, "max_price_deviation must be non-negative")


# -- Loading -----------------------------------------------------------------

def _build(cls: type, data: Any, path: str) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ParameterError(f"{path} must be a mapping")
    fields = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - set(fields))
    if unknown:
        raise ParameterError(f"unknown keys in {path}: {', '.join(unknown)}")

    values: dict[str, Any] = {}
    for name, raw in data.items():
        where = f"{path}.{name}"
        if name in _NESTED:
            values[name] = _build(_NESTED[name], raw, where)
        elif fields[name].type == "bool":
            if not isinstance(raw, bool):
                raise ParameterError(f"{where} must be a boolean")
            values[name] = raw
        elif name in _PLAIN_INT_FIELDS:
            if not isinstance(raw, int) or isinstance(raw, bool):
                raise ParameterError(f"{where} must be an integer")
            values[name] = raw
        else:
            try:
                values[name] = to_fixed(raw)
            except (TypeError, ValueError) as exc:
                raise ParameterError(f"{where}: {exc}") from exc
    return cls(**values)


def parameters_from_dict(obj: dict[str, Any]) -> ParameterSet:
    """Build and validate a ``ParameterSet`` from a parsed document."""
    if not isinstance(obj, dict):
        raise ParameterError("parameter document must be a mapping")
    unknown = sorted(set(obj) - {"risk", "market", "protocol"})
    if unknown:
        raise ParameterError(f"unknown sections: {', '.join(unknown)}")

    protocol = _build(ProtocolParameter, obj.get("protocol"), "protocol")
    risk = _build(RiskParameter, obj.get("risk"), "risk")
    market = _build(MarketParameter, obj.get("market"), "market")
    validate_protocol_parameter(protocol)
    validate_risk_parameter(risk, protocol)
    validate_market_parameter(market, protocol)
    return ParameterSet(risk=risk, market=market, protocol=protocol)


def load_parameters(path: str | Path) -> ParameterSet:
    obj = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    return parameters_from_dict(obj or {})
