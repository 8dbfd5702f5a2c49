"""Tests for perpledger/core/market/state.py and invariants.py."""

import json
from dataclasses import replace

from perpledger.core.market.invariants import INVARIANT_REGISTRY, check_all
from perpledger.core.market.math import UNIT
from perpledger.core.market.params import MarketParameter, RiskParameter
from perpledger.core.market.state import (
    current_position,
    global_current_position,
    initial_state,
    state_from_dict,
    state_to_dict,
)
from perpledger.core.market.types import Position

PRICE = 100 * UNIT


def _busy_market(make_market, oracle):
    """A market holding settled positions, a liquidation and unmerged carries."""
    market = make_market(RiskParameter(margin=100_000, maintenance=50_000, taker_fee=1_000))
    oracle.commit(PRICE)
    market.update("maker", maker=10 * UNIT, collateral=10_000 * UNIT)
    market.update("taker", long=UNIT, collateral=15 * UNIT, referrer="ref")
    oracle.commit(PRICE, timestamp=1001)
    oracle.commit(80 * UNIT, timestamp=1002)
    market.close("taker", protect=True, sender="liq")
    market.update("a", short=UNIT, collateral=100 * UNIT)
    oracle.commit(PRICE, timestamp=1003, valid=False)
    market.settle("a")
    return market


class TestSerialization:
    def test_round_trip_through_json(self, make_market, oracle):
        market = _busy_market(make_market, oracle)
        state = market.state
        assert state.local_carry
        assert state.carry.short_pos == UNIT
        assert state.liquidators

        data = json.loads(json.dumps(state_to_dict(state)))
        assert state_from_dict(data) == state

    def test_initial_state_round_trip(self):
        state = initial_state(RiskParameter(), MarketParameter(), coordinator="c")
        assert state_from_dict(state_to_dict(state)) == state


class TestAccessors:
    def test_current_position_includes_carry(self, make_market, oracle):
        market = _busy_market(make_market, oracle)
        assert market.position("a").empty
        assert current_position(market.state, "a").short == UNIT
        assert global_current_position(market.state).short == UNIT


class TestInvariants:
    def test_registry_is_complete(self):
        assert all(name.startswith("inv_") for name in INVARIANT_REGISTRY)

    def test_fresh_state_passes(self):
        assert check_all(initial_state(RiskParameter(), MarketParameter())) == []

    def test_busy_state_passes(self, make_market, oracle):
        assert check_all(_busy_market(make_market, oracle).state) == []

    def test_ids_out_of_order(self):
        state = initial_state(RiskParameter(), MarketParameter())
        state.global_ = replace(state.global_, latest_id=2, current_id=1)
        assert check_all(state) == ["inv_global_ids_ordered"]

    def test_negative_position(self):
        state = initial_state(RiskParameter(), MarketParameter())
        state.positions["a"] = Position(long=-1)
        assert check_all(state) == ["inv_positions_nonnegative"]

    def test_version_log_without_version(self):
        state = initial_state(RiskParameter(), MarketParameter())
        state.version_log.append(5)
        assert check_all(state) == ["inv_version_log_matches_versions"]

    def test_negative_pool(self):
        state = initial_state(RiskParameter(), MarketParameter())
        state.global_ = replace(state.global_, donation=-1)
        assert check_all(state) == ["inv_fee_pools_nonnegative"]
