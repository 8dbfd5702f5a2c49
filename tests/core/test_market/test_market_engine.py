"""End-to-end scenarios for perpledger/core/market/engine.py.

Each test drives a ``Market`` through the in-memory oracle: orders placed at
``now`` target the next oracle timestamp, and settle once the oracle commits a
price at (or skips past) that timestamp.
"""

from dataclasses import replace

import pytest

from perpledger.core.market import Market, MarketParameter, RiskParameter
from perpledger.core.market.errors import (
    EfficiencyUnderLimitError,
    InsufficientCollateralizationError,
    InsufficientMarginError,
    InvalidIntentError,
    InvalidProtectionError,
    InvalidReferrerError,
    MarketInvariantError,
    NotCoordinatorError,
    NotOwnerError,
    OperatorNotAllowedError,
    OutstandingDeficitError,
    PausedError,
    ProtectedError,
    ReentrancyError,
    SignerNotAllowedError,
)
from perpledger.core.market.math import UNIT
from perpledger.core.market.params import PController
from perpledger.core.market.types import Common, Event, Intent, ParameterUpdated, Position, PositionProcessed
from perpledger.integration.collaborators import LedgerTransfer

PRICE = 100 * UNIT


def _open_maker(market: Market, oracle, price: int = PRICE, size: int = 10 * UNIT) -> None:
    """Commit *price* at the oracle's current time and queue a maker position."""
    oracle.commit(price)
    market.update("maker", maker=size, collateral=10_000 * UNIT)


# ---------------------------------------------------------------------------
# Order lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_orders_settle_at_next_version(self, make_market, oracle, transfer):
        market = make_market()
        _open_maker(market, oracle)
        before = transfer.balances["taker"]
        order_id = market.update("taker", long=UNIT, collateral=100 * UNIT)

        assert order_id == 1
        assert market.pending_order("taker", 1).long_pos == UNIT
        assert market.position("taker").empty
        assert market.current_position("taker").long == UNIT
        assert transfer.balances["taker"] == before - 100 * UNIT

        oracle.commit(PRICE, timestamp=1001)
        market.settle("taker")
        assert market.position("taker") == Position(timestamp=1001, long=UNIT)
        assert market.local("taker").latest_id == 1
        assert market.local("taker").collateral == 100 * UNIT
        assert market.global_position() == Position(timestamp=1001, maker=10 * UNIT, long=UNIT)
        assert market.checkpoint("taker", 1001).transfer == 100 * UNIT

    def test_settled_orders_are_pruned(self, make_market, oracle):
        market = make_market()
        _open_maker(market, oracle)
        market.update("taker", long=UNIT, collateral=100 * UNIT, referrer="ref")
        assert market.state.referrers["taker"] == {1: "ref"}

        oracle.commit(PRICE, timestamp=1001)
        market.settle("taker")
        assert market.state.local_pending["taker"] == {}
        assert market.state.referrers["taker"] == {}
        assert market.state.pending == {}
        # The maker has not been touched since, so its order stays until it settles.
        assert 1 in market.state.local_pending["maker"]

    def test_settle_is_idempotent(self, make_market, oracle):
        market = make_market()
        _open_maker(market, oracle)
        market.update("taker", long=UNIT, collateral=100 * UNIT)
        oracle.commit(PRICE, timestamp=1001)
        market.settle("taker")

        snapshot = market.snapshot()
        market.settle("taker")
        assert market.snapshot() == snapshot

    def test_rejected_update_changes_nothing(self, make_market, oracle, transfer):
        market = make_market()
        _open_maker(market, oracle)
        snapshot = market.snapshot()
        balance = transfer.balances["taker"]

        with pytest.raises(InsufficientMarginError):
            market.update("taker", long=10 * UNIT, collateral=UNIT)
        assert market.snapshot() == snapshot
        assert transfer.balances["taker"] == balance

    def test_same_timestamp_orders_coalesce(self, make_market, oracle):
        market = make_market()
        _open_maker(market, oracle)
        first = market.update("taker", long=UNIT, collateral=100 * UNIT)
        second = market.update("taker", long=UNIT)
        assert first == second == 1
        assert market.pending_order("taker", 1).long_pos == 2 * UNIT
        assert market.pending_order("taker", 1).orders == 2

    def test_withdrawal(self, make_market, oracle, transfer):
        market = make_market()
        _open_maker(market, oracle)
        market.update("taker", long=UNIT, collateral=100 * UNIT)
        oracle.commit(PRICE, timestamp=1001)
        balance = transfer.balances["taker"]

        market.update("taker", collateral=-50 * UNIT)
        assert market.local("taker").collateral == 50 * UNIT
        assert transfer.balances["taker"] == balance + 50 * UNIT

        with pytest.raises(InsufficientMarginError):
            market.update("taker", collateral=-25 * UNIT)


# ---------------------------------------------------------------------------
# Funding
# ---------------------------------------------------------------------------


class TestFunding:
    def test_one_hour_of_full_skew(self, make_market, oracle):
        risk = RiskParameter(
            p_controller=PController(k=40_000 * UNIT, min=-1_200_000, max=1_200_000),
            skew_scale=5 * UNIT,
        )
        market = make_market(risk, MarketParameter(funding_fee=100_000))
        price = 123 * UNIT
        _open_maker(market, oracle, price=price, size=5 * UNIT)
        market.update("taker", long=5 * UNIT, collateral=10_000 * UNIT)
        oracle.commit(price, timestamp=1001)
        market.settle("maker")
        market.settle("taker")

        oracle.advance(3600)
        oracle.commit(price)
        market.settle("maker")
        market.settle("taker")

        processed = [e for e in market.events if isinstance(e, PositionProcessed) and e.timestamp == 4601]
        result = processed[0].result
        assert result.funding_fee == 315
        assert abs(-result.funding_long - result.funding_fee // 2 - 3160) <= 1

        maker_gain = market.local("maker").collateral - 10_000 * UNIT
        long_loss = 10_000 * UNIT - market.local("taker").collateral
        assert maker_gain == 3000
        assert long_loss == 3320
        # Per-unit flooring only ever favors the market.
        assert 0 <= long_loss - maker_gain - result.funding_fee <= 12
        assert market.global_().p_value == 90_000
        assert market.global_().donation == 315


# ---------------------------------------------------------------------------
# Invalid versions
# ---------------------------------------------------------------------------


class TestInvalidVersion:
    def test_settlement_fee_charged_once(self, make_market, oracle, transfer):
        market = make_market(oracle_fee_receiver="c")
        _open_maker(market, oracle)
        oracle.commit(PRICE, timestamp=1001)
        market.settle("maker")

        oracle.settlement_fee = UNIT
        market.update("a", long=UNIT, collateral=1_000 * UNIT)
        market.update("b", short=UNIT, collateral=1_000 * UNIT)
        # 1002 never receives a price.
        oracle.commit(PRICE, timestamp=1003)
        market.settle("a")
        market.settle("b")

        assert not market.version(1002).valid
        assert market.version(1002).settlement_fee == 500_000
        assert market.global_().oracle_fee == UNIT
        assert market.local("a").collateral == 1_000 * UNIT - 500_000
        assert market.local("b").collateral == 1_000 * UNIT - 500_000
        assert market.position("a") == Position(timestamp=1003, long=UNIT)
        assert market.position("b") == Position(timestamp=1003, short=UNIT)
        assert market.global_position() == Position(timestamp=1003, maker=10 * UNIT, long=UNIT, short=UNIT)

        balance = transfer.balances["c"]
        assert market.claim_fee("c", sender="c") == UNIT
        assert transfer.balances["c"] == balance + UNIT
        assert market.global_().oracle_fee == 0

    def test_carried_order_kept_until_it_settles(self, make_market, oracle):
        market = make_market()
        _open_maker(market, oracle)
        oracle.commit(PRICE, timestamp=1001)
        market.update("a", long=UNIT, collateral=1_000 * UNIT)
        oracle.commit(PRICE, timestamp=1002, valid=False)
        market.settle("a")

        assert market.local("a").latest_id == 1
        assert market.position("a") == Position(timestamp=1002)
        assert market.state.local_carry_ids == {"a": (1,)}
        assert 1 in market.state.local_pending["a"]

        oracle.commit(PRICE, timestamp=1003)
        market.settle("a")
        assert market.position("a") == Position(timestamp=1003, long=UNIT)
        assert market.state.local_carry_ids == {}
        assert market.state.local_pending["a"] == {}
        assert market.state.pending == {}


# ---------------------------------------------------------------------------
# Liquidity checks
# ---------------------------------------------------------------------------


class TestCloseAlways:
    def _setup(self, make_market, oracle, close_always: bool) -> Market:
        market = make_market()
        _open_maker(market, oracle)
        market.update("taker", long=5 * UNIT, collateral=1_000 * UNIT)
        oracle.commit(PRICE, timestamp=1001)
        market.update_risk_parameter(replace(market.state.risk, efficiency_limit=3 * UNIT), sender="owner")
        market.update_parameter(
            MarketParameter(maker_close_always=close_always, taker_close_always=close_always), sender="owner"
        )
        return market

    def test_closes_allowed_under_efficiency_limit(self, make_market, oracle):
        market = self._setup(make_market, oracle, close_always=True)
        with pytest.raises(EfficiencyUnderLimitError):
            market.update("taker", long=UNIT)
        assert market.update("taker", long=-UNIT) > 0
        assert market.update("maker", maker=-UNIT) > 0

    def test_maker_close_rejected_without_close_always(self, make_market, oracle):
        market = self._setup(make_market, oracle, close_always=False)
        with pytest.raises(EfficiencyUnderLimitError):
            market.update("maker", maker=-UNIT)
        # Reducing the taker side raises efficiency, so it passes regardless.
        assert market.update("taker", long=-UNIT) > 0


# ---------------------------------------------------------------------------
# Liquidation
# ---------------------------------------------------------------------------

LIQ_RISK = RiskParameter(margin=100_000, maintenance=50_000, liquidation_fee=500_000, max_liquidation_fee=5 * UNIT)


class TestLiquidation:
    def _open(self, make_market, oracle) -> Market:
        market = make_market(LIQ_RISK)
        _open_maker(market, oracle)
        market.update("taker", long=UNIT, collateral=15 * UNIT)
        oracle.commit(PRICE, timestamp=1001)
        return market

    def test_maintained_account_cannot_be_liquidated(self, make_market, oracle):
        market = self._open(make_market, oracle)
        with pytest.raises(InvalidProtectionError):
            market.close("taker", protect=True, sender="liq")

    def test_liquidation_pays_liquidator(self, make_market, oracle, transfer):
        market = self._open(make_market, oracle)
        oracle.commit(88 * UNIT, timestamp=1002)

        assert market.close("taker", protect=True, sender="liq") == 2
        assert market.local("taker").collateral == 3 * UNIT
        with pytest.raises(ProtectedError):
            market.update("taker", collateral=UNIT)

        oracle.commit(88 * UNIT, timestamp=1003)
        market.settle("taker")
        assert market.position("taker").empty
        assert market.local("taker").collateral == 800_000
        assert market.local("taker").deficit == 0
        assert market.local("liq").claimable == 2_200_000

        balance = transfer.balances["liq"]
        assert market.claim_fee("liq", sender="liq") == 2_200_000
        assert transfer.balances["liq"] == balance + 2_200_000
        assert market.local("liq").claimable == 0

    def test_shortfall_is_socialized_and_repaid(self, make_market, oracle, transfer):
        market = self._open(make_market, oracle)
        oracle.commit(80 * UNIT, timestamp=1002)
        market.close("taker", protect=True, sender="liq")
        assert market.local("taker").collateral == -5 * UNIT

        oracle.commit(80 * UNIT, timestamp=1003)
        market.settle("taker")
        assert market.local("taker").collateral == 0
        assert market.local("taker").deficit == 7 * UNIT
        assert market.global_().deficit_long == 7 * UNIT
        assert market.local("liq").claimable == 2 * UNIT

        with pytest.raises(OutstandingDeficitError):
            market.update("taker", long=UNIT)

        oracle.commit(80 * UNIT, timestamp=1004)
        market.settle("maker")
        assert market.global_().deficit_long == 0
        assert market.local("maker").collateral == 10_000 * UNIT + 20 * UNIT - 7 * UNIT

        market.update("taker", collateral=10 * UNIT)
        assert market.local("taker").deficit == 0
        assert market.local("taker").collateral == 3 * UNIT
        assert market.global_().donation == 7 * UNIT

        held = (
            market.local("maker").collateral
            + market.local("taker").collateral
            + market.local("liq").claimable
            + market.global_().donation
        )
        assert held == transfer.deposited - transfer.withdrawn


# ---------------------------------------------------------------------------
# Referrals and fee claims
# ---------------------------------------------------------------------------


class TestReferral:
    def test_referrer_earns_share_of_taker_fee(self, make_market, oracle, registry, transfer):
        registry.referral_fees["ref"] = 500_000
        market = make_market(RiskParameter(taker_fee=10_000), beneficiary="c")
        _open_maker(market, oracle)
        market.update("a", long=UNIT, collateral=100 * UNIT, referrer="ref")
        with pytest.raises(InvalidReferrerError):
            market.update("a", long=UNIT, referrer="other")

        oracle.commit(PRICE, timestamp=1001)
        market.settle("a")
        assert market.local("a").collateral == 99 * UNIT
        assert market.local("ref").claimable == 500_000
        assert market.global_().donation == 500_000

        balance = transfer.balances["ref"]
        assert market.claim_fee("ref", sender="ref") == 500_000
        assert transfer.balances["ref"] == balance + 500_000
        assert market.claim_fee("c", sender="c") == 500_000
        assert market.claim_fee("b", sender="b") == 0


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------

INTENT = Intent(
    amount=UNIT,
    price=101 * UNIT,
    fee=500_000,
    originator="orig",
    solver=None,
    collateralization=100_000,
    common=Common(account="signer", signer="signer", domain="market", nonce=1),
)


class TestIntent:
    def _market(self, make_market, oracle) -> Market:
        market = make_market(RiskParameter(taker_fee=10_000))
        _open_maker(market, oracle)
        market.update("signer", collateral=100 * UNIT)
        market.update("counter", collateral=100 * UNIT)
        return market

    def test_fill_settles_at_intent_price(self, make_market, oracle, verifier):
        market = self._market(make_market, oracle)
        order_id = market.update_intent("counter", INTENT, b"sig")
        assert order_id == 1
        assert verifier.seen == [(INTENT, b"sig")]

        oracle.commit(PRICE, timestamp=1001)
        market.settle("signer")
        market.settle("counter")
        assert market.position("signer") == Position(timestamp=1001, long=UNIT)
        assert market.position("counter") == Position(timestamp=1001, short=UNIT)
        # Signer buys 1 above the oracle price and pays the taker fee.
        assert market.local("signer").collateral == 98 * UNIT
        # Counterparty sells 1 above the oracle price, fee exempt.
        assert market.local("counter").collateral == 101 * UNIT
        assert market.local("orig").claimable == 500_000
        assert market.global_().donation == 500_000

    def test_self_fill_rejected(self, make_market, oracle):
        market = self._market(make_market, oracle)
        with pytest.raises(InvalidIntentError):
            market.update_intent("signer", INTENT, b"sig")

    def test_unapproved_signer_rejected(self, make_market, oracle):
        market = self._market(make_market, oracle)
        intent = replace(INTENT, common=replace(INTENT.common, signer="mallory"))
        with pytest.raises(SignerNotAllowedError):
            market.update_intent("counter", intent, b"sig")

    def test_collateralization_checked_before_signature(self, make_market, oracle, verifier):
        market = self._market(make_market, oracle)
        snapshot = market.snapshot()
        with pytest.raises(InsufficientCollateralizationError):
            market.update_intent("counter", replace(INTENT, collateralization=UNIT), b"sig")
        assert verifier.seen == []
        assert market.snapshot() == snapshot

    def test_unnamed_originator_share_is_donated(self, make_market, oracle):
        market = self._market(make_market, oracle)
        market.update_intent("counter", replace(INTENT, originator=None), b"sig")
        oracle.commit(PRICE, timestamp=1001)
        market.settle("signer")
        market.settle("counter")
        assert market.local("signer").collateral == 98 * UNIT
        assert market.global_().donation == UNIT

    def test_solver_share_without_originator(self, make_market, oracle):
        market = self._market(make_market, oracle)
        market.update_intent("counter", replace(INTENT, originator=None, solver="solver"), b"sig")
        oracle.commit(PRICE, timestamp=1001)
        market.settle("signer")
        market.settle("counter")
        assert market.local("solver").claimable == 250_000
        assert market.global_().donation == 750_000

    def test_carried_fill_credits_its_originator(self, make_market, oracle):
        market = self._market(make_market, oracle)
        oracle.commit(PRICE, timestamp=1001)
        assert market.update_intent("counter", INTENT, b"sig") == 1
        assert market.pending_order("signer", 1).timestamp == 1002

        # The fill's version never receives a price, so it is carried into
        # the signer's deposit at 1003.
        oracle.advance(2)
        assert market.update("signer", collateral=UNIT) == 2
        oracle.commit(PRICE, timestamp=1003)
        market.settle("signer")
        market.settle("counter")

        assert not market.version(1002).valid
        assert market.position("signer") == Position(timestamp=1003, long=UNIT)
        assert market.position("counter") == Position(timestamp=1003, short=UNIT)
        assert market.local("signer").collateral == 99 * UNIT
        assert market.local("counter").collateral == 101 * UNIT
        assert market.local("orig").claimable == 500_000
        assert market.global_().donation == 500_000
        assert market.state.local_carry_ids == {}
        assert market.state.originators["signer"] == {}

    def test_nonce_consumed_only_on_commit(self, make_market, oracle, verifier, monkeypatch):
        market = self._market(make_market, oracle)
        snapshot = market.snapshot()
        monkeypatch.setattr("perpledger.core.market.engine.check_all", lambda state: ["inv_forced"])
        with pytest.raises(MarketInvariantError):
            market.update_intent("counter", INTENT, b"sig")
        assert verifier.seen == [(INTENT, b"sig")]
        assert verifier.consumed == []
        assert market.snapshot() == snapshot

        monkeypatch.undo()
        market.update_intent("counter", INTENT, b"sig")
        assert verifier.consumed == [INTENT]


# ---------------------------------------------------------------------------
# Authorization and plumbing
# ---------------------------------------------------------------------------


class ReentrantTransfer(LedgerTransfer):
    market: Market | None = None

    def transfer(self, account: str, amount: int) -> None:
        self.market.settle(account)
        super().transfer(account, amount)


class TestAuthorization:
    def test_operator_required(self, make_market, oracle, registry):
        market = make_market()
        _open_maker(market, oracle)
        with pytest.raises(OperatorNotAllowedError):
            market.update("a", long=UNIT, collateral=100 * UNIT, sender="c")
        registry.approve_operator("a", "c")
        assert market.update("a", long=UNIT, collateral=100 * UNIT, sender="c") == 1

    def test_paused(self, make_market, registry):
        market = make_market()
        registry.is_paused = True
        with pytest.raises(PausedError):
            market.settle("a")

    def test_admin_roles(self, make_market):
        market = make_market(coordinator="c")
        with pytest.raises(NotOwnerError):
            market.update_parameter(MarketParameter(), sender="c")
        with pytest.raises(NotCoordinatorError):
            market.update_risk_parameter(RiskParameter(), sender="a")
        market.update_risk_parameter(RiskParameter(margin=400_000), sender="c")
        assert market.state.risk.margin == 400_000

    def test_events_published_after_commit(self, make_market):
        market = make_market()
        seen = []
        market.subscribe(seen.append)
        market.update_beneficiary("b", sender="owner")
        assert [e.event for e in seen] == [Event.PARAMETER_UPDATED]
        assert seen[0] == ParameterUpdated(kind="beneficiary", sender="owner")
        assert market.state.beneficiary == "b"

    def test_reentrancy_rejected(self, oracle, registry, verifier):
        transfer = ReentrantTransfer()
        transfer.mint("a", 1_000 * UNIT)
        market = Market(oracle, registry, verifier, transfer, RiskParameter(), MarketParameter())
        transfer.market = market
        oracle.commit(PRICE)
        snapshot = market.snapshot()

        with pytest.raises(ReentrancyError):
            market.update("a", collateral=100 * UNIT)
        assert market.snapshot() == snapshot
        assert transfer.balances["a"] == 1_000 * UNIT
