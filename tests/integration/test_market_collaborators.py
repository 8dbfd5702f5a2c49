"""Tests for perpledger/integration/collaborators.py."""

import pytest

from perpledger.core.market.math import UNIT
from perpledger.core.market.params import ProtocolParameter
from perpledger.core.market.types import OracleReceipt, OracleVersion
from perpledger.integration.collaborators import (
    InMemoryOracle,
    InMemoryRegistry,
    InsufficientFundsError,
    LedgerTransfer,
)


class TestOracle:
    def test_orders_target_next_timestamp(self):
        oracle = InMemoryOracle(start=1000)
        assert oracle.status() == (OracleVersion(), 1000)
        oracle.commit(5 * UNIT)
        assert oracle.status() == (OracleVersion(timestamp=1000, price=5 * UNIT, valid=True), 1001)
        oracle.advance(60)
        assert oracle.status()[1] == 1060

    def test_skipped_timestamp_reads_invalid(self):
        oracle = InMemoryOracle(start=1000, settlement_fee=3, oracle_fee=4)
        oracle.commit(5 * UNIT, timestamp=1010)
        version, receipt = oracle.at(1005)
        assert version == OracleVersion(timestamp=1005)
        assert receipt == OracleReceipt(settlement_fee=3, oracle_fee=4)
        assert oracle.now == 1010

    def test_commits_must_move_forward(self):
        oracle = InMemoryOracle(start=1000)
        oracle.commit(UNIT)
        with pytest.raises(ValueError):
            oracle.commit(UNIT, timestamp=1000)

    def test_requests_recorded(self):
        oracle = InMemoryOracle(start=1000)
        oracle.request("a")
        assert oracle.requests == [("a", 1000)]


class TestRegistry:
    def test_self_is_operator(self):
        auth = InMemoryRegistry(owner_address="owner").authorize("a", "a", None, None)
        assert auth.is_operator
        assert not auth.is_signer

    def test_approved_operator_and_signer(self):
        registry = InMemoryRegistry(owner_address="owner")
        registry.approve_operator("a", "bot")
        registry.approve_signer("a", "key")
        auth = registry.authorize("a", "bot", "key", None)
        assert auth.is_operator and auth.is_signer
        assert not registry.authorize("a", "stranger", "other", None).is_operator

    def test_referral_fee_override(self):
        registry = InMemoryRegistry(owner_address="owner", protocol=ProtocolParameter(referral_fee=100_000))
        registry.referral_fees["vip"] = 300_000
        assert registry.authorize("a", "a", None, "vip").referral_fee == 300_000
        assert registry.authorize("a", "a", None, "someone").referral_fee == 100_000
        assert registry.authorize("a", "a", None, None).referral_fee == 0


class TestLedger:
    def test_deposits_and_withdrawals(self):
        ledger = LedgerTransfer()
        ledger.mint("a", 10)
        ledger.transfer("a", 7)
        ledger.transfer("a", -3)
        assert ledger.balances["a"] == 6
        assert (ledger.deposited, ledger.withdrawn) == (7, 3)

    def test_insufficient_funds(self):
        ledger = LedgerTransfer()
        ledger.mint("a", 1)
        with pytest.raises(InsufficientFundsError):
            ledger.transfer("a", 2)
        assert ledger.balances["a"] == 1
