"""Shared fixtures: a market wired to in-memory collaborators."""

from __future__ import annotations

import pytest

from perpledger.core.market import Market, MarketParameter, RiskParameter
from perpledger.core.market.math import UNIT
from perpledger.integration.collaborators import InMemoryOracle, InMemoryRegistry, LedgerTransfer

ACCOUNTS = ("maker", "taker", "a", "b", "c", "liq", "signer", "counter", "owner", "ref")


class RecordingVerifier:
    """Accepts every intent and records what it saw."""

    def __init__(self) -> None:
        self.seen: list = []
        self.consumed: list = []

    def verify_intent(self, intent, signature) -> None:
        self.seen.append((intent, signature))

    def consume_intent(self, intent) -> None:
        self.consumed.append(intent)


@pytest.fixture
def oracle() -> InMemoryOracle:
    return InMemoryOracle(start=1000)


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry(owner_address="owner")


@pytest.fixture
def transfer() -> LedgerTransfer:
    t = LedgerTransfer()
    for account in ACCOUNTS:
        t.mint(account, 1_000_000 * UNIT)
    return t


@pytest.fixture
def verifier() -> RecordingVerifier:
    return RecordingVerifier()


@pytest.fixture
def make_market(oracle, registry, verifier, transfer):
    def _make(risk: RiskParameter | None = None, parameter: MarketParameter | None = None, **kwargs) -> Market:
        return Market(
            oracle,
            registry,
            verifier,
            transfer,
            risk or RiskParameter(),
            parameter or MarketParameter(),
            **kwargs,
        )

    return _make
