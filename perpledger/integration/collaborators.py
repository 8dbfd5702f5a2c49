"""In-memory collaborators for running a market off-chain.

- ``InMemoryOracle``: a manually driven clock plus committed prices.
- ``InMemoryRegistry``: protocol parameters, pause flag, operators, signers
  and referral fee overrides.
- ``LedgerTransfer``: token wallets with deposit/withdrawal totals.

Used by the replay tool and the test suite; any object with the same methods
can replace them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from perpledger.core.market.params import ProtocolParameter
from perpledger.core.market.types import Authorization, OracleReceipt, OracleVersion

logger = logging.getLogger(__name__)


class InsufficientFundsError(Exception):
    """Raised when a wallet cannot cover a collateral pull."""


class InMemoryOracle:
    """Oracle whose readings are committed explicitly.

    ``now`` is the current time; orders target ``max(now, latest + 1)``. A
    timestamp older than the latest commit that never received a price reads
    as invalid.
    """

    def __init__(self, start: int = 0, settlement_fee: int = 0, oracle_fee: int = 0) -> None:
        self.now = start
        self.settlement_fee = settlement_fee
        self.oracle_fee = oracle_fee
        self._prices: dict[int, OracleVersion] = {}
        self._latest = OracleVersion()
        self.requests: list[tuple[str, int]] = []

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now

    def commit(self, price: int, timestamp: int | None = None, valid: bool = True) -> OracleVersion:
        timestamp = self.now if timestamp is None else timestamp
        if timestamp <= self._latest.timestamp:
            raise ValueError(f"timestamp {timestamp} is not after latest {self._latest.timestamp}")
        version = OracleVersion(timestamp=timestamp, price=price, valid=valid)
        self._prices[timestamp] = version
        self._latest = version
        self.now = max(self.now, timestamp)
        logger.debug("oracle commit at %d: price=%d valid=%s", timestamp, price, valid)
        return version

    def at(self, timestamp: int) -> tuple[OracleVersion, OracleReceipt]:
        version = self._prices.get(timestamp, OracleVersion(timestamp=timestamp))
        return version, OracleReceipt(settlement_fee=self.settlement_fee, oracle_fee=self.oracle_fee)

    def status(self) -> tuple[OracleVersion, int]:
        return self._latest, max(self.now, self._latest.timestamp + 1)

    def request(self, account: str) -> None:
        self.requests.append((account, self.status()[1]))


@dataclass
class InMemoryRegistry:
    owner_address: str
    protocol: ProtocolParameter = ProtocolParameter()
    is_paused: bool = False
    operators: dict[str, set[str]] = field(default_factory=dict)
    signers: dict[str, set[str]] = field(default_factory=dict)
    referral_fees: dict[str, int] = field(default_factory=dict)

    def parameter(self) -> ProtocolParameter:
        return self.protocol

    def paused(self) -> bool:
        return self.is_paused

    def owner(self) -> str:
        return self.owner_address

    def approve_operator(self, account: str, operator: str) -> None:
        self.operators.setdefault(account, set()).add(operator)

    def approve_signer(self, account: str, signer: str) -> None:
        self.signers.setdefault(account, set()).add(signer)

    def authorize(self, account: str, sender: str, signer: str | None, referrer: str | None) -> Authorization:
        return Authorization(
            is_operator=sender == account or sender in self.operators.get(account, set()),
            is_signer=signer is not None and (signer == account or signer in self.signers.get(account, set())),
            referral_fee=self.referral_fees.get(referrer, self.protocol.referral_fee) if referrer else 0,
        )


class LedgerTransfer:
    """Token wallets backing market collateral."""

    def __init__(self) -> None:
        self.balances: dict[str, int] = {}
        self.deposited = 0
        self.withdrawn = 0

    def mint(self, account: str, amount: int) -> None:
        self.balances[account] = self.balances.get(account, 0) + amount

    def transfer(self, account: str, amount: int) -> None:
        if amount > 0:
            balance = self.balances.get(account, 0)
            if balance < amount:
                raise InsufficientFundsError(f"{account} holds {balance}, needs {amount}")
            self.balances[account] = balance - amount
            self.deposited += amount
        elif amount < 0:
            self.balances[account] = self.balances.get(account, 0) - amount
            self.withdrawn -= amount
