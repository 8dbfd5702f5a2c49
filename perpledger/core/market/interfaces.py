"""Collaborator interfaces consumed by the market.

The market never computes prices, verifies signatures, decides authorization or
moves tokens itself; it talks to these through structural types so any object
with the right methods can be plugged in.
"""

from __future__ import annotations

from typing import Protocol

from .params import ProtocolParameter
from .types import Authorization, Intent, OracleReceipt, OracleVersion


class Oracle(Protocol):
    def at(self, timestamp: int) -> tuple[OracleVersion, OracleReceipt]:
        """Reading at *timestamp*; ``valid`` is False when no price was committed."""
        ...

    def status(self) -> tuple[OracleVersion, int]:
        """Latest committed version and the timestamp new orders target."""
        ...

    def request(self, account: str) -> None:
        """Ask for a price at the current timestamp."""
        ...


class Registry(Protocol):
    def parameter(self) -> ProtocolParameter:
        ...

    def paused(self) -> bool:
        ...

    def owner(self) -> str:
        ...

    def authorize(
        self, account: str, sender: str, signer: str | None, referrer: str | None
    ) -> Authorization:
        ...


class Verifier(Protocol):
    def verify_intent(self, intent: Intent, signature: bytes) -> None:
        """Raise ``InvalidIntentError`` unless the signature, nonce and expiry check out."""
        ...

    def consume_intent(self, intent: Intent) -> None:
        """Record the nonce of *intent* as used; called once the fill commits."""
        ...


class Transfer(Protocol):
    def transfer(self, account: str, amount: int) -> None:
        """Pull *amount* from *account* when positive, push ``-amount`` to it when negative."""
        ...
