"""BLS intent verifier.

Intents are signed with BLS12-381 (``G2Basic``) over ``intent_digest``. The
signer field of an intent is the signer's 48-byte public key in 0x-hex.

Besides the signature, the verifier enforces replay protection: a nonce may be
used once per account, a whole ``group`` may be cancelled by the account, and
intents past their ``expiry`` (per the injected clock) are rejected.
"""

from __future__ import annotations

import logging
from typing import Callable

from py_ecc.bls import G2Basic

from perpledger.core.market.errors import InvalidIntentError
from perpledger.core.market.types import Intent

from .canonical import hex_to_bytes_fixed, intent_digest

logger = logging.getLogger(__name__)


def sign_intent(secret_key: int, intent: Intent) -> bytes:
    """Sign *intent* with a BLS secret key (as produced by ``G2Basic.KeyGen``)."""
    return G2Basic.Sign(secret_key, intent_digest(intent))


def public_key_hex(secret_key: int) -> str:
    return "0x" + G2Basic.SkToPk(secret_key).hex()


class BlsIntentVerifier:
    def __init__(self, domain: str, clock: Callable[[], int]) -> None:
        self._domain = domain
        self._clock = clock
        self._nonces: set[tuple[str, int]] = set()
        self._cancelled_groups: set[tuple[str, int]] = set()

    def cancel_nonce(self, account: str, nonce: int) -> None:
        self._nonces.add((account, nonce))

    def cancel_group(self, account: str, group: int) -> None:
        self._cancelled_groups.add((account, group))

    def verify_intent(self, intent: Intent, signature: bytes) -> None:
        common = intent.common
        if common.domain != self._domain:
            raise InvalidIntentError("intent is for another market")
        if common.expiry and common.expiry < self._clock():
            raise InvalidIntentError("intent expired")
        if (common.account, common.nonce) in self._nonces:
            raise InvalidIntentError("nonce already used")
        if (common.account, common.group) in self._cancelled_groups:
            raise InvalidIntentError("intent group cancelled")

        try:
            pubkey = hex_to_bytes_fixed(common.signer, nbytes=48, name="signer")
        except (TypeError, ValueError) as exc:
            raise InvalidIntentError(str(exc)) from exc
        if not G2Basic.Verify(pubkey, intent_digest(intent), signature):
            raise InvalidIntentError("invalid intent signature")

        logger.debug("intent %s/%d verified", common.account, common.nonce)

    def consume_intent(self, intent: Intent) -> None:
        """Mark the nonce of an accepted intent as used."""
        self._nonces.add((intent.common.account, intent.common.nonce))
