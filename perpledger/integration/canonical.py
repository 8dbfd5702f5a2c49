"""
Deterministic encoding of intents for signing.

An intent is signed over ``SHA256(prefix || body)`` where *prefix* names the
market domain and encoding version, and *body* is the intent as compact JSON
with sorted keys. Two equal intents therefore always produce the same digest,
and an intent signed for one market never verifies on another.
"""

from __future__ import annotations

import hashlib
import json
import string
from typing import Any

from perpledger.core.market.types import Intent

INTENT_ENCODING_VERSION = 1

_HEX_DIGITS = frozenset(string.hexdigits)


def _check_encodable(value: Any, path: str = "$") -> None:
    # Only ints, strings, bools and None reach the digest.
    if isinstance(value, float):
        raise TypeError(f"{path}: floats have no canonical encoding")
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path}: keys must be strings")
            _check_encodable(item, f"{path}.{key}")
    elif isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _check_encodable(item, f"{path}[{i}]")


def canonical_json_bytes(value: Any) -> bytes:
    """Compact UTF-8 JSON with sorted keys; rejects floats and NaN."""
    _check_encodable(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode(
        "utf-8"
    )


def domain_sep_bytes(label: str, version: int = INTENT_ENCODING_VERSION) -> bytes:
    """``perpledger:<label>:v<version>`` followed by a NUL terminator."""
    if not label or not label.isascii() or "\x00" in label:
        raise ValueError(f"invalid domain label: {label!r}")
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise ValueError(f"invalid encoding version: {version!r}")
    return f"perpledger:{label}:v{version}".encode("ascii") + b"\x00"


def hex_to_bytes_fixed(hex_str: str, *, nbytes: int, name: str) -> bytes:
    digits = hex_str[2:] if isinstance(hex_str, str) and hex_str.startswith("0x") else None
    if digits is None or len(digits) != 2 * nbytes or not set(digits) <= _HEX_DIGITS:
        raise ValueError(f"{name} must be a 0x-prefixed {nbytes}-byte hex string")
    return bytes.fromhex(digits)


def intent_signing_dict(intent: Intent) -> dict[str, Any]:
    common = intent.common
    return {
        "amount": intent.amount,
        "price": intent.price,
        "fee": intent.fee,
        "originator": intent.originator,
        "solver": intent.solver,
        "collateralization": intent.collateralization,
        "common": {
            "account": common.account,
            "signer": common.signer,
            "domain": common.domain,
            "nonce": common.nonce,
            "group": common.group,
            "expiry": common.expiry,
        },
    }


def intent_digest(intent: Intent) -> bytes:
    """32-byte message signed for *intent*, separated by its market domain."""
    prefix = domain_sep_bytes(f"market_intent:{intent.common.domain}")
    return hashlib.sha256(prefix + canonical_json_bytes(intent_signing_dict(intent))).digest()
