#!/usr/bin/env python3
"""Replay a YAML market scenario against the in-memory collaborators.

Usage:
  python3 tools/market_replay.py --params params.yaml --scenario scenario.yaml

A scenario looks like::

  start: 1000
  owner: owner
  settlement_fee: "0.01"     # per oracle version
  oracle_fee: "0.1"          # share of the market fee
  wallets: {maker: 100000, alice: 1000}
  steps:
    - commit: {price: 100}
    - update: {account: maker, maker: 10, collateral: 10000}
    - update: {account: alice, long: "0.5", collateral: 100}
    - advance: 60
    - commit: {price: "101.25"}
    - settle: alice
    - close: {account: alice, protect: true, sender: maker}
    - claim: {sender: owner}

Amounts are whole units (ints) or exact decimal strings. Timestamps and
``advance`` are plain seconds. The final market snapshot is printed as
canonical JSON; a rejected step aborts the replay with exit code 1 unless it
sets ``expect_error: true``.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from perpledger.core.market import Market, MarketError, ParameterSet, load_parameters
from perpledger.core.market.math import to_fixed
from perpledger.integration.canonical import canonical_json_bytes
from perpledger.integration.collaborators import (
    InMemoryOracle,
    InMemoryRegistry,
    InsufficientFundsError,
    LedgerTransfer,
)

logger = logging.getLogger("market_replay")

_POSITION_KEYS = ("maker", "long", "short", "collateral")


class _AcceptAllVerifier:
    """Scenarios carry no signatures."""

    def verify_intent(self, intent, signature) -> None:
        return None

    def consume_intent(self, intent) -> None:
        return None


def _amount(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    return to_fixed(value)


def build_market(params: ParameterSet, scenario: dict[str, Any]) -> tuple[Market, InMemoryOracle, LedgerTransfer]:
    owner = str(scenario.get("owner", "owner"))
    oracle = InMemoryOracle(
        start=int(scenario.get("start", 0)),
        settlement_fee=_amount(scenario.get("settlement_fee", 0)),
        oracle_fee=_amount(scenario.get("oracle_fee", 0)),
    )
    registry = InMemoryRegistry(owner_address=owner, protocol=params.protocol)
    transfer = LedgerTransfer()
    for account, amount in (scenario.get("wallets") or {}).items():
        transfer.mint(str(account), _amount(amount))

    market = Market(
        oracle,
        registry,
        _AcceptAllVerifier(),
        transfer,
        params.risk,
        params.market,
        coordinator=scenario.get("coordinator", owner),
        beneficiary=scenario.get("beneficiary"),
        oracle_fee_receiver=scenario.get("oracle_fee_receiver"),
    )
    return market, oracle, transfer


def apply_step(market: Market, oracle: InMemoryOracle, step: dict[str, Any]) -> None:
    if not isinstance(step, dict):
        raise ValueError(f"step must be a mapping, got {step!r}")
    kinds = [k for k in step if k != "expect_error"]
    if len(kinds) != 1:
        raise ValueError(f"step must name exactly one action: {step!r}")
    kind = kinds[0]
    body = step[kind]

    if kind == "advance":
        oracle.advance(int(body))
    elif kind == "commit":
        oracle.commit(_amount(body["price"]), timestamp=body.get("timestamp"), valid=body.get("valid", True))
    elif kind == "update":
        deltas = {k: _amount(body[k]) for k in _POSITION_KEYS if k in body}
        market.update(
            body["account"],
            protect=bool(body.get("protect", False)),
            referrer=body.get("referrer"),
            sender=body.get("sender"),
            **deltas,
        )
    elif kind == "close":
        market.close(
            body["account"],
            protect=bool(body.get("protect", False)),
            referrer=body.get("referrer"),
            sender=body.get("sender"),
        )
    elif kind == "settle":
        market.settle(str(body))
    elif kind == "claim":
        sender = body["sender"]
        market.claim_fee(body.get("receiver", sender), sender=sender)
    else:
        raise ValueError(f"unknown step kind: {kind}")


def replay(params: ParameterSet, scenario: dict[str, Any]) -> dict[str, Any]:
    """Run every step and return the final summary."""
    market, oracle, transfer = build_market(params, scenario)
    for index, step in enumerate(scenario.get("steps") or []):
        try:
            apply_step(market, oracle, step)
        except MarketError as exc:
            if not step.get("expect_error"):
                raise
            logger.info("step %d rejected as expected: %s", index, exc)
            continue
        if step.get("expect_error"):
            raise ValueError(f"step {index} was expected to fail: {step!r}")
        logger.debug("step %d ok: %s", index, step)

    return {
        "market": market.snapshot(),
        "wallets": dict(sorted(transfer.balances.items())),
        "deposited": transfer.deposited,
        "withdrawn": transfer.withdrawn,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Replay a perpledger market scenario")
    parser.add_argument("--params", required=True, help="parameter YAML (risk/market/protocol)")
    parser.add_argument("--scenario", required=True, help="scenario YAML")
    parser.add_argument("--log-level", default="WARNING", help="logging level (default: WARNING)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    params = load_parameters(args.params)
    scenario = yaml.safe_load(Path(args.scenario).read_text(encoding="utf-8")) or {}
    if not isinstance(scenario, dict):
        print("[market-replay] FAIL: scenario must be a mapping")
        return 1

    try:
        summary = replay(params, scenario)
    except (MarketError, InsufficientFundsError, ValueError) as exc:
        print(f"[market-replay] FAIL: {exc}")
        return 1

    print(canonical_json_bytes(json.loads(json.dumps(summary))).decode("utf-8"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
