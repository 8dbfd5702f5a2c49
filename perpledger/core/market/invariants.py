"""Invariant checkers for the market state.

Each function returns True when the invariant holds, and ``check_all()``
returns the list of violated invariant IDs (empty = all pass). The facade runs
``check_all`` on every staged state before committing it. On a staged state
only the records written by the call are checked (see ``staging.changed``);
on a plain state every record is.
Conservation across accounts is not checked here: accounts settle lazily, so
it only holds once every account has been settled to the same version (see
tests/core/test_market/test_properties.py).
"""

from __future__ import annotations

from typing import Callable

from .orders import negative, pending_ids
from .staging import changed, recent
from .state import MarketState


def inv_global_ids_ordered(s: MarketState) -> bool:
    return 0 <= s.global_.latest_id <= s.global_.current_id


def inv_global_pending_present(s: MarketState) -> bool:
    return all(i in s.pending for i in pending_ids(s.global_))


def inv_local_ids_ordered(s: MarketState) -> bool:
    return all(0 <= local.latest_id <= local.current_id for local in changed(s.locals).values())


def inv_local_pending_present(s: MarketState) -> bool:
    for account, local in changed(s.locals).items():
        pending = s.local_pending.get(account, {})
        if any(i not in pending for i in pending_ids(local)):
            return False
    return True


def inv_positions_nonnegative(s: MarketState) -> bool:
    if negative(s.position):
        return False
    return not any(negative(p) for p in changed(s.positions).values())


def inv_local_positions_single_sided(s: MarketState) -> bool:
    return all(p.single_sided for p in changed(s.positions).values())


def inv_local_not_ahead_of_global(s: MarketState) -> bool:
    return all(p.timestamp <= s.position.timestamp for p in changed(s.positions).values())


def inv_fee_pools_nonnegative(s: MarketState) -> bool:
    g = s.global_
    return min(g.protocol_fee, g.oracle_fee, g.risk_fee, g.donation) >= 0


def inv_deficits_nonnegative(s: MarketState) -> bool:
    g = s.global_
    if min(g.deficit_long, g.deficit_short, g.deficit_maker) < 0:
        return False
    return all(local.deficit >= 0 for local in changed(s.locals).values())


def inv_claimable_nonnegative(s: MarketState) -> bool:
    return all(local.claimable >= 0 for local in changed(s.locals).values())


def inv_version_log_sorted(s: MarketState) -> bool:
    log = recent(s.version_log)
    return all(a < b for a, b in zip(log, log[1:]))


def inv_version_log_matches_versions(s: MarketState) -> bool:
    return len(s.version_log) == len(s.versions) and all(t in s.versions for t in recent(s.version_log))


def inv_latest_price_matches_oracle(s: MarketState) -> bool:
    if not s.latest_oracle.valid:
        return True
    return s.global_.latest_price == s.latest_oracle.price


# ---------------------------------------------------------------------------
# Registry + check_all
# ---------------------------------------------------------------------------

INVARIANT_REGISTRY: dict[str, Callable[[MarketState], bool]] = {
    "inv_global_ids_ordered": inv_global_ids_ordered,
    "inv_global_pending_present": inv_global_pending_present,
    "inv_local_ids_ordered": inv_local_ids_ordered,
    "inv_local_pending_present": inv_local_pending_present,
    "inv_positions_nonnegative": inv_positions_nonnegative,
    "inv_local_positions_single_sided": inv_local_positions_single_sided,
    "inv_local_not_ahead_of_global": inv_local_not_ahead_of_global,
    "inv_fee_pools_nonnegative": inv_fee_pools_nonnegative,
    "inv_deficits_nonnegative": inv_deficits_nonnegative,
    "inv_claimable_nonnegative": inv_claimable_nonnegative,
    "inv_version_log_sorted": inv_version_log_sorted,
    "inv_version_log_matches_versions": inv_version_log_matches_versions,
    "inv_latest_price_matches_oracle": inv_latest_price_matches_oracle,
}


def check_all(state: MarketState) -> list[str]:
    """Return list of violated invariant IDs (empty = all pass)."""
    return [
        inv_id
        for inv_id, check_fn in INVARIANT_REGISTRY.items()
        if not check_fn(state)
    ]
