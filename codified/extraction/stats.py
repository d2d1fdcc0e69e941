"""Derived state for codified extractions.

Every path that changes an extraction's items goes through
``recompute_derived`` before persisting, so ``mapping_stats`` and
``is_fully_confirmed`` never drift from the items they summarize.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from codified.models import CodifiedItem, DerivedState, MappingStats, MappingStatus

_STAT_FIELD = {
    MappingStatus.MATCHED: "matched",
    MappingStatus.SUGGESTED: "suggested",
    MappingStatus.PENDING_REVIEW: "pending_review",
    MappingStatus.CONFIRMED: "confirmed",
    MappingStatus.UNMATCHED: "unmatched",
}


def _status_of(item: CodifiedItem | Mapping[str, Any]) -> MappingStatus:
    if isinstance(item, CodifiedItem):
        return item.mapping_status

    raw = item.get("mapping_status", item.get("mappingStatus"))
    try:
        return MappingStatus(raw)
    except ValueError:
        raise ValueError(f"Unknown mapping status {raw!r} on item {item.get('id')!r}") from None


def compute_stats(items: Iterable[CodifiedItem | Mapping[str, Any]]) -> MappingStats:
    """Count items per mapping status.

    Raises:
        ValueError: If an item carries a status outside the five known values
    """
    counts = dict.fromkeys(_STAT_FIELD.values(), 0)
    for item in items:
        counts[_STAT_FIELD[_status_of(item)]] += 1
    return MappingStats(**counts)


def is_fully_confirmed(stats: MappingStats) -> bool:
    return stats.pending_review == 0 and stats.suggested == 0


def recompute_derived(items: Iterable[CodifiedItem | Mapping[str, Any]]) -> DerivedState:
    stats = compute_stats(items)
    return DerivedState(stats=stats, is_fully_confirmed=is_fully_confirmed(stats))
