"""Value-history helpers for project data items.

History is append-only. Entries are never removed; only their
``is_current_value`` and ``was_reverted`` flags change.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from codified.db.models import ProjectDataItemModel
from codified.models import HistoryEntry


def load_history(row: ProjectDataItemModel) -> list[HistoryEntry]:
    return [HistoryEntry.model_validate(raw) for raw in row.value_history or []]


def store_history(row: ProjectDataItemModel, entries: Iterable[HistoryEntry]) -> None:
    # Always assign a fresh list so the JSON column is flagged dirty
    row.value_history = [entry.model_dump(mode="json") for entry in entries]


def demote_all(entries: Sequence[HistoryEntry]) -> list[HistoryEntry]:
    return [entry.model_copy(update={"is_current_value": False}) for entry in entries]


def compute_variance(values: Sequence[float]) -> float | None:
    """Percentage spread between the smallest and largest value.

    ``None`` with fewer than two values or when the minimum is zero.
    """
    if len(values) < 2:
        return None
    low, high = min(values), max(values)
    if low == 0:
        return None
    return (high - low) / abs(low) * 100


def apply_current(row: ProjectDataItemModel, entry: HistoryEntry, data_type: str | None = None) -> None:
    """Point the row's current_* fields at a history entry."""
    row.current_value = entry.value
    row.current_value_normalized = entry.value_normalized
    row.current_source_document_id = entry.source_document_id
    row.current_source_document_name = entry.source_document_name
    row.original_name = entry.original_name
    if data_type is not None:
        row.current_data_type = data_type


def history_payload(entries: Iterable[HistoryEntry]) -> list[dict[str, Any]]:
    return [entry.model_dump(mode="json", by_alias=True) for entry in entries]
