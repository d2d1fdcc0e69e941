"""Codified Pydantic models for type-safe data validation.

Items and results accept and emit camelCase aliases (``originalName``,
``mappingStatus``) alongside the snake_case field names.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from codified.extraction.values import NumericValue, RawValue, TextValue, classify_value


class MappingStatus(str, Enum):
    """Confirmation lifecycle of a codified item."""

    MATCHED = "matched"  # Accepted: exact dictionary match
    SUGGESTED = "suggested"  # Awaiting decision: AI proposed a code
    PENDING_REVIEW = "pending_review"  # Awaiting decision: no confident proposal
    CONFIRMED = "confirmed"  # Accepted: human confirmed
    UNMATCHED = "unmatched"  # Rejected: skipped

    @property
    def is_accepted(self) -> bool:
        return self in (MappingStatus.MATCHED, MappingStatus.CONFIRMED)

    @property
    def awaits_decision(self) -> bool:
        return self in (MappingStatus.SUGGESTED, MappingStatus.PENDING_REVIEW)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CodifiedItem(CamelModel):
    """One extracted line with its proposed or confirmed canonical code."""

    id: str
    original_name: str
    value: Any = None
    data_type: str
    category: str

    item_code: str | None = None
    suggested_code: str | None = None
    suggested_code_id: str | None = None

    mapping_status: MappingStatus
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    # Excluded from category totals in the library
    is_subtotal: bool | None = None
    subtotal_reason: str | None = None

    @property
    def typed_value(self) -> NumericValue | TextValue | RawValue:
        return classify_value(self.value)

    @property
    def effective_code(self) -> str | None:
        return self.item_code or self.suggested_code or None

    @property
    def is_mergeable(self) -> bool:
        return self.mapping_status.is_accepted and bool(self.effective_code)


class MappingStats(CamelModel):
    matched: int = 0
    suggested: int = 0
    pending_review: int = 0
    confirmed: int = 0
    unmatched: int = 0

    @property
    def total(self) -> int:
        return self.matched + self.suggested + self.pending_review + self.confirmed + self.unmatched


class DerivedState(CamelModel):
    stats: MappingStats
    is_fully_confirmed: bool


class HistoryEntry(CamelModel):
    """One value contributed to a project data item."""

    value: Any = None
    value_normalized: float
    source_document_id: str | None = None
    source_document_name: str
    source_extraction_id: str | None = None
    original_name: str
    added_at: str
    added_by: Literal["extraction", "manual"] = "extraction"
    added_by_user_id: str | None = None
    is_current_value: bool = True
    was_reverted: bool = False


class ConfirmResult(CamelModel):
    is_fully_confirmed: bool
    stats: MappingStats


class ConfirmAllResult(ConfirmResult):
    confirmed_items: list[CodifiedItem] = Field(default_factory=list)


class MergeResult(CamelModel):
    merged: int = 0
    updated: int = 0
    created: int = 0
    already_merged: bool = False


class DeleteImpact(CamelModel):
    can_delete: bool = True
    merged_items: int = 0
    would_remove_items: int = 0
    would_revert_items: int = 0


class BackfillResult(CamelModel):
    extraction_id: str
    action: str
    detail: str | None = None


class MergeUnmergedReport(CamelModel):
    total_extractions: int
    unmerged_found: int
    merged_count: int
    already_scheduled: int = 0
    results: list[BackfillResult] = Field(default_factory=list)


class BackfillReport(CamelModel):
    total_extractions: int
    project_ids_updated: int
    merges_scheduled: int
    already_scheduled: int = 0
    results: list[BackfillResult] = Field(default_factory=list)


class RevertResult(CamelModel):
    reverted: int = 0
    deleted: int = 0
    backup_snapshot_id: str | None = None


class ReadinessResult(CamelModel):
    ready: bool
    reason: str | None = None
    unconfirmed_count: int | None = None


SnapshotReason = Literal["model_run", "manual_save", "pre_revert_backup", "pre_delete_backup"]


class SnapshotItem(CamelModel):
    """Library value captured in a snapshot."""

    item_code: str
    category: str
    original_name: str
    value: Any = None
    value_normalized: float
    source_document_id: str | None = None
    source_document_name: str
    data_type: str = "currency"
