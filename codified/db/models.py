"""SQLAlchemy async database models for Codified.

Codified extractions keep their line items as a JSON array on the extraction
row; the project data library keeps one row per (project_id, item_code) with
an append-only JSON value history.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from codified.utils.timestamps import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ProjectModel(Base):
    """Project that owns documents and a data library."""

    __tablename__ = "projects"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class DocumentModel(Base):
    """Filed source document. Only the name and project link are used here."""

    __tablename__ = "documents"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    project_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("projects.id", ondelete="SET NULL"), index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class CanonicalCodeModel(Base):
    """Canonical item code directory consulted by upstream matching."""

    __tablename__ = "canonical_codes"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    data_type: Mapped[str] = mapped_column(Text, nullable=False, default="currency")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class CodifiedExtractionModel(Base):
    """Codified extraction of one source document.

    ``mapping_stats`` and ``is_fully_confirmed`` are derived from ``items`` and
    rewritten on every item mutation.
    """

    __tablename__ = "codified_extractions"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    document_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False
    )
    project_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("projects.id", ondelete="SET NULL")
    )

    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    mapping_stats: Mapped[dict[str, int]] = mapped_column(JSON, default=dict, nullable=False)

    # Pipeline stages
    fast_pass_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    smart_pass_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_fully_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Library merge (set once)
    merged_to_project_library: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    merged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    codified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Insertion order; breaks ties between equal codified_at values
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    smart_pass_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Soft delete
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    deleted_reason: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("idx_extractions_document", "document_id", "codified_at"),
        Index("idx_extractions_project", "project_id"),
        Index("idx_extractions_unmerged", "is_fully_confirmed", "merged_to_project_library"),
    )


class ProjectDataItemModel(Base):
    """Project data library record, one per (project_id, item_code)."""

    __tablename__ = "project_data_items"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    item_code: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    original_name: Mapped[str] = mapped_column(Text, nullable=False)

    # Current value
    current_value: Mapped[Any] = mapped_column(JSON)
    current_value_normalized: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    current_unit: Mapped[str | None] = mapped_column(Text)
    # Text rather than a FK: manual entries use placeholder sources
    current_source_document_id: Mapped[str | None] = mapped_column(Text)
    current_source_document_name: Mapped[str] = mapped_column(Text, nullable=False)
    current_data_type: Mapped[str] = mapped_column(Text, nullable=False)

    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_updated_by: Mapped[str] = mapped_column(Text, nullable=False, default="extraction")
    last_updated_by_user_id: Mapped[str | None] = mapped_column(Text)
    manual_override_note: Mapped[str | None] = mapped_column(Text)

    # Provenance
    has_multiple_sources: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    value_variance: Mapped[float | None] = mapped_column(Float)
    value_history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )

    # Category totals
    is_subtotal: Mapped[bool | None] = mapped_column(Boolean)
    subtotal_reason: Mapped[str | None] = mapped_column(Text)
    is_computed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    computed_from_category: Mapped[str | None] = mapped_column(Text)

    # Soft delete
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    deleted_reason: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("project_id", "item_code", name="uq_project_data_item_code"),
        Index("idx_project_data_items_project", "project_id", "category"),
    )


class MergeTaskModel(Base):
    """Outbox entry for a scheduled library merge."""

    __tablename__ = "merge_tasks"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    extraction_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("codified_extractions.id", ondelete="CASCADE"),
        nullable=False,
    )
    project_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))

    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")  # pending, running, done, failed
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="confirmed")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    result: Mapped[dict | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_merge_tasks_status", "status", "created_at"),
        Index("idx_merge_tasks_extraction", "extraction_id", "status"),
    )


class DataLibrarySnapshotModel(Base):
    """Point-in-time copy of a project's active library values.

    ``items`` holds one entry per active item code (value, normalized value,
    current source). Snapshots tied to a model run are never cleaned up.
    """

    __tablename__ = "data_library_snapshots"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)  # model_run, manual_save, pre_revert_backup, pre_delete_backup
    description: Mapped[str | None] = mapped_column(Text)
    model_run_id: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(Text)

    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    source_document_ids: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    document_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_snapshots_project", "project_id", "created_at"),
        Index("idx_snapshots_model_run", "model_run_id"),
    )
