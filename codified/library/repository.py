"""Database queries for the project data library."""

from __future__ import annotations

from collections import defaultdict
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from codified.db.models import CodifiedExtractionModel, MergeTaskModel, ProjectDataItemModel
from codified.library.history import history_payload, load_history
from codified.library.service import category_total_code
from codified.tasks.outbox import FAILED, PENDING, RUNNING
from codified.utils.timestamps import isoformat, utcnow


async def _project_rows(
    session: AsyncSession, project_id: UUID, deleted: bool | None = False
) -> list[ProjectDataItemModel]:
    stmt = select(ProjectDataItemModel).where(ProjectDataItemModel.project_id == project_id)
    if deleted is not None:
        stmt = stmt.where(ProjectDataItemModel.is_deleted.is_(deleted))
    stmt = stmt.order_by(ProjectDataItemModel.category, ProjectDataItemModel.item_code)
    return list((await session.execute(stmt)).scalars())


def item_to_dict(row: ProjectDataItemModel) -> dict[str, Any]:
    """JSON shape of a library item as returned by the API."""
    return {
        "id": str(row.id),
        "projectId": str(row.project_id),
        "itemCode": row.item_code,
        "category": row.category,
        "originalName": row.original_name,
        "currentValue": row.current_value,
        "currentValueNormalized": row.current_value_normalized,
        "currentUnit": row.current_unit,
        "currentSourceDocumentId": row.current_source_document_id,
        "currentSourceDocumentName": row.current_source_document_name,
        "currentDataType": row.current_data_type,
        "lastUpdatedAt": isoformat(row.last_updated_at),
        "lastUpdatedBy": row.last_updated_by,
        "lastUpdatedByUserId": row.last_updated_by_user_id,
        "manualOverrideNote": row.manual_override_note,
        "hasMultipleSources": row.has_multiple_sources,
        "valueVariance": row.value_variance,
        "valueHistory": history_payload(load_history(row)),
        "isSubtotal": row.is_subtotal,
        "subtotalReason": row.subtotal_reason,
        "isComputed": row.is_computed,
        "computedFromCategory": row.computed_from_category,
        "isDeleted": row.is_deleted,
        "deletedAt": isoformat(row.deleted_at),
        "deletedReason": row.deleted_reason,
    }


async def get_project_library(session: AsyncSession, project_id: UUID) -> list[dict[str, Any]]:
    """Active items plus one total per category.

    A category total sums ``current_value_normalized`` over the category's
    currency items, leaving out subtotals. A stored ``<total.*>`` item is a
    manual override and replaces the computed total.
    """
    rows = await _project_rows(session, project_id)

    totals: dict[str, float] = defaultdict(float)
    counts: dict[str, int] = defaultdict(int)
    overrides: dict[str, ProjectDataItemModel] = {}
    regular: list[ProjectDataItemModel] = []

    for row in rows:
        if row.item_code == category_total_code(row.category):
            if not row.is_computed:
                overrides[row.category] = row
            continue
        regular.append(row)
        if row.is_computed:
            continue

        counts[row.category] += 1
        if row.current_data_type == "currency" and not row.is_subtotal:
            totals[row.category] += row.current_value_normalized or 0.0

    categories = list(dict.fromkeys([*counts, *overrides]))
    now = isoformat(utcnow())

    computed = []
    for category in categories:
        override = overrides.get(category)
        if override is not None:
            payload = item_to_dict(override)
            payload.update(
                isComputed=False,
                computedFromCategory=category,
                computedTotal=totals.get(category, 0.0),
            )
            computed.append(payload)
            continue

        total = totals.get(category, 0.0)
        computed.append(
            {
                "id": f"computed-{category}",
                "projectId": str(project_id),
                "itemCode": category_total_code(category),
                "category": category,
                "originalName": f"Total {category}",
                "currentValue": total,
                "currentValueNormalized": total,
                "currentUnit": "actual",
                "currentSourceDocumentId": "computed",
                "currentSourceDocumentName": "Computed Total",
                "currentDataType": "currency",
                "lastUpdatedAt": now,
                "lastUpdatedBy": "extraction",
                "hasMultipleSources": False,
                "valueHistory": [],
                "isComputed": True,
                "computedFromCategory": category,
                "computedItemCount": counts.get(category, 0),
            }
        )

    return [item_to_dict(row) for row in regular] + computed


async def get_project_library_by_category(
    session: AsyncSession, project_id: UUID
) -> dict[str, list[dict[str, Any]]]:
    grouped: dict[str, list[dict[str, Any]]] = {}
    for row in await _project_rows(session, project_id):
        grouped.setdefault(row.category, []).append(item_to_dict(row))
    return grouped


async def get_item_history(session: AsyncSession, item_id: UUID) -> dict[str, Any] | None:
    """An item with its value history, newest entry first."""
    row = await session.get(ProjectDataItemModel, item_id)
    if row is None:
        return None

    history = sorted(load_history(row), key=lambda entry: entry.added_at, reverse=True)
    return {"item": item_to_dict(row), "history": history_payload(history)}


async def get_items_from_document(
    session: AsyncSession, project_id: UUID, document_id: UUID
) -> list[dict[str, Any]]:
    source = str(document_id)
    return [
        item_to_dict(row)
        for row in await _project_rows(session, project_id)
        if any(entry.source_document_id == source for entry in load_history(row))
    ]


async def get_changed_items(session: AsyncSession, project_id: UUID) -> list[dict[str, Any]]:
    """Items with more than one contributing source."""
    return [
        item_to_dict(row)
        for row in await _project_rows(session, project_id)
        if row.has_multiple_sources
    ]


async def get_deleted_items(session: AsyncSession, project_id: UUID) -> list[dict[str, Any]]:
    return [item_to_dict(row) for row in await _project_rows(session, project_id, deleted=True)]


async def get_library_stats(session: AsyncSession, project_id: UUID) -> dict[str, Any]:
    rows = await _project_rows(session, project_id, deleted=None)
    active = [row for row in rows if not row.is_deleted]

    source_documents = {
        entry.source_document_id
        for row in active
        for entry in load_history(row)
        if entry.source_document_id
    }
    by_category: dict[str, int] = defaultdict(int)
    for row in active:
        by_category[row.category] += 1

    return {
        "totalItems": len(active),
        "totalDocuments": len(source_documents),
        "byCategory": dict(by_category),
        "manualOverrides": sum(1 for row in active if row.last_updated_by == "manual"),
        "multiSourceItems": sum(1 for row in active if row.has_multiple_sources),
        "deletedItems": len(rows) - len(active),
    }


async def check_item_code_exists(
    session: AsyncSession, project_id: UUID, item_code: str
) -> dict[str, Any]:
    """Look up a code, deleted items included."""
    stmt = select(ProjectDataItemModel).where(
        ProjectDataItemModel.project_id == project_id,
        ProjectDataItemModel.item_code == item_code,
    )
    row = (await session.execute(stmt)).scalars().first()
    return {"exists": row is not None, "item": item_to_dict(row) if row else None}


async def get_existing_item_codes(session: AsyncSession, project_id: UUID) -> list[dict[str, str]]:
    return [
        {"itemCode": row.item_code, "category": row.category, "originalName": row.original_name}
        for row in await _project_rows(session, project_id)
    ]


async def get_pending_extractions(session: AsyncSession, project_id: UUID) -> dict[str, Any]:
    """Confirmation and merge progress of a project's extractions."""
    stmt = select(CodifiedExtractionModel).where(
        CodifiedExtractionModel.project_id == project_id,
        CodifiedExtractionModel.is_deleted.is_(False),
    )
    extractions = list((await session.execute(stmt)).scalars())

    unconfirmed = [e for e in extractions if not e.is_fully_confirmed]
    pending_merge = [
        e for e in extractions if e.is_fully_confirmed and not e.merged_to_project_library
    ]
    merged = [e for e in extractions if e.merged_to_project_library]

    task_stmt = (
        select(MergeTaskModel.status, func.count())
        .where(MergeTaskModel.project_id == project_id)
        .group_by(MergeTaskModel.status)
    )
    task_counts = dict((await session.execute(task_stmt)).all())
    open_tasks = task_counts.get(PENDING, 0) + task_counts.get(RUNNING, 0)
    failed_tasks = task_counts.get(FAILED, 0)

    return {
        "hasUnconfirmed": bool(unconfirmed),
        "unconfirmedCount": len(unconfirmed),
        "unconfirmedItemCount": sum(len(e.items or []) for e in unconfirmed),
        "hasPendingMerge": bool(pending_merge),
        "pendingMergeCount": len(pending_merge),
        "pendingMergeItemCount": sum(len(e.items or []) for e in pending_merge),
        "totalExtractions": len(extractions),
        "fullyMergedCount": len(merged),
        "pendingTaskCount": open_tasks,
        "failedTaskCount": failed_tasks,
        "needsAttention": bool(unconfirmed) or open_tasks > 0 or failed_tasks > 0,
    }
