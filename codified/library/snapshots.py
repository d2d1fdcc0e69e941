"""Point-in-time snapshots of a project data library.

A snapshot copies the current value of every active item. Reverting to a
snapshot writes each captured value back as a new manual history entry, so the
library history still only grows. A ``pre_revert_backup`` snapshot of the
state being replaced is taken first.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, get_args
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from codified.config import get_config
from codified.core.errors import NotFoundError
from codified.db.models import DataLibrarySnapshotModel, ProjectDataItemModel, ProjectModel
from codified.library.history import apply_current, demote_all, load_history, store_history
from codified.models import HistoryEntry, SnapshotItem, SnapshotReason
from codified.utils.timestamps import isoformat, utcnow

logger = structlog.get_logger(__name__)

SNAPSHOT_REASONS: tuple[str, ...] = get_args(SnapshotReason)


async def _project_items(
    session: AsyncSession, project_id: UUID
) -> list[ProjectDataItemModel]:
    stmt = (
        select(ProjectDataItemModel)
        .where(ProjectDataItemModel.project_id == project_id)
        .order_by(ProjectDataItemModel.category, ProjectDataItemModel.item_code)
    )
    return list((await session.execute(stmt)).scalars())


def _capture(row: ProjectDataItemModel) -> SnapshotItem:
    return SnapshotItem(
        item_code=row.item_code,
        category=row.category,
        original_name=row.original_name,
        value=row.current_value,
        value_normalized=row.current_value_normalized,
        source_document_id=row.current_source_document_id,
        source_document_name=row.current_source_document_name,
        data_type=row.current_data_type,
    )


def load_snapshot_items(snapshot: DataLibrarySnapshotModel) -> list[SnapshotItem]:
    return [SnapshotItem.model_validate(raw) for raw in snapshot.items or []]


async def create_snapshot(
    session: AsyncSession,
    project_id: UUID,
    reason: str,
    description: str | None = None,
    model_run_id: str | None = None,
    user_id: str | None = None,
) -> DataLibrarySnapshotModel:
    """Capture the project's active library items.

    Raises:
        ValueError: If ``reason`` is not a known snapshot reason
        NotFoundError: If the project does not exist
    """
    if reason not in SNAPSHOT_REASONS:
        raise ValueError(f"Unknown snapshot reason {reason!r}")
    if await session.get(ProjectModel, project_id) is None:
        raise NotFoundError("project", project_id)

    active = [row for row in await _project_items(session, project_id) if not row.is_deleted]
    items = [_capture(row) for row in active]
    sources = sorted({item.source_document_id for item in items if item.source_document_id})

    snapshot = DataLibrarySnapshotModel(
        project_id=project_id,
        reason=reason,
        description=description,
        model_run_id=model_run_id,
        created_by=user_id or get_config().default_actor,
        items=[item.model_dump(mode="json") for item in items],
        source_document_ids=sources,
        item_count=len(items),
        document_count=len(sources),
        created_at=utcnow(),
    )
    session.add(snapshot)
    await session.flush()

    logger.info(
        "library_snapshot_created",
        snapshot_id=str(snapshot.id),
        project_id=str(project_id),
        reason=reason,
        items=len(items),
    )
    return snapshot


async def get_snapshots_by_project(
    session: AsyncSession, project_id: UUID
) -> list[DataLibrarySnapshotModel]:
    """Snapshots of a project, newest first."""
    stmt = (
        select(DataLibrarySnapshotModel)
        .where(DataLibrarySnapshotModel.project_id == project_id)
        .order_by(DataLibrarySnapshotModel.created_at.desc())
    )
    return list((await session.execute(stmt)).scalars())


async def require_snapshot(session: AsyncSession, snapshot_id: UUID) -> DataLibrarySnapshotModel:
    snapshot = await session.get(DataLibrarySnapshotModel, snapshot_id)
    if snapshot is None:
        raise NotFoundError("library snapshot", snapshot_id)
    return snapshot


async def get_snapshot_by_model_run(
    session: AsyncSession, model_run_id: str
) -> DataLibrarySnapshotModel | None:
    stmt = select(DataLibrarySnapshotModel).where(
        DataLibrarySnapshotModel.model_run_id == model_run_id
    )
    return (await session.execute(stmt)).scalars().first()


async def compare_snapshots(
    session: AsyncSession, first_id: UUID, second_id: UUID
) -> dict[str, Any]:
    """Diff two snapshots by item code.

    ``added`` are codes only in the second, ``removed`` only in the first, and
    ``changed`` are codes whose normalized value differs.
    """
    first = await require_snapshot(session, first_id)
    second = await require_snapshot(session, second_id)

    before = {item.item_code: item for item in load_snapshot_items(first)}
    after = {item.item_code: item for item in load_snapshot_items(second)}

    added = [item for code, item in after.items() if code not in before]
    removed = [item for code, item in before.items() if code not in after]
    changed = []
    for code, old in before.items():
        new = after.get(code)
        if new is not None and new.value_normalized != old.value_normalized:
            changed.append(
                {
                    "itemCode": code,
                    "category": old.category,
                    "originalName": new.original_name,
                    "oldValue": old.value,
                    "newValue": new.value,
                    "oldSource": old.source_document_name,
                    "newSource": new.source_document_name,
                }
            )

    return {
        "snapshot1": snapshot_to_dict(first, include_items=False),
        "snapshot2": snapshot_to_dict(second, include_items=False),
        "added": [item.model_dump(by_alias=True) for item in added],
        "removed": [item.model_dump(by_alias=True) for item in removed],
        "changed": changed,
        "summary": {
            "addedCount": len(added),
            "removedCount": len(removed),
            "changedCount": len(changed),
        },
    }


async def revert_to_snapshot(
    session: AsyncSession, snapshot_id: UUID, user_id: str | None = None
) -> dict[str, Any]:
    """Restore the project library to a snapshot's values.

    Items missing from the snapshot are soft-deleted. Captured items get their
    value back as a new current history entry (reviving them if deleted), and
    captured codes with no row are recreated.
    """
    snapshot = await require_snapshot(session, snapshot_id)
    user_id = user_id or get_config().default_actor
    restored_to = isoformat(snapshot.created_at)

    backup = await create_snapshot(
        session,
        snapshot.project_id,
        "pre_revert_backup",
        description=f"Backup before reverting to snapshot from {restored_to}",
        user_id=user_id,
    )

    now = utcnow()
    pending = {item.item_code: item for item in load_snapshot_items(snapshot)}

    for row in await _project_items(session, snapshot.project_id):
        captured = pending.pop(row.item_code, None)
        if captured is None:
            if not row.is_deleted:
                row.is_deleted = True
                row.deleted_at = now
                row.deleted_reason = "Reverted to earlier snapshot"
            continue

        entry = _restored_entry(captured, now, user_id)
        store_history(row, [*demote_all(load_history(row)), entry])
        apply_current(row, entry, data_type=captured.data_type)
        row.last_updated_at = now
        row.last_updated_by = "manual"
        row.last_updated_by_user_id = user_id
        row.is_deleted = False
        row.deleted_at = None
        row.deleted_reason = None

    for code, captured in pending.items():
        entry = _restored_entry(captured, now, user_id)
        row = ProjectDataItemModel(
            project_id=snapshot.project_id,
            item_code=code,
            category=captured.category,
            current_data_type=captured.data_type,
            last_updated_at=now,
            last_updated_by="manual",
            last_updated_by_user_id=user_id,
            manual_override_note=f"Restored from snapshot {snapshot.id}",
            has_multiple_sources=False,
        )
        apply_current(row, entry)
        store_history(row, [entry])
        session.add(row)

    await session.flush()
    logger.info(
        "library_snapshot_restored",
        snapshot_id=str(snapshot_id),
        project_id=str(snapshot.project_id),
        backup_snapshot_id=str(backup.id),
        recreated=len(pending),
    )
    return {
        "success": True,
        "restoredTo": restored_to,
        "itemCount": snapshot.item_count,
        "backupSnapshotId": str(backup.id),
    }


def _restored_entry(item: SnapshotItem, now: datetime, user_id: str) -> HistoryEntry:
    return HistoryEntry(
        value=item.value,
        value_normalized=item.value_normalized,
        source_document_id=item.source_document_id,
        source_document_name=item.source_document_name,
        source_extraction_id=None,
        original_name=item.original_name,
        added_at=isoformat(now),
        added_by="manual",
        added_by_user_id=user_id,
    )


async def cleanup_old_snapshots(
    session: AsyncSession, project_id: UUID, keep_count: int
) -> dict[str, int]:
    """Delete all but the newest ``keep_count`` snapshots of a project.

    Snapshots linked to a model run are always kept.
    """
    if keep_count < 0:
        raise ValueError("keep_count must not be negative")

    snapshots = await get_snapshots_by_project(session, project_id)
    doomed = [snapshot for snapshot in snapshots[keep_count:] if snapshot.model_run_id is None]
    for snapshot in doomed:
        await session.delete(snapshot)
    await session.flush()

    logger.info("library_snapshots_cleaned", project_id=str(project_id), deleted=len(doomed))
    return {"deleted": len(doomed)}


def snapshot_to_dict(
    snapshot: DataLibrarySnapshotModel, include_items: bool = True
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": str(snapshot.id),
        "projectId": str(snapshot.project_id),
        "createdAt": isoformat(snapshot.created_at),
        "createdBy": snapshot.created_by,
        "reason": snapshot.reason,
        "description": snapshot.description,
        "modelRunId": snapshot.model_run_id,
        "itemCount": snapshot.item_count,
        "documentCount": snapshot.document_count,
        "sourceDocumentIds": list(snapshot.source_document_ids or []),
    }
    if include_items:
        data["items"] = [item.model_dump(by_alias=True) for item in load_snapshot_items(snapshot)]
    return data
