"""Project data library maintenance operations.

Reverts, manual overrides, manual items, soft delete/restore and category
total overrides. Merges from extractions live in ``codified.library.merge``.
"""

from __future__ import annotations

import re
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from codified.config import get_config
from codified.core.errors import NotFoundError, PreconditionError
from codified.db.models import ProjectDataItemModel, ProjectModel
from codified.extraction.values import normalize_value
from codified.library.history import apply_current, demote_all, load_history, store_history
from codified.library.snapshots import create_snapshot
from codified.models import HistoryEntry, RevertResult
from codified.utils.timestamps import isoformat, utcnow

logger = structlog.get_logger(__name__)

MANUAL_SOURCE_NAME = "Manual Override"


def category_to_slug(category: str) -> str:
    """``"Construction Costs"`` -> ``"construction.costs"``"""
    slug = re.sub(r"[^a-z0-9\s]", "", category.lower()).strip()
    return re.sub(r"\s+", ".", slug)


def category_total_code(category: str) -> str:
    return f"<total.{category_to_slug(category)}>"


async def require_item(session: AsyncSession, item_id: UUID) -> ProjectDataItemModel:
    row = await session.get(ProjectDataItemModel, item_id)
    if row is None:
        raise NotFoundError("project data item", item_id)
    return row


async def find_by_code(
    session: AsyncSession, project_id: UUID, item_code: str
) -> ProjectDataItemModel | None:
    stmt = select(ProjectDataItemModel).where(
        ProjectDataItemModel.project_id == project_id,
        ProjectDataItemModel.item_code == item_code,
    )
    return (await session.execute(stmt)).scalars().first()


async def revert_document_addition(
    session: AsyncSession,
    project_id: UUID,
    document_id: UUID,
    create_backup_snapshot: bool = False,
) -> RevertResult:
    """Retract every value a document contributed to a project's library.

    Items with no other non-reverted source are soft-deleted. The rest fall
    back to the most recent value from another source, and the document's
    entries are flagged ``was_reverted``. With ``create_backup_snapshot`` the
    library is snapshotted first (``pre_revert_backup``).
    """
    backup = None
    if create_backup_snapshot:
        backup = await create_snapshot(
            session,
            project_id,
            "pre_revert_backup",
            description=f"Backup before removing document {document_id}",
        )

    stmt = select(ProjectDataItemModel).where(
        ProjectDataItemModel.project_id == project_id,
        ProjectDataItemModel.is_deleted.is_(False),
    )
    rows = list((await session.execute(stmt)).scalars())

    source = str(document_id)
    now = utcnow()
    reverted = 0
    deleted = 0

    for row in rows:
        history = load_history(row)
        if not any(entry.source_document_id == source for entry in history):
            continue

        others = [
            index
            for index, entry in enumerate(history)
            if entry.source_document_id != source and not entry.was_reverted
        ]
        if not others:
            row.is_deleted = True
            row.deleted_at = now
            row.deleted_reason = "Source document removed"
            deleted += 1
            continue

        previous = max(others, key=lambda index: (history[index].added_at, index))
        updated = []
        for index, entry in enumerate(history):
            if entry.source_document_id == source:
                entry = entry.model_copy(update={"was_reverted": True, "is_current_value": False})
            else:
                entry = entry.model_copy(update={"is_current_value": index == previous})
            updated.append(entry)

        store_history(row, updated)
        apply_current(row, updated[previous])
        row.last_updated_at = now
        row.last_updated_by = "extraction"
        reverted += 1

    await session.flush()
    logger.info(
        "library_document_reverted",
        project_id=str(project_id),
        document_id=source,
        reverted=reverted,
        deleted=deleted,
    )
    return RevertResult(
        reverted=reverted,
        deleted=deleted,
        backup_snapshot_id=str(backup.id) if backup is not None else None,
    )


async def revert_item_to_version(
    session: AsyncSession, item_id: UUID, history_index: int
) -> dict[str, bool]:
    row = await require_item(session, item_id)
    history = load_history(row)

    if history_index < 0 or history_index >= len(history):
        raise PreconditionError(f"Invalid history index {history_index}")

    updated = [
        entry.model_copy(update={"is_current_value": index == history_index})
        for index, entry in enumerate(history)
    ]
    store_history(row, updated)
    apply_current(row, updated[history_index])
    row.last_updated_at = utcnow()

    await session.flush()
    return {"success": True}


async def manual_override_item(
    session: AsyncSession,
    item_id: UUID,
    new_value: Any,
    note: str | None = None,
    user_id: str | None = None,
) -> dict[str, bool]:
    row = await require_item(session, item_id)
    user_id = user_id or get_config().default_actor
    now = utcnow()

    history = demote_all(load_history(row))
    entry = HistoryEntry(
        value=new_value,
        value_normalized=normalize_value(new_value),
        # Keep a reference to the source the value replaces
        source_document_id=row.current_source_document_id,
        source_document_name=MANUAL_SOURCE_NAME,
        source_extraction_id=history[0].source_extraction_id if history else None,
        original_name=row.original_name,
        added_at=isoformat(now),
        added_by="manual",
        added_by_user_id=user_id,
    )
    store_history(row, [*history, entry])

    row.current_value = entry.value
    row.current_value_normalized = entry.value_normalized
    row.last_updated_at = now
    row.last_updated_by = "manual"
    row.last_updated_by_user_id = user_id
    row.manual_override_note = note
    row.has_multiple_sources = True

    await session.flush()
    logger.info("library_item_overridden", item_id=str(item_id), user_id=user_id)
    return {"success": True}


async def add_manual_item(
    session: AsyncSession,
    project_id: UUID,
    item_code: str,
    category: str,
    original_name: str,
    value: Any,
    data_type: str,
    note: str | None = None,
    user_id: str | None = None,
    source_document_id: str | None = None,
    source_document_name: str | None = None,
) -> UUID:
    """Add a library item by hand.

    A soft-deleted item with the same code is revived rather than duplicated.

    Raises:
        NotFoundError: If the project does not exist
        PreconditionError: If an active item already uses the code
    """
    if await session.get(ProjectModel, project_id) is None:
        raise NotFoundError("project", project_id)

    existing = await find_by_code(session, project_id, item_code)
    if existing is not None and not existing.is_deleted:
        raise PreconditionError(f"Item with code {item_code} already exists")

    user_id = user_id or get_config().default_actor
    now = utcnow()
    entry = HistoryEntry(
        value=value,
        value_normalized=normalize_value(value),
        source_document_id=source_document_id or "manual",
        source_document_name=source_document_name or "Manual Entry",
        source_extraction_id=None,
        original_name=original_name,
        added_at=isoformat(now),
        added_by="manual",
        added_by_user_id=user_id,
    )

    if existing is not None:
        row = existing
        row.is_deleted = False
        row.deleted_at = None
        row.deleted_reason = None
        store_history(row, [*demote_all(load_history(row)), entry])
    else:
        row = ProjectDataItemModel(project_id=project_id, item_code=item_code)
        store_history(row, [entry])
        session.add(row)

    row.category = category
    row.current_data_type = data_type
    apply_current(row, entry)
    row.last_updated_at = now
    row.last_updated_by = "manual"
    row.last_updated_by_user_id = user_id
    row.manual_override_note = note
    row.has_multiple_sources = existing is not None

    await session.flush()
    logger.info("library_item_added", project_id=str(project_id), item_code=item_code)
    return row.id


async def delete_item(
    session: AsyncSession, item_id: UUID, reason: str | None = None
) -> dict[str, bool]:
    row = await require_item(session, item_id)
    row.is_deleted = True
    row.deleted_at = utcnow()
    row.deleted_reason = reason or "User deleted"
    await session.flush()
    return {"success": True}


async def restore_item(session: AsyncSession, item_id: UUID) -> dict[str, bool]:
    row = await require_item(session, item_id)
    if not row.is_deleted:
        raise PreconditionError("Item is not deleted")

    row.is_deleted = False
    row.deleted_at = None
    row.deleted_reason = None
    await session.flush()
    return {"success": True}


async def override_category_total(
    session: AsyncSession,
    project_id: UUID,
    category: str,
    override_value: float,
    note: str | None = None,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Pin a category total to a manual value instead of the computed sum."""
    total_code = category_total_code(category)
    user_id = user_id or get_config().default_actor
    now = utcnow()
    existing = await find_by_code(session, project_id, total_code)

    if existing is not None:
        history = demote_all(load_history(existing))
        history.append(
            HistoryEntry(
                value=override_value,
                value_normalized=float(override_value),
                source_document_id=existing.current_source_document_id,
                source_document_name=MANUAL_SOURCE_NAME,
                source_extraction_id=history[0].source_extraction_id if history else None,
                original_name=f"Total {category}",
                added_at=isoformat(now),
                added_by="manual",
                added_by_user_id=user_id,
            )
        )
        store_history(existing, history)
        existing.current_value = override_value
        existing.current_value_normalized = float(override_value)
        existing.last_updated_at = now
        existing.last_updated_by = "manual"
        existing.last_updated_by_user_id = user_id
        existing.manual_override_note = note
        existing.is_computed = False
        existing.is_deleted = False
        existing.has_multiple_sources = len(history) > 1
        await session.flush()
        return {"itemId": str(existing.id), "updated": True}

    if await session.get(ProjectModel, project_id) is None:
        raise NotFoundError("project", project_id)

    entry = HistoryEntry(
        value=override_value,
        value_normalized=float(override_value),
        source_document_id="manual-override",
        source_document_name=MANUAL_SOURCE_NAME,
        original_name=f"Total {category}",
        added_at=isoformat(now),
        added_by="manual",
        added_by_user_id=user_id,
    )
    row = ProjectDataItemModel(
        project_id=project_id,
        item_code=total_code,
        category=category,
        current_data_type="currency",
        last_updated_at=now,
        last_updated_by="manual",
        last_updated_by_user_id=user_id,
        manual_override_note=note,
        has_multiple_sources=False,
        is_computed=False,
        computed_from_category=category,
    )
    apply_current(row, entry)
    store_history(row, [entry])
    session.add(row)
    await session.flush()
    return {"itemId": str(row.id), "updated": False}


async def clear_category_total_override(
    session: AsyncSession, project_id: UUID, category: str
) -> dict[str, bool]:
    """Drop a manual category total so the computed sum applies again."""
    existing = await find_by_code(session, project_id, category_total_code(category))
    if existing is None:
        return {"success": True, "deleted": False}

    await session.delete(existing)
    await session.flush()
    return {"success": True, "deleted": True}
