"""Delete-impact analysis for codified extractions (read-only)."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from codified.db.models import ProjectDataItemModel
from codified.extraction.repository import load_items, require_extraction, resolve_project_id
from codified.library.history import load_history
from codified.models import DeleteImpact


async def get_delete_impact(session: AsyncSession, extraction_id: UUID) -> DeleteImpact:
    """Classify the library items an extraction contributed to.

    An item "would be removed" when this extraction is its only non-reverted
    source, and "would revert" when other sources remain.

    Raises:
        NotFoundError: If the extraction does not exist
    """
    extraction = await require_extraction(session, extraction_id)

    merged_items = 0
    if extraction.merged_to_project_library:
        merged_items = sum(1 for item in load_items(extraction) if item.is_mergeable)

    project_id = await resolve_project_id(session, extraction)
    if project_id is None:
        return DeleteImpact(can_delete=True, merged_items=merged_items)

    stmt = select(ProjectDataItemModel).where(
        ProjectDataItemModel.project_id == project_id,
        ProjectDataItemModel.is_deleted.is_(False),
    )
    rows = (await session.execute(stmt)).scalars()

    source = str(extraction.id)
    would_remove = 0
    would_revert = 0
    for row in rows:
        history = load_history(row)
        if not any(entry.source_extraction_id == source for entry in history):
            continue

        other_sources = [
            entry
            for entry in history
            if entry.source_extraction_id != source and not entry.was_reverted
        ]
        if other_sources:
            would_revert += 1
        else:
            would_remove += 1

    return DeleteImpact(
        can_delete=True,
        merged_items=merged_items,
        would_remove_items=would_remove,
        would_revert_items=would_revert,
    )
