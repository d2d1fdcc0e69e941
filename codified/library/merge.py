"""Library merge engine.

Folds the accepted items of a fully confirmed extraction into the project data
library, one record per (project_id, item_code).

The whole merge for an extraction happens inside the caller's transaction:
rows are only flushed here, so a failure part-way through rolls back every
item together with the ``merged_to_project_library`` stamp.
"""

from __future__ import annotations

from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from codified.core.errors import NotFoundError, PreconditionError
from codified.db.models import (
    CodifiedExtractionModel,
    DocumentModel,
    ProjectDataItemModel,
    ProjectModel,
)
from codified.library.history import (
    apply_current,
    compute_variance,
    demote_all,
    load_history,
    store_history,
)
from codified.models import CodifiedItem, HistoryEntry, MergeResult
from codified.utils.timestamps import isoformat, utcnow

logger = structlog.get_logger(__name__)


async def merge_to_project_library(
    session: AsyncSession,
    extraction_id: UUID,
    project_id: UUID | None = None,
) -> MergeResult:
    """Merge an extraction's confirmed and matched items into its project library.

    Args:
        extraction_id: Extraction to merge
        project_id: Target project; falls back to the extraction's, then its document's

    Returns:
        MergeResult with created/updated counts, or ``already_merged=True`` and
        no writes when the extraction was merged before.

    Raises:
        NotFoundError: If the extraction, its document or the project is missing
        PreconditionError: If no project can be resolved or the extraction is deleted
    """
    log = logger.bind(extraction_id=str(extraction_id))

    # Row lock so two runners cannot both see the extraction as unmerged
    extraction = await session.get(CodifiedExtractionModel, extraction_id, with_for_update=True)
    if extraction is None:
        raise NotFoundError("codified extraction", extraction_id)

    if extraction.merged_to_project_library:
        log.info("merge_skipped", reason="already_merged")
        return MergeResult(already_merged=True)

    if extraction.is_deleted:
        raise PreconditionError(f"Extraction {extraction_id} is deleted")

    document = await session.get(DocumentModel, extraction.document_id)
    if document is None:
        raise NotFoundError("document", extraction.document_id)

    target_project_id = project_id or extraction.project_id or document.project_id
    if target_project_id is None:
        raise PreconditionError(
            f"Extraction {extraction_id} has no project; pass project_id or link its document"
        )
    if await session.get(ProjectModel, target_project_id) is None:
        raise NotFoundError("project", target_project_id)

    items = [CodifiedItem.model_validate(raw) for raw in extraction.items]
    mergeable = [item for item in items if item.is_mergeable]

    rows = await _load_library_rows(
        session, target_project_id, {item.effective_code for item in mergeable}
    )

    now = utcnow()
    created = 0
    updated = 0

    for item in mergeable:
        code = item.effective_code
        entry = HistoryEntry(
            value=item.value,
            value_normalized=item.typed_value.normalized,
            source_document_id=str(document.id),
            source_document_name=document.file_name,
            source_extraction_id=str(extraction.id),
            original_name=item.original_name,
            added_at=isoformat(now),
            added_by="extraction",
            is_current_value=True,
            was_reverted=False,
        )

        row = rows.get(code)
        if row is None:
            row = ProjectDataItemModel(
                project_id=target_project_id,
                item_code=code,
                category=item.category,
                original_name=item.original_name,
                current_data_type=item.data_type,
                current_source_document_name=document.file_name,
                last_updated_at=now,
                last_updated_by="extraction",
                has_multiple_sources=False,
                value_variance=None,
                is_subtotal=item.is_subtotal,
                subtotal_reason=item.subtotal_reason,
            )
            apply_current(row, entry)
            store_history(row, [entry])
            session.add(row)
            rows[code] = row
            created += 1
            continue

        history = demote_all(load_history(row))
        revived = row.is_deleted
        if revived:
            row.is_deleted = False
            row.deleted_at = None
            row.deleted_reason = None
            # Values from before the delete stay for audit but no longer count
            history = [h.model_copy(update={"was_reverted": True}) for h in history]

        live = [h.value_normalized for h in history if not h.was_reverted]
        row.value_variance = compute_variance([*live, entry.value_normalized])
        store_history(row, [*history, entry])
        apply_current(row, entry, data_type=item.data_type)
        row.last_updated_at = now
        row.last_updated_by = "extraction"
        # Source identity is not deduplicated: any second live value counts
        row.has_multiple_sources = bool(live)

        if revived:
            created += 1
        else:
            updated += 1

    extraction.merged_to_project_library = True
    extraction.merged_at = now
    if project_id is not None and extraction.project_id is None:
        extraction.project_id = project_id

    await session.flush()

    log.info(
        "merge_completed",
        project_id=str(target_project_id),
        created=created,
        updated=updated,
        skipped=len(items) - len(mergeable),
    )
    return MergeResult(merged=created + updated, updated=updated, created=created)


async def _load_library_rows(
    session: AsyncSession, project_id: UUID, codes: set[str]
) -> dict[str, ProjectDataItemModel]:
    if not codes:
        return {}

    stmt = select(ProjectDataItemModel).where(
        ProjectDataItemModel.project_id == project_id,
        ProjectDataItemModel.item_code.in_(codes),
    )
    result = await session.execute(stmt)
    return {row.item_code: row for row in result.scalars()}
