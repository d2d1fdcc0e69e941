"""Administrative repair jobs for extractions that never reached the library.

Both jobs are idempotent: they only schedule merges (deduplicated by the
outbox) and fill in missing project links, so re-running them is safe.
A pending task left by an earlier failed attempt, or a running one whose
lease expired, is reused and handed to dispatch again.
"""

from __future__ import annotations

from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from codified.db.models import CodifiedExtractionModel, DocumentModel
from codified.models import BackfillReport, BackfillResult, MergeUnmergedReport
from codified.tasks.outbox import schedule_merge

logger = structlog.get_logger(__name__)


def _awaits_merge(extraction: CodifiedExtractionModel) -> bool:
    return extraction.is_fully_confirmed and not extraction.merged_to_project_library


async def _active_extractions(
    session: AsyncSession, project_id: UUID | None = None
) -> list[CodifiedExtractionModel]:
    stmt = select(CodifiedExtractionModel).where(CodifiedExtractionModel.is_deleted.is_(False))
    if project_id is not None:
        stmt = stmt.where(CodifiedExtractionModel.project_id == project_id)
    stmt = stmt.order_by(
        CodifiedExtractionModel.codified_at.asc(), CodifiedExtractionModel.created_at.asc()
    )
    return list((await session.execute(stmt)).scalars())


async def _schedule(
    session: AsyncSession, extraction: CodifiedExtractionModel, reason: str
) -> BackfillResult:
    try:
        task, created = await schedule_merge(
            session, extraction.id, extraction.project_id, reason=reason
        )
    except Exception as exc:
        logger.exception("backfill_schedule_failed", extraction_id=str(extraction.id))
        return BackfillResult(
            extraction_id=str(extraction.id), action="error", detail=f"{type(exc).__name__}: {exc}"
        )
    # An open task is reused; it is still handed to dispatch when pending
    action = "merge_scheduled" if created else "already_scheduled"
    return BackfillResult(
        extraction_id=str(extraction.id), action=action, detail=f"task {task.id} ({task.status})"
    )


async def merge_unmerged_extractions(
    session: AsyncSession, project_id: UUID | None = None
) -> MergeUnmergedReport:
    """Schedule a merge for every confirmed, unmerged extraction with a project.

    Args:
        project_id: Limit the scan to one project
    """
    extractions = await _active_extractions(session, project_id)
    unmerged = [e for e in extractions if _awaits_merge(e) and e.project_id is not None]

    results = []
    for extraction in unmerged:
        result = await _schedule(session, extraction, reason="backfill")
        logger.info(
            "backfill_extraction",
            extraction_id=result.extraction_id,
            action=result.action,
            detail=result.detail,
        )
        results.append(result)

    scheduled = sum(1 for result in results if result.action == "merge_scheduled")
    reused = sum(1 for result in results if result.action == "already_scheduled")
    logger.info(
        "merge_unmerged_completed",
        project_id=str(project_id) if project_id else None,
        total=len(extractions),
        unmerged=len(unmerged),
        scheduled=scheduled,
        already_scheduled=reused,
    )
    return MergeUnmergedReport(
        total_extractions=len(extractions),
        unmerged_found=len(unmerged),
        merged_count=scheduled,
        already_scheduled=reused,
        results=results,
    )


async def backfill_project_ids(session: AsyncSession) -> BackfillReport:
    """Copy missing project links from documents and schedule pending merges."""
    extractions = await _active_extractions(session)

    updated = 0
    results = []
    for extraction in extractions:
        if extraction.project_id is None:
            document = await session.get(DocumentModel, extraction.document_id)
            if document is None or document.project_id is None:
                continue

            extraction.project_id = document.project_id
            updated += 1
            results.append(
                BackfillResult(
                    extraction_id=str(extraction.id),
                    action="project_id_backfilled",
                    detail=str(document.project_id),
                )
            )

        if _awaits_merge(extraction):
            results.append(await _schedule(session, extraction, reason="backfill"))

    await session.flush()

    scheduled = sum(1 for result in results if result.action == "merge_scheduled")
    reused = sum(1 for result in results if result.action == "already_scheduled")
    logger.info(
        "backfill_project_ids_completed",
        total=len(extractions),
        project_ids_updated=updated,
        merges_scheduled=scheduled,
        already_scheduled=reused,
    )
    return BackfillReport(
        total_extractions=len(extractions),
        project_ids_updated=updated,
        merges_scheduled=scheduled,
        already_scheduled=reused,
        results=results,
    )
