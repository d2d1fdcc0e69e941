"""Administrative routes: backfill jobs and the merge task outbox.

Routes:
- POST /admin/merge-unmerged        - Schedule merges for confirmed, unmerged extractions
- POST /admin/backfill-project-ids  - Copy project links from documents, schedule merges
- POST /admin/tasks/run             - Drain pending merge tasks now
- GET  /admin/tasks                 - List merge tasks
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query

from codified.db.connection import get_session, get_session_factory
from codified.tasks.backfill import backfill_project_ids, merge_unmerged_extractions
from codified.tasks.dispatch import dispatch_merge_tasks
from codified.tasks.outbox import (
    TASK_STATUSES,
    list_tasks,
    run_pending_tasks,
    scheduled_task_ids,
    task_to_dict,
)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/merge-unmerged")
async def merge_unmerged(project_id: UUID | None = Query(default=None)):
    async with get_session() as session:
        report = await merge_unmerged_extractions(session, project_id)
        scheduled = scheduled_task_ids(session)

    await dispatch_merge_tasks(scheduled)
    return report.model_dump(by_alias=True)


@router.post("/backfill-project-ids")
async def backfill():
    async with get_session() as session:
        report = await backfill_project_ids(session)
        scheduled = scheduled_task_ids(session)

    await dispatch_merge_tasks(scheduled)
    return report.model_dump(by_alias=True)


@router.post("/tasks/run")
async def run_tasks(limit: int | None = Query(default=None, ge=1)):
    outcomes = await run_pending_tasks(get_session_factory(), limit=limit)
    return {"processed": len(outcomes), "outcomes": outcomes}


@router.get("/tasks")
async def get_tasks(
    status: str | None = Query(default=None),
    extraction_id: UUID | None = Query(default=None),
):
    if status is not None and status not in TASK_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown task status {status!r}")

    async with get_session() as session:
        tasks = await list_tasks(session, status=status, extraction_id=extraction_id)
        return [task_to_dict(task) for task in tasks]
