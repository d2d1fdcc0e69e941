"""Merge task outbox.

Confirmation paths never call the merge engine directly. They insert a
``merge_tasks`` row in the same transaction as the state change, and the row
is run after commit (inline, by the arq worker, or by ``codified run-tasks``).
Task status (``pending``/``running``/``done``/``failed``) makes merge failures
observable without waiting for a backfill sweep.

A runner claims a task with a conditional UPDATE, so one task is merged by at
most one runner at a time. A ``running`` task whose lease has expired (its
runner died) can be claimed again.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from codified.config import get_config
from codified.core.errors import NotFoundError
from codified.db.models import MergeTaskModel
from codified.library.merge import merge_to_project_library
from codified.utils.timestamps import as_utc, utcnow

logger = structlog.get_logger(__name__)

PENDING = "pending"
RUNNING = "running"
DONE = "done"
FAILED = "failed"
TASK_STATUSES = (PENDING, RUNNING, DONE, FAILED)

# session.info key collecting task ids scheduled during the session
SCHEDULED_KEY = "codified.scheduled_merge_tasks"


def _lease_cutoff():
    return utcnow() - timedelta(seconds=get_config().merge.lease_seconds)


def _last_touched():
    return func.coalesce(MergeTaskModel.updated_at, MergeTaskModel.created_at)


def lease_expired(task: MergeTaskModel) -> bool:
    """True for a ``running`` task nobody has touched within the lease."""
    if task.status != RUNNING:
        return False
    touched = task.updated_at or task.created_at
    return as_utc(touched) < _lease_cutoff()


def _record_for_dispatch(session: AsyncSession, task_id: UUID) -> None:
    scheduled = session.info.setdefault(SCHEDULED_KEY, [])
    if task_id not in scheduled:
        scheduled.append(task_id)


async def schedule_merge(
    session: AsyncSession,
    extraction_id: UUID,
    project_id: UUID | None = None,
    reason: str = "confirmed",
) -> tuple[MergeTaskModel, bool]:
    """Queue a library merge for an extraction.

    An extraction has at most one open (pending or running) task. Scheduling
    again returns the open one: a pending task is recorded for dispatch again,
    and a running task with an expired lease is put back to pending first.

    Returns:
        The task and whether it was created by this call
    """
    stmt = select(MergeTaskModel).where(
        MergeTaskModel.extraction_id == extraction_id,
        MergeTaskModel.status.in_((PENDING, RUNNING)),
    )
    existing = (await session.execute(stmt)).scalars().first()
    if existing is not None:
        if lease_expired(existing):
            existing.status = PENDING
            existing.last_error = "Lease expired while running"
            await session.flush()
            logger.warning(
                "merge_task_reclaimed", task_id=str(existing.id), extraction_id=str(extraction_id)
            )
        if existing.status == PENDING:
            _record_for_dispatch(session, existing.id)
        return existing, False

    task = MergeTaskModel(
        extraction_id=extraction_id,
        project_id=project_id,
        status=PENDING,
        reason=reason,
        attempts=0,
    )
    session.add(task)
    await session.flush()

    _record_for_dispatch(session, task.id)
    logger.info(
        "merge_scheduled",
        task_id=str(task.id),
        extraction_id=str(extraction_id),
        project_id=str(project_id) if project_id else None,
        reason=reason,
    )
    return task, True


def scheduled_task_ids(session: AsyncSession) -> list[UUID]:
    """Task ids scheduled through this session (dispatch them after commit)."""
    return list(session.info.get(SCHEDULED_KEY, []))


async def _claim(session: AsyncSession, task_id: UUID, max_attempts: int) -> bool:
    now = utcnow()
    stmt = (
        update(MergeTaskModel)
        .where(
            MergeTaskModel.id == task_id,
            or_(
                MergeTaskModel.status == PENDING,
                and_(MergeTaskModel.status == FAILED, MergeTaskModel.attempts < max_attempts),
                and_(MergeTaskModel.status == RUNNING, _last_touched() < _lease_cutoff()),
            ),
        )
        .values(status=RUNNING, attempts=MergeTaskModel.attempts + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def run_merge_task(
    session_factory: sessionmaker,
    task_id: UUID,
    max_attempts: int | None = None,
) -> dict[str, Any]:
    """Claim one merge task, run it in its own transaction and record the outcome.

    Merge errors are stored on the task, not raised. A failed task with
    attempts left goes back to ``pending``. A task another runner holds (or
    one already done) is reported with ``claimed: False`` and left alone.

    Raises:
        NotFoundError: If the task does not exist
    """
    if max_attempts is None:
        max_attempts = get_config().merge.max_attempts

    log = logger.bind(task_id=str(task_id))

    async with session_factory() as session:
        claimed = await _claim(session, task_id, max_attempts)
        task = await session.get(MergeTaskModel, task_id)
        await session.commit()

    if task is None:
        raise NotFoundError("merge task", task_id)
    if not claimed:
        log.debug("merge_task_not_claimed", status=task.status)
        return {
            "task_id": str(task_id),
            "status": task.status,
            "claimed": False,
            "result": task.result,
            "error": task.last_error,
        }

    extraction_id, project_id, attempts = task.extraction_id, task.project_id, task.attempts

    try:
        async with session_factory() as session:
            result = await merge_to_project_library(session, extraction_id, project_id)
            await session.commit()
    except Exception as exc:
        status = FAILED if attempts >= max_attempts else PENDING
        log.warning(
            "merge_task_failed",
            extraction_id=str(extraction_id),
            attempts=attempts,
            next_status=status,
            error=str(exc),
        )
        async with session_factory() as session:
            task = await session.get(MergeTaskModel, task_id)
            task.status = status
            task.last_error = f"{type(exc).__name__}: {exc}"
            await session.commit()
        return {"task_id": str(task_id), "status": status, "claimed": True, "error": str(exc)}

    async with session_factory() as session:
        task = await session.get(MergeTaskModel, task_id)
        task.status = DONE
        task.result = result.model_dump(mode="json", by_alias=True)
        task.last_error = None
        task.completed_at = utcnow()
        await session.commit()

    log.info("merge_task_done", extraction_id=str(extraction_id), **result.model_dump())
    return {
        "task_id": str(task_id),
        "status": DONE,
        "claimed": True,
        "result": result.model_dump(by_alias=True),
    }


async def run_pending_tasks(
    session_factory: sessionmaker,
    limit: int | None = None,
    max_attempts: int | None = None,
) -> list[dict[str, Any]]:
    """Drain pending merge tasks (and abandoned running ones) oldest first."""
    async with session_factory() as session:
        stmt = (
            select(MergeTaskModel.id)
            .where(
                or_(
                    MergeTaskModel.status == PENDING,
                    and_(MergeTaskModel.status == RUNNING, _last_touched() < _lease_cutoff()),
                )
            )
            .order_by(MergeTaskModel.created_at.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        task_ids = list((await session.execute(stmt)).scalars())

    outcomes = []
    for task_id in task_ids:
        outcomes.append(await run_merge_task(session_factory, task_id, max_attempts=max_attempts))
    return outcomes


async def list_tasks(
    session: AsyncSession,
    status: str | None = None,
    extraction_id: UUID | None = None,
) -> list[MergeTaskModel]:
    stmt = select(MergeTaskModel).order_by(MergeTaskModel.created_at.desc())
    if status is not None:
        if status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status {status!r}")
        stmt = stmt.where(MergeTaskModel.status == status)
    if extraction_id is not None:
        stmt = stmt.where(MergeTaskModel.extraction_id == extraction_id)
    return list((await session.execute(stmt)).scalars())


def task_to_dict(task: MergeTaskModel) -> dict[str, Any]:
    return {
        "id": str(task.id),
        "extractionId": str(task.extraction_id),
        "projectId": str(task.project_id) if task.project_id else None,
        "status": task.status,
        "reason": task.reason,
        "attempts": task.attempts,
        "lastError": task.last_error,
        "result": task.result,
        "createdAt": task.created_at.isoformat() if task.created_at else None,
        "completedAt": task.completed_at.isoformat() if task.completed_at else None,
    }
