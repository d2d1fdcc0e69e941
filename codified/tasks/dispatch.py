"""Dispatch committed merge tasks according to ``MERGE_DISPATCH``.

Only call this after the transaction that scheduled the tasks has committed;
the tasks are looked up by id from a fresh session.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from uuid import UUID

import structlog
from sqlalchemy.orm import sessionmaker

from codified.config import get_config
from codified.db.connection import get_session_factory
from codified.tasks.outbox import run_merge_task

logger = structlog.get_logger(__name__)

# Strong references so inline tasks are not garbage-collected mid-run
_inline_tasks: set[asyncio.Task] = set()


async def dispatch_merge_tasks(
    task_ids: Sequence[UUID],
    mode: str | None = None,
    session_factory: sessionmaker | None = None,
) -> None:
    """Hand scheduled merge tasks to their runner without waiting for the merge.

    Dispatch problems are logged; the tasks stay ``pending`` and are picked up
    by the worker drain or ``codified run-tasks``.
    """
    if not task_ids:
        return

    mode = mode or get_config().merge.dispatch

    if mode == "deferred":
        logger.debug("merge_dispatch_deferred", count=len(task_ids))
        return

    if mode == "queue":
        await _enqueue(task_ids)
        return

    factory = session_factory or get_session_factory()
    for task_id in task_ids:
        job = asyncio.create_task(_run_inline(factory, task_id))
        _inline_tasks.add(job)
        job.add_done_callback(_inline_tasks.discard)


async def wait_for_inline_tasks() -> None:
    """Wait for in-flight inline merges (used on shutdown and in tests)."""
    if _inline_tasks:
        await asyncio.gather(*list(_inline_tasks), return_exceptions=True)


async def _run_inline(factory: sessionmaker, task_id: UUID) -> None:
    try:
        await run_merge_task(factory, task_id)
    except Exception:
        logger.exception("merge_dispatch_failed", task_id=str(task_id), mode="inline")


async def _enqueue(task_ids: Sequence[UUID]) -> None:
    from codified.core.queue import get_queue

    try:
        redis = await get_queue()
        for task_id in task_ids:
            job = await redis.enqueue_job("run_merge_task_job", str(task_id))
            logger.info("merge_task_enqueued", task_id=str(task_id), job_id=job.job_id if job else None)
    except Exception:
        logger.exception("merge_dispatch_failed", mode="queue", count=len(task_ids))
