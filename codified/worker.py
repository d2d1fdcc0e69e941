from typing import Any
from uuid import UUID

import structlog
from arq.cron import cron

from codified.config import get_config
from codified.core.logging import configure_logging
from codified.core.queue import get_redis_settings
from codified.db.connection import close_db, get_session_factory
from codified.tasks.outbox import run_merge_task, run_pending_tasks

logger = structlog.get_logger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    configure_logging()
    ctx["session_maker"] = get_session_factory()
    logger.info("worker_started", dispatch=get_config().merge.dispatch)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    await close_db()
    logger.info("worker_stopped")


async def run_merge_task_job(ctx: dict[str, Any], task_id: str) -> dict[str, Any]:
    """ARQ worker task running one scheduled library merge.

    Args:
        ctx: ARQ context
        task_id: ID of the merge task to run

    Returns:
        Task outcome dict
    """
    logger.info("merge_task_job_started", task_id=task_id)
    return await run_merge_task(ctx["session_maker"], UUID(task_id))


async def drain_merge_tasks_job(ctx: dict[str, Any], limit: int | None = None) -> dict[str, Any]:
    """Run every pending merge task (deferred dispatch and retries)."""
    outcomes = await run_pending_tasks(ctx["session_maker"], limit=limit)
    summary: dict[str, int] = {}
    for outcome in outcomes:
        summary[outcome["status"]] = summary.get(outcome["status"], 0) + 1

    if outcomes:
        logger.info("merge_tasks_drained", processed=len(outcomes), **summary)
    return {"processed": len(outcomes), "by_status": summary}


class WorkerSettings:
    functions = [
        run_merge_task_job,
        drain_merge_tasks_job,
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()
    # Picks up tasks left pending by deferred dispatch or a failed attempt
    cron_jobs = [cron(drain_merge_tasks_job, second=0)]
