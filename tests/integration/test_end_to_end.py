"""Integration tests for Codified end-to-end workflows.

Tests:
1. Confirm-all only accepts suggestions that carry a code
2. Confirming the last pending item schedules a merge that builds the library
3. A second source for the same code records variance and moves the current value
4. A failed merge stays visible on its task and the backfill sweep recovers it
"""

from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from codified.db.models import DocumentModel, ProjectDataItemModel, ProjectModel
from codified.extraction import repository, service
from codified.library.history import load_history
from codified.models import MappingStatus
from codified.tasks.backfill import backfill_project_ids
from codified.tasks.outbox import (
    DONE,
    FAILED,
    list_tasks,
    run_pending_tasks,
    schedule_merge,
    scheduled_task_ids,
)

from tests.factories import add_document, make_item

pytestmark = pytest.mark.integration


async def _library(session_factory: sessionmaker, project_id) -> dict[str, ProjectDataItemModel]:
    async with session_factory() as session:
        stmt = select(ProjectDataItemModel).where(ProjectDataItemModel.project_id == project_id)
        return {row.item_code: row for row in (await session.execute(stmt)).scalars()}


@pytest.mark.asyncio
async def test_confirm_all_leaves_pending_review_untouched(
    db_session: AsyncSession, document: DocumentModel
):
    extraction_id = await service.create(
        db_session,
        document.id,
        [
            make_item("a", "suggested", code="REV01"),
            make_item("b", "pending_review", code=None),
        ],
    )

    result = await service.confirm_all_suggested(db_session, extraction_id)

    extraction = await repository.require_extraction(db_session, extraction_id)
    a, b = repository.load_items(extraction)
    assert a.mapping_status is MappingStatus.CONFIRMED
    assert a.item_code == "REV01"
    assert a.confidence == 1.0
    assert b.mapping_status is MappingStatus.PENDING_REVIEW
    assert b.item_code is None
    assert result.is_fully_confirmed is False


@pytest.mark.asyncio
async def test_last_confirmation_schedules_merge_into_library(
    db_session: AsyncSession,
    session_factory: sessionmaker,
    project: ProjectModel,
    document: DocumentModel,
):
    extraction_id = await service.create(
        db_session,
        document.id,
        [make_item("1", "matched", code="<land.cost>"), make_item("2", "pending_review", code=None)],
        project_id=project.id,
    )
    assert scheduled_task_ids(db_session) == []

    result = await service.confirm_item(db_session, extraction_id, "2", "<build.cost>")
    assert result.is_fully_confirmed is True
    assert len(scheduled_task_ids(db_session)) == 1
    await db_session.commit()

    outcomes = await run_pending_tasks(session_factory)

    assert [outcome["status"] for outcome in outcomes] == [DONE]
    library = await _library(session_factory, project.id)
    assert set(library) == {"<land.cost>", "<build.cost>"}
    assert len(library["<build.cost>"].value_history) == 1


@pytest.mark.asyncio
async def test_second_source_records_variance(
    db_session: AsyncSession,
    session_factory: sessionmaker,
    project: ProjectModel,
    document: DocumentModel,
):
    await service.create(
        db_session, document.id, [make_item("1", "matched", value=100)], project_id=project.id
    )
    revision = await add_document(db_session, project, "appraisal-v2.xlsx")
    await db_session.commit()
    await run_pending_tasks(session_factory)

    await service.create(
        db_session, revision.id, [make_item("1", "matched", value=200)], project_id=project.id
    )
    await db_session.commit()
    await run_pending_tasks(session_factory)

    row = (await _library(session_factory, project.id))["<construction.cost>"]
    history = load_history(row)
    assert row.has_multiple_sources is True
    assert row.value_variance == pytest.approx(100.0)
    assert [entry.is_current_value for entry in history] == [False, True]
    assert row.current_value == 200



@pytest.mark.asyncio
async def test_failed_merge_is_visible_and_recovered_by_backfill(
    db_session: AsyncSession,
    session_factory: sessionmaker,
    project: ProjectModel,
):
    document = await add_document(db_session, None, "appraisal-late-link.xlsx")
    extraction_id = await service.create(db_session, document.id, [make_item("1", "matched")])
    await schedule_merge(db_session, extraction_id, None, reason="manual")
    await db_session.commit()

    outcomes = await run_pending_tasks(session_factory, max_attempts=1)
    assert [outcome["status"] for outcome in outcomes] == [FAILED]

    # Filing the document under a project lets the sweep reschedule it
    document.project_id = project.id
    await db_session.commit()
    report = await backfill_project_ids(db_session)
    await db_session.commit()
    assert report.project_ids_updated == 1
    assert report.merges_scheduled == 1

    outcomes = await run_pending_tasks(session_factory)

    assert [outcome["status"] for outcome in outcomes] == [DONE]
    assert "<construction.cost>" in await _library(session_factory, project.id)
    db_session.expire_all()
    statuses = sorted(task.status for task in await list_tasks(db_session, extraction_id=extraction_id))
    assert statuses == [DONE, FAILED]
