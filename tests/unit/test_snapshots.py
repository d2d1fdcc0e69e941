"""Tests for project data library snapshots."""

from __future__ import annotations

from datetime import timedelta
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from codified.core.errors import NotFoundError
from codified.db.models import (
    DataLibrarySnapshotModel,
    DocumentModel,
    ProjectDataItemModel,
    ProjectModel,
)
from codified.extraction import service as extraction_service
from codified.library import service, snapshots
from codified.library.history import load_history
from codified.library.merge import merge_to_project_library
from codified.utils.timestamps import utcnow

from tests.factories import make_item


async def _row(session: AsyncSession, project_id, code: str) -> ProjectDataItemModel:
    stmt = select(ProjectDataItemModel).where(
        ProjectDataItemModel.project_id == project_id,
        ProjectDataItemModel.item_code == code,
    )
    return (await session.execute(stmt)).scalars().one()


@pytest_asyncio.fixture()
async def merged_library(
    db_session: AsyncSession, project: ProjectModel, document: DocumentModel
) -> ProjectModel:
    """Library with <land.cost> = 100 and <build.cost> = 200 from one document."""
    extraction_id = await extraction_service.create(
        db_session,
        document.id,
        [
            make_item("1", "matched", code="<land.cost>", value=100),
            make_item("2", "matched", code="<build.cost>", value=200),
        ],
        project_id=project.id,
    )
    await merge_to_project_library(db_session, extraction_id)
    return project


async def _edit_library(session: AsyncSession, project: ProjectModel) -> None:
    """Override <build.cost>, delete <land.cost> and add <fees.legal>."""
    build = await _row(session, project.id, "<build.cost>")
    land = await _row(session, project.id, "<land.cost>")
    await service.manual_override_item(session, build.id, 250, user_id="user-1")
    await service.delete_item(session, land.id)
    await service.add_manual_item(
        session,
        project.id,
        item_code="<fees.legal>",
        category="Fees",
        original_name="Legal fees",
        value=40,
        data_type="currency",
    )


@pytest.mark.asyncio
async def test_create_snapshot_captures_active_items(
    db_session: AsyncSession, merged_library: ProjectModel, document: DocumentModel
):
    land = await _row(db_session, merged_library.id, "<land.cost>")
    await service.delete_item(db_session, land.id)

    snapshot = await snapshots.create_snapshot(
        db_session, merged_library.id, "manual_save", description="Before tender"
    )

    assert snapshot.item_count == 1
    assert snapshot.document_count == 1
    assert snapshot.source_document_ids == [str(document.id)]
    assert snapshot.created_by == "system"
    (item,) = snapshots.load_snapshot_items(snapshot)
    assert item.item_code == "<build.cost>"
    assert item.value == 200
    assert item.value_normalized == 200.0
    assert item.source_document_name == "appraisal-v1.xlsx"


@pytest.mark.asyncio
async def test_create_snapshot_validation(db_session: AsyncSession, project: ProjectModel):
    with pytest.raises(ValueError):
        await snapshots.create_snapshot(db_session, project.id, "nightly")

    with pytest.raises(NotFoundError):
        await snapshots.create_snapshot(db_session, uuid4(), "manual_save")


@pytest.mark.asyncio
async def test_compare_snapshots(db_session: AsyncSession, merged_library: ProjectModel):
    before = await snapshots.create_snapshot(db_session, merged_library.id, "manual_save")
    await _edit_library(db_session, merged_library)
    after = await snapshots.create_snapshot(db_session, merged_library.id, "manual_save")

    diff = await snapshots.compare_snapshots(db_session, before.id, after.id)

    assert diff["summary"] == {"addedCount": 1, "removedCount": 1, "changedCount": 1}
    assert [item["itemCode"] for item in diff["added"]] == ["<fees.legal>"]
    assert [item["itemCode"] for item in diff["removed"]] == ["<land.cost>"]
    (changed,) = diff["changed"]
    assert changed["itemCode"] == "<build.cost>"
    assert (changed["oldValue"], changed["newValue"]) == (200, 250)
    assert diff["snapshot1"]["id"] == str(before.id)
    assert "items" not in diff["snapshot2"]


@pytest.mark.asyncio
async def test_revert_to_snapshot_restores_values(
    db_session: AsyncSession, merged_library: ProjectModel
):
    saved = await snapshots.create_snapshot(db_session, merged_library.id, "manual_save")
    await _edit_library(db_session, merged_library)

    result = await snapshots.revert_to_snapshot(db_session, saved.id, user_id="user-2")

    assert result["success"] is True
    assert result["itemCount"] == 2
    build = await _row(db_session, merged_library.id, "<build.cost>")
    land = await _row(db_session, merged_library.id, "<land.cost>")
    fees = await _row(db_session, merged_library.id, "<fees.legal>")
    assert build.current_value == 200
    assert build.last_updated_by_user_id == "user-2"
    assert len(load_history(build)) == 3
    assert sum(entry.is_current_value for entry in load_history(build)) == 1
    assert land.is_deleted is False
    assert land.current_value == 100
    assert fees.is_deleted is True
    assert fees.deleted_reason == "Reverted to earlier snapshot"

    backup = await snapshots.require_snapshot(db_session, UUID(result["backupSnapshotId"]))
    assert backup.reason == "pre_revert_backup"
    assert {item.item_code for item in snapshots.load_snapshot_items(backup)} == {
        "<build.cost>",
        "<fees.legal>",
    }


@pytest.mark.asyncio
async def test_revert_to_snapshot_recreates_missing_rows(
    db_session: AsyncSession, merged_library: ProjectModel, document: DocumentModel
):
    saved = await snapshots.create_snapshot(db_session, merged_library.id, "manual_save")
    await db_session.delete(await _row(db_session, merged_library.id, "<land.cost>"))
    await db_session.flush()

    await snapshots.revert_to_snapshot(db_session, saved.id)

    land = await _row(db_session, merged_library.id, "<land.cost>")
    assert land.current_value == 100
    assert land.current_source_document_id == str(document.id)
    assert land.manual_override_note == f"Restored from snapshot {saved.id}"
    (entry,) = load_history(land)
    assert entry.added_by == "manual"
    assert entry.added_by_user_id == "system"


@pytest.mark.asyncio
async def test_revert_to_missing_snapshot(db_session: AsyncSession):
    with pytest.raises(NotFoundError):
        await snapshots.revert_to_snapshot(db_session, uuid4())


@pytest.mark.asyncio
async def test_cleanup_keeps_newest_and_model_run_snapshots(
    db_session: AsyncSession, merged_library: ProjectModel
):
    run = await snapshots.create_snapshot(
        db_session, merged_library.id, "model_run", model_run_id="run-7"
    )
    older = await snapshots.create_snapshot(db_session, merged_library.id, "manual_save")
    newest = await snapshots.create_snapshot(db_session, merged_library.id, "manual_save")
    now = utcnow()
    run.created_at = now - timedelta(minutes=3)
    older.created_at = now - timedelta(minutes=2)
    newest.created_at = now - timedelta(minutes=1)
    await db_session.flush()

    result = await snapshots.cleanup_old_snapshots(db_session, merged_library.id, keep_count=1)

    assert result == {"deleted": 1}
    remaining = await snapshots.get_snapshots_by_project(db_session, merged_library.id)
    assert [snapshot.id for snapshot in remaining] == [newest.id, run.id]
    assert (await snapshots.get_snapshot_by_model_run(db_session, "run-7")).id == run.id
    assert await snapshots.get_snapshot_by_model_run(db_session, "run-8") is None

    with pytest.raises(ValueError):
        await snapshots.cleanup_old_snapshots(db_session, merged_library.id, keep_count=-1)


@pytest.mark.asyncio
async def test_revert_document_can_snapshot_first(
    db_session: AsyncSession, merged_library: ProjectModel, document: DocumentModel
):
    result = await service.revert_document_addition(
        db_session, merged_library.id, document.id, create_backup_snapshot=True
    )

    assert result.deleted == 2
    backup = await db_session.get(DataLibrarySnapshotModel, UUID(result.backup_snapshot_id))
    assert backup.reason == "pre_revert_backup"
    assert backup.item_count == 2
    assert backup.description == f"Backup before removing document {document.id}"


@pytest.mark.asyncio
async def test_revert_document_without_backup(
    db_session: AsyncSession, merged_library: ProjectModel, document: DocumentModel
):
    result = await service.revert_document_addition(db_session, merged_library.id, document.id)

    assert result.backup_snapshot_id is None
    assert await snapshots.get_snapshots_by_project(db_session, merged_library.id) == []
