"""Project data library routes.

Routes:
- GET    /projects/{id}/library                     - Active items with category totals
- GET    /projects/{id}/library/by-category         - Active items grouped by category
- GET    /projects/{id}/library/stats               - Library summary counts
- GET    /projects/{id}/library/changed             - Items with several sources
- GET    /projects/{id}/library/deleted             - Soft-deleted items
- GET    /projects/{id}/library/codes               - Codes already in use
- GET    /projects/{id}/library/codes/{code}        - Look up one code
- GET    /projects/{id}/library/documents/{doc_id}  - Items a document contributed to
- GET    /projects/{id}/extractions                 - Extractions of a project
- GET    /projects/{id}/pending-extractions         - Confirmation/merge progress
- POST   /projects/{id}/library/revert-document     - Retract a document's values
- POST   /projects/{id}/library/items               - Add a manual item
- POST   /projects/{id}/library/category-totals     - Override a category total
- DELETE /projects/{id}/library/category-totals/{category} - Clear a total override
- GET    /library/items/{id}/history                - Item with history, newest first
- POST   /library/items/{id}/override               - Manually override the value
- POST   /library/items/{id}/revert                 - Revert to a history entry
- DELETE /library/items/{id}                        - Soft delete
- POST   /library/items/{id}/restore                - Undo a soft delete
- GET    /projects/{id}/library/snapshots           - Snapshots, newest first
- POST   /projects/{id}/library/snapshots           - Take a snapshot
- POST   /projects/{id}/library/snapshots/cleanup   - Keep only the newest snapshots
- GET    /library/snapshots/compare                 - Diff two snapshots
- GET    /library/snapshots/by-model-run/{run_id}   - Snapshot taken for a model run
- GET    /library/snapshots/{id}                    - One snapshot with its items
- POST   /library/snapshots/{id}/revert             - Restore the library to a snapshot
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Query

from codified.db.connection import get_session
from codified.extraction.repository import extraction_to_dict, get_by_project
from codified.library import repository, service, snapshots
from codified.web.models import (
    AddManualItemRequest,
    CategoryTotalOverrideRequest,
    CreateSnapshotRequest,
    DeleteItemRequest,
    OverrideItemRequest,
    RevertDocumentRequest,
    RevertSnapshotRequest,
    RevertVersionRequest,
)

router = APIRouter(tags=["library"])


# ============================================================================
# Project Library Queries
# ============================================================================


@router.get("/projects/{project_id}/library")
async def get_project_library(project_id: UUID):
    async with get_session() as session:
        return await repository.get_project_library(session, project_id)


@router.get("/projects/{project_id}/library/by-category")
async def get_project_library_by_category(project_id: UUID):
    async with get_session() as session:
        return await repository.get_project_library_by_category(session, project_id)


@router.get("/projects/{project_id}/library/stats")
async def get_library_stats(project_id: UUID):
    async with get_session() as session:
        return await repository.get_library_stats(session, project_id)


@router.get("/projects/{project_id}/library/changed")
async def get_changed_items(project_id: UUID):
    async with get_session() as session:
        return await repository.get_changed_items(session, project_id)


@router.get("/projects/{project_id}/library/deleted")
async def get_deleted_items(project_id: UUID):
    async with get_session() as session:
        return await repository.get_deleted_items(session, project_id)


@router.get("/projects/{project_id}/library/codes")
async def get_existing_item_codes(project_id: UUID):
    async with get_session() as session:
        return await repository.get_existing_item_codes(session, project_id)


@router.get("/projects/{project_id}/library/codes/{item_code}")
async def check_item_code_exists(project_id: UUID, item_code: str):
    async with get_session() as session:
        return await repository.check_item_code_exists(session, project_id, item_code)


@router.get("/projects/{project_id}/library/documents/{document_id}")
async def get_items_from_document(project_id: UUID, document_id: UUID):
    async with get_session() as session:
        return await repository.get_items_from_document(session, project_id, document_id)


@router.get("/projects/{project_id}/extractions")
async def get_project_extractions(
    project_id: UUID, include_deleted: bool = Query(default=False)
):
    async with get_session() as session:
        extractions = await get_by_project(session, project_id, include_deleted=include_deleted)
        return [extraction_to_dict(extraction) for extraction in extractions]


@router.get("/projects/{project_id}/pending-extractions")
async def get_pending_extractions(project_id: UUID):
    async with get_session() as session:
        return await repository.get_pending_extractions(session, project_id)


# ============================================================================
# Project Library Mutations
# ============================================================================


@router.post("/projects/{project_id}/library/revert-document")
async def revert_document_addition(project_id: UUID, body: RevertDocumentRequest):
    async with get_session() as session:
        result = await service.revert_document_addition(
            session,
            project_id,
            body.document_id,
            create_backup_snapshot=body.create_backup_snapshot,
        )
    return result.model_dump(by_alias=True, exclude_none=True)


@router.post("/projects/{project_id}/library/items", status_code=201)
async def add_manual_item(project_id: UUID, body: AddManualItemRequest):
    async with get_session() as session:
        item_id = await service.add_manual_item(
            session,
            project_id,
            item_code=body.item_code,
            category=body.category,
            original_name=body.original_name,
            value=body.value,
            data_type=body.data_type,
            note=body.note,
            user_id=body.user_id,
            source_document_id=body.source_document_id,
            source_document_name=body.source_document_name,
        )
    return {"id": str(item_id)}


@router.post("/projects/{project_id}/library/category-totals")
async def override_category_total(project_id: UUID, body: CategoryTotalOverrideRequest):
    async with get_session() as session:
        return await service.override_category_total(
            session, project_id, body.category, body.value, note=body.note, user_id=body.user_id
        )


@router.delete("/projects/{project_id}/library/category-totals/{category}")
async def clear_category_total_override(project_id: UUID, category: str):
    async with get_session() as session:
        return await service.clear_category_total_override(session, project_id, category)


# ============================================================================
# Library Item Routes
# ============================================================================


@router.get("/library/items/{item_id}/history")
async def get_item_history(item_id: UUID):
    async with get_session() as session:
        return await repository.get_item_history(session, item_id)


@router.post("/library/items/{item_id}/override")
async def manual_override_item(item_id: UUID, body: OverrideItemRequest):
    async with get_session() as session:
        return await service.manual_override_item(
            session, item_id, body.value, note=body.note, user_id=body.user_id
        )


@router.post("/library/items/{item_id}/revert")
async def revert_item_to_version(item_id: UUID, body: RevertVersionRequest):
    async with get_session() as session:
        return await service.revert_item_to_version(session, item_id, body.history_index)


@router.delete("/library/items/{item_id}")
async def delete_item(item_id: UUID, body: DeleteItemRequest | None = None):
    async with get_session() as session:
        return await service.delete_item(session, item_id, body.reason if body else None)


@router.post("/library/items/{item_id}/restore")
async def restore_item(item_id: UUID):
    async with get_session() as session:
        return await service.restore_item(session, item_id)


# ============================================================================
# Library Snapshots
# ============================================================================


@router.get("/projects/{project_id}/library/snapshots")
async def get_snapshots_by_project(project_id: UUID):
    async with get_session() as session:
        found = await snapshots.get_snapshots_by_project(session, project_id)
        return [snapshots.snapshot_to_dict(snapshot, include_items=False) for snapshot in found]


@router.post("/projects/{project_id}/library/snapshots", status_code=201)
async def create_snapshot(project_id: UUID, body: CreateSnapshotRequest):
    async with get_session() as session:
        snapshot = await snapshots.create_snapshot(
            session,
            project_id,
            body.reason,
            description=body.description,
            model_run_id=body.model_run_id,
            user_id=body.user_id,
        )
        return {"snapshotId": str(snapshot.id), "itemCount": snapshot.item_count}


@router.post("/projects/{project_id}/library/snapshots/cleanup")
async def cleanup_old_snapshots(project_id: UUID, keep: int = Query(default=10, ge=0)):
    async with get_session() as session:
        return await snapshots.cleanup_old_snapshots(session, project_id, keep)


@router.get("/library/snapshots/compare")
async def compare_snapshots(first: UUID = Query(...), second: UUID = Query(...)):
    async with get_session() as session:
        return await snapshots.compare_snapshots(session, first, second)


@router.get("/library/snapshots/by-model-run/{model_run_id}")
async def get_snapshot_by_model_run(model_run_id: str):
    async with get_session() as session:
        snapshot = await snapshots.get_snapshot_by_model_run(session, model_run_id)
        return snapshots.snapshot_to_dict(snapshot) if snapshot else None


@router.get("/library/snapshots/{snapshot_id}")
async def get_snapshot(snapshot_id: UUID):
    async with get_session() as session:
        return snapshots.snapshot_to_dict(await snapshots.require_snapshot(session, snapshot_id))


@router.post("/library/snapshots/{snapshot_id}/revert")
async def revert_to_snapshot(snapshot_id: UUID, body: RevertSnapshotRequest | None = None):
    async with get_session() as session:
        return await snapshots.revert_to_snapshot(
            session, snapshot_id, user_id=body.user_id if body else None
        )
