"""Codified extraction routes.

Handles the record store and the confirmation workflow. Any merge task a
mutation schedules is dispatched once the request's transaction commits.

Routes:
- GET    /extractions/{id}                          - Extraction by id
- GET    /extractions/by-document/{document_id}     - Latest extraction for a document
- GET    /extractions/by-document/{document_id}/review     - Items awaiting a decision
- GET    /extractions/by-document/{document_id}/readiness  - Ready for a model run?
- GET    /extractions/by-document/{document_id}/confirmed  - Confirmed items
- POST   /extractions                               - Store a fast-pass extraction
- PUT    /extractions/{id}/smart-pass               - Replace items with the smart pass
- POST   /extractions/{id}/items/{item_id}/confirm  - Confirm one item
- POST   /extractions/{id}/confirm-all              - Accept all suggestions
- POST   /extractions/{id}/items/{item_id}/skip     - Mark one item unmatched
- POST   /extractions/{id}/items                    - Add a manual item
- POST   /extractions/{id}/merge                    - Merge into the project library now
- GET    /extractions/{id}/delete-impact            - Library impact of deleting
- DELETE /extractions/{id}                          - Soft delete
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Query

from codified.db.connection import get_session
from codified.extraction import repository, service
from codified.library.impact import get_delete_impact
from codified.library.merge import merge_to_project_library
from codified.models import CodifiedItem
from codified.tasks.dispatch import dispatch_merge_tasks
from codified.tasks.outbox import scheduled_task_ids
from codified.web.models import ConfirmItemRequest, CreateExtractionRequest, SmartPassRequest

router = APIRouter(prefix="/extractions", tags=["extractions"])


# ============================================================================
# Queries
# ============================================================================


@router.get("/by-document/{document_id}")
async def get_by_document(document_id: UUID):
    async with get_session() as session:
        extraction = await repository.get_by_document(session, document_id)
        return repository.extraction_to_dict(extraction) if extraction else None


@router.get("/by-document/{document_id}/review")
async def get_items_needing_review(document_id: UUID):
    async with get_session() as session:
        return await repository.get_items_needing_review(session, document_id)


@router.get("/by-document/{document_id}/readiness")
async def is_ready_for_model_run(document_id: UUID):
    async with get_session() as session:
        result = await repository.is_ready_for_model_run(session, document_id)
    return result.model_dump(by_alias=True, exclude_none=True)


@router.get("/by-document/{document_id}/confirmed")
async def get_confirmed_items(document_id: UUID):
    async with get_session() as session:
        return await repository.get_confirmed_items(session, document_id)


@router.get("/{extraction_id}")
async def get_extraction(extraction_id: UUID):
    async with get_session() as session:
        extraction = await repository.require_extraction(session, extraction_id)
        return repository.extraction_to_dict(extraction)


@router.get("/{extraction_id}/delete-impact")
async def delete_impact(extraction_id: UUID):
    async with get_session() as session:
        impact = await get_delete_impact(session, extraction_id)
    return impact.model_dump(by_alias=True)


# ============================================================================
# Mutations
# ============================================================================


@router.post("", status_code=201)
async def create_extraction(body: CreateExtractionRequest):
    async with get_session() as session:
        extraction_id = await service.create(
            session, body.document_id, body.items, project_id=body.project_id
        )
        scheduled = scheduled_task_ids(session)

    await dispatch_merge_tasks(scheduled)
    return {"id": str(extraction_id)}


@router.put("/{extraction_id}/smart-pass")
async def update_after_smart_pass(extraction_id: UUID, body: SmartPassRequest):
    async with get_session() as session:
        await service.update_after_smart_pass(session, extraction_id, body.items)
        scheduled = scheduled_task_ids(session)

    await dispatch_merge_tasks(scheduled)
    return {"id": str(extraction_id)}


@router.post("/{extraction_id}/items/{item_id}/confirm")
async def confirm_item(extraction_id: UUID, item_id: str, body: ConfirmItemRequest):
    async with get_session() as session:
        result = await service.confirm_item(
            session, extraction_id, item_id, body.item_code, body.canonical_code_id
        )
        scheduled = scheduled_task_ids(session)

    await dispatch_merge_tasks(scheduled)
    return result.model_dump(mode="json", by_alias=True)


@router.post("/{extraction_id}/confirm-all")
async def confirm_all_suggested(extraction_id: UUID):
    async with get_session() as session:
        result = await service.confirm_all_suggested(session, extraction_id)
        scheduled = scheduled_task_ids(session)

    await dispatch_merge_tasks(scheduled)
    return result.model_dump(mode="json", by_alias=True)


@router.post("/{extraction_id}/items/{item_id}/skip")
async def skip_item(extraction_id: UUID, item_id: str):
    async with get_session() as session:
        result = await service.skip_item(session, extraction_id, item_id)
        scheduled = scheduled_task_ids(session)

    await dispatch_merge_tasks(scheduled)
    return result.model_dump(mode="json", by_alias=True)


@router.post("/{extraction_id}/items")
async def add_item(extraction_id: UUID, item: CodifiedItem):
    async with get_session() as session:
        result = await service.add_item(session, extraction_id, item)
        scheduled = scheduled_task_ids(session)

    await dispatch_merge_tasks(scheduled)
    return result.model_dump(mode="json", by_alias=True)


@router.post("/{extraction_id}/merge")
async def merge_extraction(extraction_id: UUID, project_id: UUID | None = Query(default=None)):
    """Run the library merge synchronously, bypassing the task outbox."""
    async with get_session() as session:
        result = await merge_to_project_library(session, extraction_id, project_id)
    return result.model_dump(by_alias=True)


@router.delete("/{extraction_id}")
async def delete_extraction(extraction_id: UUID, reason: str | None = Query(default=None)):
    async with get_session() as session:
        return await service.soft_delete(session, extraction_id, reason)
