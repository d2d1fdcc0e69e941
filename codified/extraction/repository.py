"""Database queries for codified extractions."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from codified.core.errors import NotFoundError
from codified.db.models import CodifiedExtractionModel, DocumentModel
from codified.models import CodifiedItem, MappingStats, ReadinessResult
from codified.utils.timestamps import isoformat


async def get_extraction(
    session: AsyncSession, extraction_id: UUID
) -> CodifiedExtractionModel | None:
    """Fetch an extraction by id, deleted or not."""
    return await session.get(CodifiedExtractionModel, extraction_id)


async def require_extraction(
    session: AsyncSession, extraction_id: UUID
) -> CodifiedExtractionModel:
    extraction = await session.get(CodifiedExtractionModel, extraction_id)
    if extraction is None:
        raise NotFoundError("codified extraction", extraction_id)
    return extraction


async def get_by_document(
    session: AsyncSession, document_id: UUID
) -> CodifiedExtractionModel | None:
    """Return the most recently codified, non-deleted extraction for a document."""
    stmt = (
        select(CodifiedExtractionModel)
        .where(
            CodifiedExtractionModel.document_id == document_id,
            CodifiedExtractionModel.is_deleted.is_(False),
        )
        .order_by(
            CodifiedExtractionModel.codified_at.desc(),
            CodifiedExtractionModel.created_at.desc(),
        )
        .limit(1)
    )
    return (await session.execute(stmt)).scalars().first()


async def get_by_project(
    session: AsyncSession, project_id: UUID, include_deleted: bool = False
) -> list[CodifiedExtractionModel]:
    stmt = select(CodifiedExtractionModel).where(
        CodifiedExtractionModel.project_id == project_id
    )
    if not include_deleted:
        stmt = stmt.where(CodifiedExtractionModel.is_deleted.is_(False))
    stmt = stmt.order_by(
        CodifiedExtractionModel.codified_at.desc(), CodifiedExtractionModel.created_at.desc()
    )
    return list((await session.execute(stmt)).scalars())


async def resolve_project_id(
    session: AsyncSession, extraction: CodifiedExtractionModel
) -> UUID | None:
    """Project of an extraction: its own link, else its document's."""
    if extraction.project_id is not None:
        return extraction.project_id

    document = await session.get(DocumentModel, extraction.document_id)
    return document.project_id if document else None


def load_items(extraction: CodifiedExtractionModel) -> list[CodifiedItem]:
    return [CodifiedItem.model_validate(raw) for raw in extraction.items or []]


def load_stats(extraction: CodifiedExtractionModel) -> MappingStats:
    return MappingStats.model_validate(extraction.mapping_stats or {})


async def get_items_needing_review(
    session: AsyncSession, document_id: UUID
) -> dict[str, Any] | None:
    """Items still waiting for a decision (suggested or pending_review)."""
    extraction = await get_by_document(session, document_id)
    if extraction is None:
        return None

    items = load_items(extraction)
    needs_review = [item for item in items if item.mapping_status.awaits_decision]
    return {
        "extractionId": str(extraction.id),
        "items": [item.model_dump(mode="json", by_alias=True) for item in needs_review],
        "total": len(items),
        "stats": load_stats(extraction).model_dump(by_alias=True),
    }


async def is_ready_for_model_run(session: AsyncSession, document_id: UUID) -> ReadinessResult:
    extraction = await get_by_document(session, document_id)
    if extraction is None:
        return ReadinessResult(ready=False, reason="No codified extraction found")

    if not extraction.is_fully_confirmed:
        unconfirmed = [
            item for item in load_items(extraction) if not item.mapping_status.is_accepted
        ]
        return ReadinessResult(
            ready=False,
            reason=f"{len(unconfirmed)} items need confirmation",
            unconfirmed_count=len(unconfirmed),
        )

    return ReadinessResult(ready=True)


async def get_confirmed_items(
    session: AsyncSession, document_id: UUID
) -> dict[str, Any] | None:
    """Confirmed and matched items that carry a code, for template population."""
    extraction = await get_by_document(session, document_id)
    if extraction is None:
        return None

    confirmed = [
        {
            "itemCode": item.item_code,
            "originalName": item.original_name,
            "value": item.value,
            "dataType": item.data_type,
            "category": item.category,
        }
        for item in load_items(extraction)
        if item.mapping_status.is_accepted and item.item_code
    ]
    return {
        "items": confirmed,
        "isFullyConfirmed": extraction.is_fully_confirmed,
        "stats": load_stats(extraction).model_dump(by_alias=True),
    }


def extraction_to_dict(extraction: CodifiedExtractionModel) -> dict[str, Any]:
    """JSON shape of an extraction as returned by the API."""
    return {
        "id": str(extraction.id),
        "documentId": str(extraction.document_id),
        "projectId": str(extraction.project_id) if extraction.project_id else None,
        "items": [item.model_dump(mode="json", by_alias=True) for item in load_items(extraction)],
        "mappingStats": load_stats(extraction).model_dump(by_alias=True),
        "fastPassCompleted": extraction.fast_pass_completed,
        "smartPassCompleted": extraction.smart_pass_completed,
        "isFullyConfirmed": extraction.is_fully_confirmed,
        "mergedToProjectLibrary": extraction.merged_to_project_library,
        "mergedAt": isoformat(extraction.merged_at),
        "codifiedAt": isoformat(extraction.codified_at),
        "smartPassAt": isoformat(extraction.smart_pass_at),
        "confirmedAt": isoformat(extraction.confirmed_at),
        "isDeleted": extraction.is_deleted,
        "deletedAt": isoformat(extraction.deleted_at),
        "deletedReason": extraction.deleted_reason,
    }
