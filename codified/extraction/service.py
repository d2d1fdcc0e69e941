"""Codified extraction business operations.

Covers the record store (create, smart-pass replace, soft delete) and the
confirmation workflow (confirm one, confirm all suggested, skip, add).

Every operation that touches ``items`` goes through ``_apply_items`` so the
derived stats and fully-confirmed flag are recomputed before the row is
flushed. Once an extraction with a resolvable project is fully confirmed and
not yet merged, a merge task is scheduled in the same transaction.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from codified.core.errors import NotFoundError, PreconditionError
from codified.db.models import CodifiedExtractionModel, DocumentModel, MergeTaskModel
from codified.extraction.repository import load_items, require_extraction, resolve_project_id
from codified.extraction.stats import recompute_derived
from codified.models import (
    CodifiedItem,
    ConfirmAllResult,
    ConfirmResult,
    DerivedState,
    MappingStatus,
)
from codified.tasks.outbox import FAILED, PENDING, schedule_merge
from codified.utils.timestamps import utcnow

logger = structlog.get_logger(__name__)

ItemInput = CodifiedItem | Mapping[str, Any]


async def create(
    session: AsyncSession,
    document_id: UUID,
    items: Sequence[ItemInput],
    project_id: UUID | None = None,
) -> UUID:
    """Store the fast-pass extraction of a document.

    Raises:
        NotFoundError: If the document does not exist
        pydantic.ValidationError: If an item is malformed or has an unknown status
        PreconditionError: If two items share an id
    """
    if await session.get(DocumentModel, document_id) is None:
        raise NotFoundError("document", document_id)

    parsed = _parse_items(items)
    derived = recompute_derived(parsed)
    now = utcnow()

    extraction = CodifiedExtractionModel(
        document_id=document_id,
        project_id=project_id,
        items=_dump_items(parsed),
        mapping_stats=derived.stats.model_dump(),
        fast_pass_completed=True,
        smart_pass_completed=False,
        is_fully_confirmed=derived.is_fully_confirmed,
        merged_to_project_library=False,
        codified_at=now,
        confirmed_at=now if derived.is_fully_confirmed else None,
    )
    session.add(extraction)
    await session.flush()

    logger.info(
        "extraction_created",
        extraction_id=str(extraction.id),
        document_id=str(document_id),
        items=len(parsed),
        is_fully_confirmed=derived.is_fully_confirmed,
    )

    await _schedule_merge_if_ready(session, extraction, reason="created")
    return extraction.id


async def update_after_smart_pass(
    session: AsyncSession,
    extraction_id: UUID,
    items: Sequence[ItemInput],
) -> UUID:
    """Replace an extraction's items with the smart-pass result."""
    extraction = await _require_mutable(session, extraction_id)

    parsed = _parse_items(items)
    now = utcnow()
    derived = _apply_items(extraction, parsed, now)
    extraction.smart_pass_completed = True
    extraction.smart_pass_at = now
    await session.flush()

    logger.info(
        "extraction_smart_pass_applied",
        extraction_id=str(extraction_id),
        items=len(parsed),
        is_fully_confirmed=derived.is_fully_confirmed,
    )

    await _schedule_merge_if_ready(session, extraction, reason="smart_pass")
    return extraction.id


async def confirm_item(
    session: AsyncSession,
    extraction_id: UUID,
    item_id: str,
    item_code: str,
    canonical_code_id: str | None = None,
) -> ConfirmResult:
    """Confirm one item with the code the user chose.

    An unknown ``item_id`` leaves the items unchanged (logged, not raised).
    """
    extraction = await _require_mutable(session, extraction_id)

    items, found = _update_item(
        load_items(extraction),
        item_id,
        item_code=item_code,
        suggested_code_id=canonical_code_id,
        mapping_status=MappingStatus.CONFIRMED,
        confidence=1.0,
    )
    if not found:
        logger.warning("confirm_item_unknown_item", extraction_id=str(extraction_id), item_id=item_id)

    derived = _apply_items(extraction, items, utcnow())
    await session.flush()
    await _schedule_merge_if_ready(session, extraction, reason="confirmed")

    return ConfirmResult(is_fully_confirmed=derived.is_fully_confirmed, stats=derived.stats)


async def confirm_all_suggested(session: AsyncSession, extraction_id: UUID) -> ConfirmAllResult:
    """Accept every AI suggestion that carries a code.

    ``confirmed_items`` lists exactly the items that moved from suggested to
    confirmed in this call.
    """
    extraction = await _require_mutable(session, extraction_id)

    items: list[CodifiedItem] = []
    confirmed: list[CodifiedItem] = []
    for item in load_items(extraction):
        if item.mapping_status is MappingStatus.SUGGESTED and item.suggested_code:
            item = item.model_copy(
                update={
                    "item_code": item.suggested_code,
                    "mapping_status": MappingStatus.CONFIRMED,
                    "confidence": 1.0,
                }
            )
            confirmed.append(item)
        items.append(item)

    derived = _apply_items(extraction, items, utcnow())
    await session.flush()

    logger.info(
        "extraction_suggestions_confirmed",
        extraction_id=str(extraction_id),
        confirmed=len(confirmed),
        is_fully_confirmed=derived.is_fully_confirmed,
    )

    await _schedule_merge_if_ready(session, extraction, reason="confirmed")
    return ConfirmAllResult(
        is_fully_confirmed=derived.is_fully_confirmed,
        stats=derived.stats,
        confirmed_items=confirmed,
    )


async def skip_item(session: AsyncSession, extraction_id: UUID, item_id: str) -> ConfirmResult:
    """Mark an item unmatched. Unknown ids are a no-op, as in confirm_item."""
    extraction = await _require_mutable(session, extraction_id)

    items, found = _update_item(
        load_items(extraction),
        item_id,
        mapping_status=MappingStatus.UNMATCHED,
        confidence=0.0,
    )
    if not found:
        logger.warning("skip_item_unknown_item", extraction_id=str(extraction_id), item_id=item_id)

    derived = _apply_items(extraction, items, utcnow())
    await session.flush()
    await _schedule_merge_if_ready(session, extraction, reason="confirmed")

    return ConfirmResult(is_fully_confirmed=derived.is_fully_confirmed, stats=derived.stats)


async def add_item(session: AsyncSession, extraction_id: UUID, item: ItemInput) -> ConfirmResult:
    """Append a manually entered item. Any status is accepted."""
    extraction = await _require_mutable(session, extraction_id)

    items = _parse_items([*load_items(extraction), item])
    derived = _apply_items(extraction, items, utcnow())
    await session.flush()

    logger.info("extraction_item_added", extraction_id=str(extraction_id), item_id=items[-1].id)

    await _schedule_merge_if_ready(session, extraction, reason="confirmed")
    return ConfirmResult(is_fully_confirmed=derived.is_fully_confirmed, stats=derived.stats)


async def soft_delete(
    session: AsyncSession, extraction_id: UUID, reason: str | None = None
) -> dict[str, bool]:
    """Hide an extraction from active queries.

    Values already merged into the library stay there; open merge tasks for the
    extraction are closed as failed.
    """
    extraction = await require_extraction(session, extraction_id)

    now = utcnow()
    extraction.is_deleted = True
    extraction.deleted_at = now
    extraction.deleted_reason = reason or "User deleted"

    stmt = select(MergeTaskModel).where(
        MergeTaskModel.extraction_id == extraction_id,
        MergeTaskModel.status == PENDING,
    )
    for task in (await session.execute(stmt)).scalars():
        task.status = FAILED
        task.last_error = "Extraction deleted before merge"

    await session.flush()
    logger.info("extraction_deleted", extraction_id=str(extraction_id), reason=extraction.deleted_reason)
    return {"success": True}


async def _require_mutable(session: AsyncSession, extraction_id: UUID) -> CodifiedExtractionModel:
    extraction = await require_extraction(session, extraction_id)
    if extraction.is_deleted:
        raise PreconditionError(f"Extraction {extraction_id} is deleted")
    return extraction


def _parse_items(items: Sequence[ItemInput]) -> list[CodifiedItem]:
    parsed = [
        item if isinstance(item, CodifiedItem) else CodifiedItem.model_validate(item)
        for item in items
    ]
    seen: set[str] = set()
    for item in parsed:
        if item.id in seen:
            raise PreconditionError(f"Duplicate item id {item.id!r}")
        seen.add(item.id)
    return parsed


def _dump_items(items: Sequence[CodifiedItem]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


def _update_item(
    items: list[CodifiedItem], item_id: str, **changes: Any
) -> tuple[list[CodifiedItem], bool]:
    found = False
    updated = []
    for item in items:
        if item.id == item_id:
            item = item.model_copy(update=changes)
            found = True
        updated.append(item)
    return updated, found


def _apply_items(
    extraction: CodifiedExtractionModel, items: Sequence[CodifiedItem], now: datetime
) -> DerivedState:
    was_confirmed = extraction.is_fully_confirmed
    derived = recompute_derived(items)

    extraction.items = _dump_items(items)
    extraction.mapping_stats = derived.stats.model_dump()
    extraction.is_fully_confirmed = derived.is_fully_confirmed

    if derived.is_fully_confirmed and not was_confirmed:
        extraction.confirmed_at = now
    elif not derived.is_fully_confirmed:
        extraction.confirmed_at = None

    return derived


async def _schedule_merge_if_ready(
    session: AsyncSession, extraction: CodifiedExtractionModel, reason: str
) -> None:
    if (
        not extraction.is_fully_confirmed
        or extraction.merged_to_project_library
        or extraction.is_deleted
    ):
        return

    project_id = await resolve_project_id(session, extraction)
    if project_id is None:
        logger.info("merge_not_scheduled", extraction_id=str(extraction.id), reason="no_project")
        return

    # The triggering mutation must not fail because scheduling did
    try:
        await schedule_merge(session, extraction.id, project_id, reason=reason)
    except Exception:
        logger.exception("merge_schedule_failed", extraction_id=str(extraction.id))
