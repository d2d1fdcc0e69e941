"""Request models for the Codified HTTP API.

Bodies accept camelCase keys (``itemCode``, ``projectId``) as well as
snake_case ones.

Usage:
    from codified.web.models import ConfirmItemRequest

    @router.post("/extractions/{extraction_id}/items/{item_id}/confirm")
    async def confirm(extraction_id: UUID, item_id: str, body: ConfirmItemRequest):
        ...
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from codified.models import CamelModel, CodifiedItem, SnapshotReason


# ============================================================================
# Extraction Models
# ============================================================================


class CreateExtractionRequest(CamelModel):
    """Used by: POST /extractions"""

    document_id: UUID
    project_id: UUID | None = None
    items: list[CodifiedItem]


class SmartPassRequest(CamelModel):
    """Used by: PUT /extractions/{id}/smart-pass"""

    items: list[CodifiedItem]


class ConfirmItemRequest(CamelModel):
    """Used by: POST /extractions/{id}/items/{item_id}/confirm"""

    item_code: str
    canonical_code_id: str | None = None


# ============================================================================
# Library Models
# ============================================================================


class RevertDocumentRequest(CamelModel):
    document_id: UUID
    create_backup_snapshot: bool = False


class RevertVersionRequest(CamelModel):
    history_index: int


class OverrideItemRequest(CamelModel):
    value: Any
    note: str | None = None
    user_id: str | None = None


class AddManualItemRequest(CamelModel):
    item_code: str
    category: str
    original_name: str
    value: Any
    data_type: str
    note: str | None = None
    user_id: str | None = None
    source_document_id: str | None = None
    source_document_name: str | None = None


class DeleteItemRequest(CamelModel):
    reason: str | None = None


class CategoryTotalOverrideRequest(CamelModel):
    category: str
    value: float
    note: str | None = None
    user_id: str | None = None


# ============================================================================
# Snapshot Models
# ============================================================================


class CreateSnapshotRequest(CamelModel):
    """Used by: POST /projects/{id}/library/snapshots"""

    reason: SnapshotReason = "manual_save"
    description: str | None = None
    model_run_id: str | None = None
    user_id: str | None = None


class RevertSnapshotRequest(CamelModel):
    user_id: str | None = None
