"""Seed data builders shared by the test suites."""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from codified.db.models import DocumentModel, ProjectModel


def make_item(
    item_id: str,
    status: str = "matched",
    code: str | None = "<construction.cost>",
    value: Any = 1000,
    **overrides: Any,
) -> dict[str, Any]:
    """Build a codified item payload in the camelCase wire shape.

    Matched and confirmed items carry ``code`` as their item code, suggested
    items carry it as the suggestion.
    """
    item = {
        "id": item_id,
        "originalName": f"Line {item_id}",
        "value": value,
        "dataType": "currency",
        "category": "Construction Costs",
        "itemCode": code if status in ("matched", "confirmed") else None,
        "suggestedCode": code if status == "suggested" else None,
        "mappingStatus": status,
        "confidence": 0.9 if status in ("matched", "suggested") else 0.0,
    }
    item.update(overrides)
    return item


async def add_document(
    session: AsyncSession, project: ProjectModel | None, file_name: str
) -> DocumentModel:
    document = DocumentModel(file_name=file_name, project_id=project.id if project else None)
    session.add(document)
    await session.flush()
    return document
