"""Tests for the Codified HTTP API.

Each test gets a fresh SQLite file seeded through a synchronous engine; the
app builds its own async engine against the same file on first request.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from codified.config import reset_config
from codified.db.models import Base, DocumentModel, MergeTaskModel, ProjectModel
from codified.web.app import app

from tests.factories import make_item


@dataclass
class SeededDB:
    engine: Engine
    project_id: UUID
    document_id: UUID
    orphan_document_id: UUID


@pytest.fixture
def seeded_db(tmp_path: Path, monkeypatch) -> SeededDB:
    db_path = tmp_path / "codified.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    reset_config()

    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        project = ProjectModel(name="Riverside Apartments")
        session.add(project)
        session.flush()
        document = DocumentModel(file_name="appraisal-v1.xlsx", project_id=project.id)
        orphan = DocumentModel(file_name="loose.pdf")
        session.add_all([document, orphan])
        session.commit()
        seeded = SeededDB(engine, project.id, document.id, orphan.id)

    yield seeded
    engine.dispose()


@pytest.fixture
def client(seeded_db: SeededDB):
    with TestClient(app) as client:
        yield client


def _create(client: TestClient, document_id: UUID, items: list[dict]) -> str:
    response = client.post(
        "/extractions", json={"documentId": str(document_id), "items": items}
    )
    assert response.status_code == 201, response.text
    return response.json()["id"]


def test_health(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["database"] == "connected"


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-42"})

    assert response.headers["X-Request-ID"] == "req-42"


def test_confirmation_flow_through_library(client: TestClient, seeded_db: SeededDB):
    extraction_id = _create(
        client,
        seeded_db.document_id,
        [make_item("1", "suggested", code="<land.cost>", value="£1,250.50"), make_item("2", "matched")],
    )

    current = client.get(f"/extractions/by-document/{seeded_db.document_id}").json()
    assert current["id"] == extraction_id
    assert datetime.fromisoformat(current["codifiedAt"]).utcoffset() == timedelta(0)
    assert current["isFullyConfirmed"] is False
    assert current["mappingStats"]["suggested"] == 1
    assert current["items"][0]["originalName"] == "Line 1"

    confirmed = client.post(f"/extractions/{extraction_id}/confirm-all").json()
    assert confirmed["isFullyConfirmed"] is True
    assert [item["id"] for item in confirmed["confirmedItems"]] == ["1"]

    tasks = client.get("/admin/tasks", params={"status": "pending"}).json()
    assert [task["extractionId"] for task in tasks] == [extraction_id]

    drained = client.post("/admin/tasks/run").json()
    assert drained["processed"] == 1
    assert drained["outcomes"][0]["status"] == "done"

    library = client.get(f"/projects/{seeded_db.project_id}/library").json()
    codes = {item["itemCode"]: item for item in library}
    assert codes["<land.cost>"]["currentValueNormalized"] == pytest.approx(1250.5)
    assert codes["<total.construction.costs>"]["isComputed"] is True

    stats = client.get(f"/projects/{seeded_db.project_id}/library/stats").json()
    assert stats["totalItems"] == 2

    history = client.get(f"/library/items/{codes['<land.cost>']['id']}/history").json()
    assert len(history["history"]) == 1


def test_confirm_item_route(client: TestClient, seeded_db: SeededDB):
    extraction_id = _create(
        client, seeded_db.document_id, [make_item("1", "pending_review", code=None)]
    )

    response = client.post(
        f"/extractions/{extraction_id}/items/1/confirm",
        json={"itemCode": "<fees.legal>", "canonicalCodeId": "code-9"},
    )

    assert response.status_code == 200
    assert response.json()["isFullyConfirmed"] is True
    assert response.json()["stats"]["confirmed"] == 1


def test_skip_and_add_item_routes(client: TestClient, seeded_db: SeededDB):
    extraction_id = _create(client, seeded_db.orphan_document_id, [make_item("1", "suggested")])

    skipped = client.post(f"/extractions/{extraction_id}/items/1/skip").json()
    added = client.post(f"/extractions/{extraction_id}/items", json=make_item("2", "suggested")).json()

    assert skipped["stats"]["unmatched"] == 1
    assert skipped["isFullyConfirmed"] is True
    assert added["isFullyConfirmed"] is False


def test_smart_pass_route(client: TestClient, seeded_db: SeededDB):
    extraction_id = _create(
        client, seeded_db.orphan_document_id, [make_item("1", "pending_review", code=None)]
    )

    response = client.put(
        f"/extractions/{extraction_id}/smart-pass", json={"items": [make_item("1", "suggested")]}
    )

    assert response.status_code == 200
    assert client.get(f"/extractions/{extraction_id}").json()["smartPassCompleted"] is True


def test_unknown_extraction_is_404(client: TestClient):
    response = client.post(f"/extractions/{uuid4()}/confirm-all")

    assert response.status_code == 404
    assert "not found" in response.json()["detail"]


def test_unknown_status_is_422(client: TestClient, seeded_db: SeededDB):
    response = client.post(
        "/extractions",
        json={"documentId": str(seeded_db.document_id), "items": [make_item("1", "approved")]},
    )

    assert response.status_code == 422


def test_merge_without_project_is_409(client: TestClient, seeded_db: SeededDB):
    extraction_id = _create(client, seeded_db.orphan_document_id, [make_item("1", "matched")])

    response = client.post(f"/extractions/{extraction_id}/merge")

    assert response.status_code == 409


def test_manual_merge_then_delete(client: TestClient, seeded_db: SeededDB):
    extraction_id = _create(client, seeded_db.document_id, [make_item("1", "matched")])

    merged = client.post(f"/extractions/{extraction_id}/merge").json()
    again = client.post(f"/extractions/{extraction_id}/merge").json()
    impact = client.get(f"/extractions/{extraction_id}/delete-impact").json()
    deleted = client.delete(f"/extractions/{extraction_id}", params={"reason": "Superseded"})

    assert merged["created"] == 1
    assert again["alreadyMerged"] is True
    assert impact == {
        "canDelete": True,
        "mergedItems": 1,
        "wouldRemoveItems": 1,
        "wouldRevertItems": 0,
    }
    assert deleted.json() == {"success": True}
    assert client.get(f"/extractions/by-document/{seeded_db.document_id}").json() is None


def test_revert_document_route(client: TestClient, seeded_db: SeededDB):
    extraction_id = _create(client, seeded_db.document_id, [make_item("1", "matched")])
    client.post(f"/extractions/{extraction_id}/merge")

    response = client.post(
        f"/projects/{seeded_db.project_id}/library/revert-document",
        json={"documentId": str(seeded_db.document_id)},
    )

    assert response.json() == {"reverted": 0, "deleted": 1}
    deleted = client.get(f"/projects/{seeded_db.project_id}/library/deleted").json()
    assert [item["deletedReason"] for item in deleted] == ["Source document removed"]


def test_snapshot_routes(client: TestClient, seeded_db: SeededDB):
    extraction_id = _create(client, seeded_db.document_id, [make_item("1", "matched", value=100)])
    client.post(f"/extractions/{extraction_id}/merge")
    base = f"/projects/{seeded_db.project_id}/library/snapshots"

    created = client.post(base, json={"description": "Before tender"})
    snapshot_id = created.json()["snapshotId"]
    library = client.get(f"/projects/{seeded_db.project_id}/library").json()
    item_id = next(item["id"] for item in library if not item["isComputed"])
    client.post(f"/library/items/{item_id}/override", json={"value": 150})
    second = client.post(base, json={"reason": "model_run", "modelRunId": "run-1"}).json()

    listed = client.get(base).json()
    compared = client.get(
        "/library/snapshots/compare",
        params={"first": snapshot_id, "second": second["snapshotId"]},
    ).json()
    by_run = client.get("/library/snapshots/by-model-run/run-1").json()
    reverted = client.post(f"/library/snapshots/{snapshot_id}/revert", json={"userId": "u-1"})
    cleanup = client.post(f"{base}/cleanup", params={"keep": 1})

    assert created.status_code == 201
    assert created.json()["itemCount"] == 1
    assert [snapshot["reason"] for snapshot in listed] == ["model_run", "manual_save"]
    assert compared["summary"]["changedCount"] == 1
    assert by_run["id"] == second["snapshotId"]
    assert reverted.json()["success"] is True
    assert cleanup.json() == {"deleted": 1}
    assert client.get(f"/library/snapshots/{snapshot_id}").status_code == 404
    assert client.post(base, json={"reason": "nightly"}).status_code == 422


def test_revert_document_route_with_backup(client: TestClient, seeded_db: SeededDB):
    extraction_id = _create(client, seeded_db.document_id, [make_item("1", "matched")])
    client.post(f"/extractions/{extraction_id}/merge")

    response = client.post(
        f"/projects/{seeded_db.project_id}/library/revert-document",
        json={"documentId": str(seeded_db.document_id), "createBackupSnapshot": True},
    ).json()

    backup = client.get(f"/library/snapshots/{response['backupSnapshotId']}").json()
    assert response["deleted"] == 1
    assert backup["reason"] == "pre_revert_backup"
    assert [item["itemCode"] for item in backup["items"]] == ["<construction.cost>"]


def test_manual_library_item_routes(client: TestClient, seeded_db: SeededDB):
    created = client.post(
        f"/projects/{seeded_db.project_id}/library/items",
        json={
            "itemCode": "<contingency>",
            "category": "Construction Costs",
            "originalName": "Contingency",
            "value": 5000,
            "dataType": "currency",
        },
    )
    item_id = created.json()["id"]
    duplicate = client.post(
        f"/projects/{seeded_db.project_id}/library/items",
        json={
            "itemCode": "<contingency>",
            "category": "Construction Costs",
            "originalName": "Contingency",
            "value": 1,
            "dataType": "currency",
        },
    )
    override = client.post(f"/library/items/{item_id}/override", json={"value": 6000})
    revert = client.post(f"/library/items/{item_id}/revert", json={"historyIndex": 9})

    assert created.status_code == 201
    assert duplicate.status_code == 409
    assert override.json() == {"success": True}
    assert revert.status_code == 409


def test_admin_backfill_routes(client: TestClient, seeded_db: SeededDB):
    _create(client, seeded_db.document_id, [make_item("1", "matched")])

    merge_report = client.post("/admin/merge-unmerged").json()
    backfill_report = client.post("/admin/backfill-project-ids").json()

    # The extraction has no project link of its own yet
    assert merge_report["totalExtractions"] == 1
    assert merge_report["unmergedFound"] == 0
    assert backfill_report["projectIdsUpdated"] == 1
    assert backfill_report["mergesScheduled"] == 0
    assert backfill_report["alreadyScheduled"] == 1
    assert client.get("/admin/tasks", params={"status": "stuck"}).status_code == 400


def test_inline_dispatch_merges_after_commit(seeded_db: SeededDB, monkeypatch):
    monkeypatch.setenv("MERGE_DISPATCH", "inline")
    reset_config()

    with TestClient(app) as client:
        _create(client, seeded_db.document_id, [make_item("1", "matched")])
    # Leaving the client waits for in-flight inline merges

    with Session(seeded_db.engine) as session:
        statuses = session.execute(select(MergeTaskModel.status)).scalars().all()
    assert statuses == ["done"]
