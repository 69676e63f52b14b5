"""
HTTP surface: queueing, section completion, drain and action plan lifecycle.
"""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from conftest import FIELD_CLEAN, FIELD_DOCUMENT, FIELD_TOTAL, OPENING_TEMPLATE, RECEIVING_TEMPLATE, STORE_ID
from nocheck.api.main import app, get_core
from nocheck.core.media import InMemoryMediaStore
from nocheck.core.notifications import InMemoryNotificationGateway
from nocheck.core.service import ChecklistCore


@pytest.fixture
def core(db_path, offline_db_path, config_store, directory, clock):
    return ChecklistCore.from_config(
        db_path, offline_db_path,
        gateway=InMemoryNotificationGateway(),
        media_store=InMemoryMediaStore(),
        now=clock,
    )


@pytest.fixture
def client(core):
    """Test client wired to a core backed by temporary databases."""
    app.dependency_overrides[get_core] = lambda: core
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def receiving_draft(user_id, document, total):
    return {
        "template_id": RECEIVING_TEMPLATE,
        "store_id": STORE_ID,
        "user_id": user_id,
        "responses": [
            {"field_id": FIELD_DOCUMENT, "value_text": document},
            {"field_id": FIELD_TOTAL, "value_number": total},
        ],
    }


def opening_draft(clean="Nao", **extra):
    draft = {
        "template_id": OPENING_TEMPLATE,
        "store_id": STORE_ID,
        "user_id": "u-est",
        "responses": [{"field_id": FIELD_CLEAN, "value_text": clean}],
    }
    draft.update(extra)
    return draft


class TestHealthAndQueue:
    """Test health and the offline queue endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["db_health"] is True
        assert data["pending_count"] == 0

    def test_enqueue_and_list(self, client):
        response = client.post("/offline/submissions", json=receiving_draft("u-est", "555", 100))

        assert response.status_code == 201
        data = response.json()
        assert data["sync_status"] == "pending"

        items = client.get("/offline/submissions").json()["items"]
        assert [i["local_id"] for i in items] == [data["local_id"]]

    def test_malformed_draft_is_rejected(self, client):
        bad = receiving_draft("u-est", "555", 100)
        bad["template_id"] = 0
        assert client.post("/offline/submissions", json=bad).status_code == 422

        two_values = opening_draft()
        two_values["responses"] = [{"field_id": FIELD_CLEAN, "value_text": "Nao", "value_number": 1}]
        assert client.post("/offline/submissions", json=two_values).status_code == 422

        assert client.get("/offline/submissions").json()["items"] == []

    def test_sectioned_draft_completion(self, client):
        local_id = client.post("/offline/submissions", json=opening_draft(section_ids=[1, 2])).json()["local_id"]

        first = client.post(f"/offline/submissions/{local_id}/sections/1", json={"responses": []})
        assert first.status_code == 200
        assert first.json()["submission_complete"] is False

        second = client.post(f"/offline/submissions/{local_id}/sections/2",
                             json={"responses": [{"field_id": FIELD_CLEAN, "value_text": "Sim"}]})
        assert second.json() == {
            "local_id": local_id, "section_id": 2, "sync_status": "pending", "submission_complete": True,
        }

    def test_unknown_section_or_entry_is_404(self, client):
        local_id = client.post("/offline/submissions", json=opening_draft(section_ids=[1])).json()["local_id"]

        assert client.post(f"/offline/submissions/{local_id}/sections/9", json={"responses": []}).status_code == 404
        assert client.post("/offline/submissions/nope/sections/1", json={"responses": []}).status_code == 404


class TestDrainAndReconcile:
    """Draining runs both engines."""

    def test_drain_pairs_receiving_checklists(self, client, clock):
        client.post("/offline/submissions", json=receiving_draft("u-est", "555", 100))
        clock.advance(minutes=3)
        client.post("/offline/submissions", json=receiving_draft("u-apr", "555", 100))

        drained = client.post("/sync/drain").json()
        assert drained == {"committed": 2, "failed": 0, "skipped_reason": None}

        [pair] = client.get("/cross-validations").json()["items"]
        assert pair["status"] == "sucesso"
        assert pair["difference"] == 0

        status = client.get("/sync/status").json()
        assert status["pending_count"] == 0
        assert status["is_syncing"] is False
        assert datetime.fromisoformat(status["last_sync_at"]) == clock()

    def test_expire_endpoint(self, client, clock):
        client.post("/offline/submissions", json=receiving_draft("u-est", "777", 10))
        client.post("/sync/drain")
        clock.advance(minutes=90)

        assert client.post("/cross-validations/expire").json() == {"count": 1}
        assert client.get("/cross-validations", params={"status": "expirado"}).json()["items"][0]["document_number"] == "777"


class TestActionPlanEndpoints:
    """Test listing, transitions and the overdue sweep."""

    @pytest.fixture
    def plan_id(self, client):
        client.post("/offline/submissions", json=opening_draft())
        client.post("/sync/drain")
        [plan] = client.get("/action-plans").json()["items"]
        return plan["id"]

    def test_plan_created_from_drained_submission(self, client, plan_id):
        [plan] = client.get("/action-plans", params={"store_id": STORE_ID}).json()["items"]

        assert plan["status"] == "aberto"
        assert plan["assigned_to"] == "manager-1"
        assert plan["severity"] == "baixa"

    def test_transition(self, client, plan_id):
        response = client.patch(f"/action-plans/{plan_id}", json={"status": "em_andamento", "actor": "manager-1"})

        assert response.status_code == 200
        assert response.json()["status"] == "em_andamento"
        assert response.json()["resolved_at"] is None

    def test_invalid_transition_is_409(self, client, plan_id):
        client.patch(f"/action-plans/{plan_id}", json={"status": "concluido"})
        response = client.patch(f"/action-plans/{plan_id}", json={"status": "em_andamento"})

        assert response.status_code == 409

    def test_unknown_status_is_422(self, client, plan_id):
        assert client.patch(f"/action-plans/{plan_id}", json={"status": "aberto"}).status_code == 422

    def test_unknown_plan_is_404(self, client):
        assert client.patch("/action-plans/999", json={"status": "concluido"}).status_code == 404

    def test_sweep_overdue(self, client, plan_id, clock):
        assert client.post("/action-plans/sweep-overdue").json() == {"count": 0}

        clock.advance(days=2)

        assert client.post("/action-plans/sweep-overdue").json() == {"count": 1}
        assert client.get("/action-plans", params={"status": "vencido"}).json()["items"][0]["id"] == plan_id
