"""
Tests for the operator and webhook API endpoints.

Tests cover:
- GET /operations/rate, /circuits, /memory, /health, /report - component status
- POST /operations/sync/{entity_type} - queued and inline sync runs
- POST /operations/reset/{component} - operator resets
- GET /operations/dead-letter, POST /operations/dead-letter/{id}/retry
- X-Operations-Token guard and unconfigured services
- POST /webhooks/crm - webhook intake
"""

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from crmsync.core.exceptions import CrmApiError
from crmsync.db import get_session
from crmsync.main import app
from crmsync.models.sync_task import SyncTask, TaskKind, TaskStatus
from crmsync.services.container import configure_services
from crmsync.services.task_queue import claim_next_task, enqueue_task, fail_task

from conftest import FakeClient, make_settings

OPS = "/api/v1/operations"


@pytest.fixture(scope="function")
def api(test_engine):
    """Create test client with test database."""

    def override_get_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()


@pytest.fixture
def wired(services):
    configure_services(services)
    return services


class TestStatusEndpoints:
    """Read-only component status."""

    def test_rate_status(self, api, wired):
        response = api.get(f"{OPS}/rate")

        assert response.status_code == 200
        data = response.json()
        assert data["enabled"] is True
        assert "deals" in data["endpoints"]

    def test_rate_status_for_one_class(self, api, wired):
        wired.rate_limiter.consume("deals")

        data = api.get(f"{OPS}/rate", params={"endpoint_class": "deal"}).json()

        assert data["endpoint_class"] == "deals"
        assert data["current_usage"] == 1

    def test_circuits(self, api, wired):
        data = api.get(f"{OPS}/circuits").json()

        assert set(data) >= {"sync", "webhook"}
        assert data["sync"]["state"] == "closed"

    def test_memory(self, api, wired):
        data = api.get(f"{OPS}/memory").json()

        assert data["usage_percentage"] == 10.0
        assert data["alert_level"] == "ok"

    def test_upstream_health(self, api, wired):
        data = api.get(f"{OPS}/health").json()

        assert data["status"] == "healthy"
        assert data["enabled"] is False

    def test_report_ok(self, api, wired):
        response = api.get(f"{OPS}/report")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_report_critical_returns_503(self, api, wired, memory_sampler):
        memory_sampler.percent = 97

        response = api.get(f"{OPS}/report")

        assert response.status_code == 503
        assert response.json()["components"]["memory"]["status"] == "critical"


class TestSyncTrigger:
    """POST /operations/sync/{entity_type}."""

    def test_queues_by_default(self, api, wired, test_session):
        response = api.post(f"{OPS}/sync/deal", json={"limit": 100})

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "queued"
        assert data["entity_type"] == "deals"

        task = test_session.get(SyncTask, data["task_id"])
        assert task.payload["limit"] == 100
        assert task.payload["execution"] == "async"
        assert task.payload["context"] == "job"

    def test_invalid_options_rejected(self, api, wired):
        response = api.post(f"{OPS}/sync/deals", json={"limit": 0})

        assert response.status_code == 422

    def test_unknown_entity_type(self, api, wired):
        assert api.post(f"{OPS}/sync/spaceships").status_code == 404

    def test_inline_run(self, api, make_services):
        configure_services(make_services(FakeClient.with_pages(3, 2)))

        response = api.post(f"{OPS}/sync/deals", params={"inline": "true"}, json={"limit": 10})

        assert response.status_code == 200
        data = response.json()
        assert data["totals"]["synced"] == 5
        assert data["context"] == "api"
        assert data["metadata"]["stop_reason"] == "completed"

    def test_inline_failure_returns_502(self, api, make_services):
        configure_services(make_services(FakeClient([CrmApiError("Unauthorized", status_code=401)])))

        response = api.post(f"{OPS}/sync/deals", params={"inline": "true"})

        assert response.status_code == 502
        assert response.json()["error"]["kind"] == "auth"

    def test_inline_invalid_options(self, api, wired):
        response = api.post(f"{OPS}/sync/deals", params={"inline": "true"}, json={"timeout": 5})

        assert response.status_code == 422


class TestReset:
    """POST /operations/reset/{component}."""

    def test_reset_circuits(self, api, wired):
        for _ in range(wired.settings.CIRCUIT_BREAKER_THRESHOLD):
            wired.breakers.get("sync").record_failure()

        response = api.post(f"{OPS}/reset/circuits")

        assert response.status_code == 200
        assert response.json() == {"reset": ["circuits"]}
        assert wired.breakers.get("sync").is_open() is False

    def test_reset_all(self, api, wired):
        wired.rate_limiter.consume("deals")

        response = api.post(f"{OPS}/reset/all")

        assert set(response.json()["reset"]) == {"rate", "circuits", "memory", "health", "merge_detection"}
        assert wired.rate_limiter.budget("deals").consumed_today == 0

    def test_unknown_component(self, api, wired):
        assert api.post(f"{OPS}/reset/everything").status_code == 400


class TestDeadLetter:
    """Dead-letter listing and retry."""

    def _dead_letter(self, session):
        enqueue_task(session, TaskKind.SYNC, "deals")
        claimed = claim_next_task(session)
        return fail_task(session, claimed.id, "Forbidden", error_kind="auth", retryable=False)

    def test_list(self, api, wired, test_session):
        dead = self._dead_letter(test_session)

        data = api.get(f"{OPS}/dead-letter").json()

        assert [task["id"] for task in data] == [dead.id]
        assert data[0]["error_kind"] == "auth"

    def test_retry(self, api, wired, test_session):
        dead = self._dead_letter(test_session)

        response = api.post(f"{OPS}/dead-letter/{dead.id}/retry")

        assert response.status_code == 200
        assert response.json()["status"] == TaskStatus.PENDING.value
        assert response.json()["attempts"] == 0

    def test_retry_unknown_task(self, api, wired):
        assert api.post(f"{OPS}/dead-letter/999/retry").status_code == 404


class TestGuard:
    """Operator token and service wiring."""

    def test_token_required_when_configured(self, api, wired):
        wired.settings = make_settings(OPERATIONS_API_TOKEN="s3cret")

        assert api.get(f"{OPS}/circuits").status_code == 401
        assert api.get(f"{OPS}/circuits", headers={"X-Operations-Token": "wrong"}).status_code == 401
        assert api.get(f"{OPS}/circuits", headers={"X-Operations-Token": "s3cret"}).status_code == 200

    def test_unconfigured_services_return_503(self, api):
        assert api.get(f"{OPS}/circuits").status_code == 503

    def test_liveness(self, api):
        assert api.get("/health").json() == {"status": "healthy"}


class TestWebhookIntake:
    """POST /webhooks/crm queues events."""

    PAYLOAD = {"meta": {"action": "updated", "object": "person", "id": 3}, "current": {"id": 3, "name": "Ada"}}

    def test_valid_payload_is_queued(self, api, wired, test_session):
        response = api.post("/api/v1/webhooks/crm", json=self.PAYLOAD)

        assert response.status_code == 202
        assert response.json()["status"] == "queued"
        task = test_session.exec(select(SyncTask)).one()
        assert task.kind == TaskKind.WEBHOOK
        assert task.entity_type == "persons"

    def test_invalid_payload(self, api, wired):
        response = api.post("/api/v1/webhooks/crm", json={"meta": {"action": "updated"}})

        assert response.status_code == 422

    def test_body_must_be_json(self, api, wired):
        response = api.post(
            "/api/v1/webhooks/crm", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400

    def test_ignored_when_auto_sync_disabled(self, api, wired, test_session):
        wired.settings = make_settings(WEBHOOK_AUTO_SYNC=False)

        response = api.post("/api/v1/webhooks/crm", json=self.PAYLOAD)

        assert response.json()["status"] == "ignored"
        assert test_session.exec(select(SyncTask)).all() == []
