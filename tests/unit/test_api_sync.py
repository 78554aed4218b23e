from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from paysync.http.middleware import REQUEST_ID_HEADER
from paysync.main import app
from paysync.services.accounts import AccountResolver
from paysync.services.runtime import SyncRuntime, set_runtime
from paysync.services.scheduler import SchedulerService
from paysync.services.stripe.source import SourcePage
from paysync.services.sync.dispatcher import QueueDispatcher
from paysync.services.webhooks.endpoints import ManagedWebhookRecord
from paysync.services.webhooks.processor import WebhookProcessor
from paysync.services.webhooks.signature import build_signature_header
from paysync.settings import settings
from tests.unit.fakes import FakeQueue, build_harness, event, item

SECRET = "whsec_api_test"


@pytest.fixture
def harness():
    return build_harness()


@pytest.fixture
def managed_webhooks() -> MagicMock:
    service = MagicMock()
    service.find_or_create = AsyncMock(
        return_value=ManagedWebhookRecord(
            id=1,
            account_id="acct_test",
            url="https://example.test/hooks",
            platform_webhook_id="we_1",
            enabled_events=["customer.created"],
            created=True,
        )
    )
    return service


@pytest.fixture
def client(harness, managed_webhooks) -> TestClient:
    queue = FakeQueue()
    dispatcher = QueueDispatcher(
        harness.engine,
        queue,
        queue_name="paysync_sync",
        visibility_timeout_seconds=60,
        batch_size=10,
        max_parallel=4,
        channel="worker",
    )
    runtime = SyncRuntime(
        engine=harness.engine,
        dispatcher=dispatcher,
        scheduler=SchedulerService(enabled=False, tick_seconds=5, worker_count=1, dispatcher=dispatcher),
        webhooks=WebhookProcessor(
            routes=harness.engine.routes,
            entity_store=harness.entity_store,
            accounts=AccountResolver(harness.repository, harness.source, account_id="acct_test"),
            secret=SECRET,
            tolerance_seconds=0,
        ),
        managed_webhooks=managed_webhooks,
    )
    set_runtime(runtime)
    return TestClient(app)


def test_list_object_types(client: TestClient) -> None:
    response = client.get("/api/v1/sync/object-types")

    assert response.status_code == 200
    object_types = response.json()["data"]["object_types"]
    assert [entry["name"] for entry in object_types] == ["customers", "subscriptions", "payment_methods", "events"]
    assert object_types[2]["strategy"] == "parent"
    assert object_types[2]["parent_type"] == "customers"
    assert object_types[3]["after_primary"] is True


def test_process_next_then_read_run_status(client: TestClient, harness) -> None:
    harness.source.script(
        "customers",
        SourcePage(items=[item("cus_1", 100)], has_more=True),
        SourcePage(items=[item("cus_2", 200)], has_more=False),
    )

    first = client.post("/api/v1/sync/process", json={"object_type": "customers"})
    second = client.post("/api/v1/sync/process", json={"object_type": "customers"})

    assert first.status_code == 200
    assert first.json()["data"] == {"object_type": "customers", "processed": 1, "has_more": True}
    assert second.json()["data"] == {"object_type": "customers", "processed": 1, "has_more": False}

    runs = client.get("/api/v1/sync/runs").json()["data"]["runs"]
    assert len(runs) == 1
    assert runs[0]["triggered_by"] == "worker"
    assert runs[0]["is_open"] is False

    detail = client.get(f"/api/v1/sync/runs/{runs[0]['id']}")
    assert detail.status_code == 200
    data = detail.json()["data"]
    assert data["status_counts"]["complete"] == 1
    assert data["object_runs"][0]["cursor"] == "200"
    assert data["object_runs"][0]["processed_count"] == 2


def test_process_next_error_envelopes(client: TestClient, harness) -> None:
    unknown = client.post("/api/v1/sync/process", json={"object_type": "widgets"})
    missing_run = client.post("/api/v1/sync/process", json={"object_type": "customers", "run_id": 404})
    invalid = client.post("/api/v1/sync/process", json={"object_type": "customers", "extra": True})

    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "unknown_object_type"
    assert missing_run.status_code == 404
    assert missing_run.json()["error"]["code"] == "run_not_found"
    assert invalid.status_code == 422
    assert invalid.json()["error"]["code"] == "validation_error"

    harness.source.script("customers", SourcePage(items=[], has_more=True))
    violation = client.post("/api/v1/sync/process", json={"object_type": "customers"})
    assert violation.status_code == 502
    assert violation.json()["error"]["code"] == "upstream_protocol_violation"
    assert violation.json()["error"]["details"]["object_type"] == "customers"


def test_unknown_run_detail_is_404(client: TestClient) -> None:
    response = client.get("/api/v1/sync/runs/999")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "run_not_found"


def test_dispatch_bootstraps_sweep(client: TestClient) -> None:
    response = client.post("/api/v1/sync/dispatch")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["enqueued_object_types"] == ["customers", "subscriptions", "payment_methods", "events"]
    assert data["run_id"] == 1
    assert data["outcomes"] == []
    assert data["skipped_reason"] is None


def test_managed_webhook_endpoint(client: TestClient, managed_webhooks: MagicMock) -> None:
    response = client.post("/api/v1/sync/webhooks/managed", json={"url": "https://example.test/hooks"})

    assert response.status_code == 200
    assert response.json()["data"]["platform_webhook_id"] == "we_1"
    managed_webhooks.find_or_create.assert_awaited_once_with("https://example.test/hooks")

    managed_webhooks.find_or_create.side_effect = ValueError("Webhook url must not be empty.")
    rejected = client.post("/api/v1/sync/webhooks/managed", json={"url": " "})
    assert rejected.status_code == 400
    assert rejected.json()["error"]["code"] == "invalid_webhook_url"


def test_webhook_receiver_verifies_and_applies(client: TestClient, harness) -> None:
    payload = json.dumps(event("evt_1", "customer.created", "cus_1", 1_790_000_000)).encode("utf-8")
    header = build_signature_header(payload, secret=SECRET, timestamp=1_790_000_000)

    response = client.post(
        "/api/v1/webhooks",
        content=payload,
        headers={settings.webhook_signature_header: header, "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["data"]["action"] == "upserted"
    assert ("customers", "cus_1") in harness.entity_store.rows


def test_webhook_receiver_rejects_bad_input(client: TestClient, harness) -> None:
    payload = json.dumps(event("evt_1", "customer.created", "cus_1", 1_790_000_000)).encode("utf-8")
    forged = build_signature_header(payload, secret="whsec_forged", timestamp=1_790_000_000)
    unsupported = json.dumps(event("evt_2", "balance.available", "bal_1", 1_790_000_000)).encode("utf-8")

    bad_signature = client.post(
        "/api/v1/webhooks",
        content=payload,
        headers={settings.webhook_signature_header: forged},
    )
    no_signature = client.post("/api/v1/webhooks", content=payload)
    unknown_type = client.post(
        "/api/v1/webhooks",
        content=unsupported,
        headers={
            settings.webhook_signature_header: build_signature_header(
                unsupported,
                secret=SECRET,
                timestamp=1_790_000_000,
            )
        },
    )

    assert bad_signature.status_code == 400
    assert bad_signature.json()["error"]["code"] == "signature_invalid"
    assert no_signature.status_code == 400
    assert unknown_type.status_code == 400
    assert unknown_type.json()["error"]["code"] == "unsupported_event_type"
    assert unknown_type.json()["error"]["details"] == {"event_type": "balance.available"}
    assert harness.entity_store.rows == {}


def test_healthz_echoes_request_id(monkeypatch) -> None:
    monkeypatch.setattr("paysync.main.check_database", AsyncMock(return_value=True))
    client = TestClient(app)

    response = client.get("/healthz", headers={REQUEST_ID_HEADER: "request-123"})

    assert response.status_code == 200
    assert response.headers[REQUEST_ID_HEADER] == "request-123"
