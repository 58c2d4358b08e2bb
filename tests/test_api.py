"""Tests for the HTTP surface."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import success_payload

from genqueue.api import create_app
from genqueue.engine import GenerationEngine
from genqueue.schemas import ModelType


@pytest.fixture
def client(engine: GenerationEngine) -> TestClient:
    return TestClient(create_app(engine))


def _submit(client: TestClient, **overrides) -> dict:
    body = {"user_id": "alice", "model_id": "nano-banana", "prompt": "a cat", **overrides}
    return client.post("/generations", json=body).json()


# ============================================================================
# User Routes
# ============================================================================


def test_submit_generation(client: TestClient, engine: GenerationEngine) -> None:
    engine.ledger.grant("alice", 10)

    response = client.post(
        "/generations", json={"user_id": "alice", "model_id": "nano-banana", "prompt": "a cat"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "processing"
    assert data["provider_request_id"] == "req-1"


def test_submit_insufficient_credits(client: TestClient) -> None:
    response = client.post(
        "/generations", json={"user_id": "alice", "model_id": "nano-banana", "prompt": "a cat"}
    )

    assert response.status_code == 402
    assert "Insufficient tickets" in response.json()["detail"]


def test_submit_unknown_model(client: TestClient, engine: GenerationEngine) -> None:
    engine.ledger.grant("alice", 10)

    response = client.post("/generations", json={"user_id": "alice", "model_id": "nope"})

    assert response.status_code == 404


def test_submit_ignores_client_pricing(client: TestClient, engine: GenerationEngine) -> None:
    engine.ledger.grant("alice", 1)

    expensive = client.post(
        "/generations",
        json={"user_id": "alice", "model_id": "wan-2.5", "prompt": "a cat", "ticket_cost": 0},
    )
    assert expensive.status_code == 402

    response = client.post(
        "/generations",
        json={
            "user_id": "alice",
            "model_id": "nano-banana",
            "prompt": "a cat",
            "ticket_cost": 0,
            "no_charge": True,
        },
    )
    assert response.status_code == 200
    data = response.json()
    assert data["ticket_cost"] == 1
    assert data["no_charge"] is False
    account = engine.ledger.get_account("alice")
    assert (account.balance, account.reserved) == (0, 1)


def test_submit_no_charge_requires_operator_route(client: TestClient) -> None:
    response = client.post(
        "/generations",
        json={"user_id": "mallory", "model_id": "nano-banana", "prompt": "a cat", "no_charge": True},
    )

    assert response.status_code == 402


def test_operator_submission_is_not_billed(client: TestClient, engine: GenerationEngine) -> None:
    response = client.post(
        "/admin/generations", json={"user_id": "ops", "model_id": "wan-2.5", "prompt": "a cat"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["no_charge"] is True
    assert data["ticket_cost"] == 20
    account = engine.ledger.get_account("ops")
    assert (account.balance, account.reserved) == (0, 20)
    assert client.post("/admin/generations", json={"user_id": "ops", "model_id": "nope"}).status_code == 404


def test_queue_status(client: TestClient, engine: GenerationEngine) -> None:
    engine.ledger.grant("alice", 10)
    _ = engine.create_limit("nano-banana", ModelType.image, 1)
    _ = _submit(client)
    waiting = _submit(client)

    response = client.get(f"/queue/status/{waiting['id']}")

    assert response.status_code == 200
    assert response.json()["status"] == "queued"
    assert response.json()["position"] == 1
    assert response.json()["estimated_wait"] == 30


def test_queue_status_missing(client: TestClient) -> None:
    assert client.get("/queue/status/999").status_code == 404


# ============================================================================
# Webhook
# ============================================================================


def test_webhook_completes_item(client: TestClient, engine: GenerationEngine) -> None:
    engine.ledger.grant("alice", 10)
    item = _submit(client)

    response = client.post(
        f"/api/webhooks/provider?item_id={item['id']}",
        json=success_payload(item["provider_request_id"], "https://cdn/a.png"),
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert client.get(f"/queue/status/{item['id']}").json()["status"] == "completed"


def test_webhook_always_acknowledges(client: TestClient) -> None:
    unknown = client.post("/api/webhooks/provider", json=success_payload("req-x", "https://cdn/a.png"))
    malformed = client.post(
        "/api/webhooks/provider", content=b"not json", headers={"Content-Type": "application/json"}
    )
    empty = client.post("/api/webhooks/provider", json={})

    for response in (unknown, malformed, empty):
        assert response.status_code == 200
        assert response.json() == {"received": True}


# ============================================================================
# Admin: Limits
# ============================================================================


def test_limits_crud(client: TestClient) -> None:
    created = client.post(
        "/admin/queue/limits",
        json={"model_id": "custom-model", "model_type": "video", "max_concurrent": 2},
    )
    assert created.status_code == 200
    assert created.json()["max_concurrent"] == 2

    duplicate = client.post(
        "/admin/queue/limits",
        json={"model_id": "custom-model", "model_type": "video", "max_concurrent": 2},
    )
    assert duplicate.status_code == 400

    updated = client.put("/admin/queue/limits", json={"model_id": "custom-model", "max_concurrent": 0})
    assert updated.status_code == 200
    assert updated.json()["max_concurrent"] == 999

    listed = client.get("/admin/queue/limits").json()
    assert "custom-model" in [l["model_id"] for l in listed]
    assert "nano-banana" in [l["model_id"] for l in listed]

    assert client.delete("/admin/queue/limits", params={"model_id": "custom-model"}).status_code == 200
    assert client.delete("/admin/queue/limits", params={"model_id": "custom-model"}).status_code == 404


def test_limit_out_of_range(client: TestClient) -> None:
    response = client.post(
        "/admin/queue/limits",
        json={"model_id": "custom-model", "model_type": "image", "max_concurrent": 5000},
    )

    assert response.status_code == 400


def test_update_missing_limit(client: TestClient) -> None:
    response = client.put("/admin/queue/limits", json={"model_id": "ghost", "max_concurrent": 1})

    assert response.status_code == 404


# ============================================================================
# Admin: Queue
# ============================================================================


def test_stats_and_items(client: TestClient, engine: GenerationEngine) -> None:
    engine.ledger.grant("alice", 10)
    _ = engine.create_limit("nano-banana", ModelType.image, 1)
    _ = _submit(client)
    _ = _submit(client)

    stats = client.get("/admin/queue/stats").json()
    assert stats["total_queued"] == 1
    assert stats["total_processing"] == 1

    items = client.get("/admin/queue/items", params={"status": "queued"}).json()
    assert len(items) == 1
    assert items[0]["queue_position"] == 1


def test_cancel_and_retry(client: TestClient, engine: GenerationEngine) -> None:
    engine.ledger.grant("alice", 10)
    item = _submit(client)

    cancelled = client.delete(f"/admin/queue/items/{item['id']}")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "failed"
    assert client.delete(f"/admin/queue/items/{item['id']}").status_code == 400

    retried = client.post(f"/admin/queue/items/{item['id']}/retry")
    assert retried.status_code == 200
    assert retried.json()["retry_of"] == item["id"]

    not_failed = client.post(f"/admin/queue/items/{retried.json()['id']}/retry")
    assert not_failed.status_code == 400
    assert client.post("/admin/queue/items/999/retry").status_code == 404


def test_reset_stale_and_clear_completed(client: TestClient, engine: GenerationEngine) -> None:
    engine.ledger.grant("alice", 10)
    item = _submit(client)
    _ = client.post(
        "/api/webhooks/provider", json=success_payload(item["provider_request_id"], "https://cdn/a.png")
    )

    reset = client.post("/admin/queue/reset-stale")
    assert reset.status_code == 200
    assert reset.json()["reset"] == 0

    cleared = client.post("/admin/queue/clear-completed", json={"model_id": "nano-banana"})
    assert cleared.json() == {"deleted": 1}
