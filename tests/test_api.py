import base64
import inspect
import threading
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from integration_outbox import outbox, routes
from integration_outbox.adapters import AdapterRegistry, ProviderResult
from integration_outbox.dispatch import DispatchScheduler
from integration_outbox.main import app
from integration_outbox.rate_limits import DEFAULT_RATE_LIMITS, RateLimitTable
from integration_outbox.reconcile import ReconciliationSweeper
from integration_outbox.services import get_scheduler, get_sweeper


class OkAdapter:
    async def send(self, integration_id, operation, payload):
        return ProviderResult(ok=True, status_code=200, data={"echo": payload})


@pytest.fixture()
def client(database, clock, monkeypatch):
    monkeypatch.setenv("API_BEARER_TOKEN", "test-token")
    monkeypatch.setenv("ADMIN_PASSWORD", "test-admin")
    table = RateLimitTable(DEFAULT_RATE_LIMITS)
    app.dependency_overrides[get_scheduler] = lambda: DispatchScheduler(
        table,
        AdapterRegistry({"slack": OkAdapter()}),
        max_attempts=5,
        backoff_multiplier=2,
        default_retry_after=60,
        provider_timeout=5,
        lease_seconds=900,
        now=clock.now,
        monotonic=clock.monotonic,
        sleep=clock.sleep,
    )
    app.dependency_overrides[get_sweeper] = lambda: ReconciliationSweeper(
        table,
        stale_after_seconds=6 * 60 * 60,
        now=clock.now,
        monotonic=clock.monotonic,
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def _bearer():
    return {"Authorization": "Bearer test-token"}


def _admin():
    token = base64.b64encode(b"ops:test-admin").decode("ascii")
    return {"Authorization": f"Basic {token}"}


def _enqueue_body(**overrides):
    body = {
        "integration_id": "slack",
        "operation": "deploy_notification",
        "stable_resource_id": "deployment_42",
        "payload_json": {"status": "approved"},
    }
    body.update(overrides)
    return body


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}


def test_enqueue_is_idempotent_over_http(client):
    first = client.post("/outbox/enqueue", headers=_bearer(), json=_enqueue_body())
    second = client.post("/outbox/enqueue", headers=_bearer(), json=_enqueue_body())

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["id"] == second.json()["id"]
    assert first.json()["status"] == "queued"
    assert first.json()["payload"] == {"status": "approved"}


def test_enqueue_accepts_payload_field_name(client):
    body = _enqueue_body()
    body["payload"] = body.pop("payload_json")

    resp = client.post("/outbox/enqueue", headers=_bearer(), json=body)

    assert resp.status_code == 200


def test_enqueue_missing_field_is_bad_request(client):
    resp = client.post("/outbox/enqueue", headers=_bearer(), json=_enqueue_body(operation=""))

    assert resp.status_code == 400
    assert "operation" in resp.json()["detail"]


def test_enqueue_requires_bearer(client):
    assert client.post("/outbox/enqueue", json=_enqueue_body()).status_code == 401
    bad = {"Authorization": "Bearer nope"}
    assert client.post("/outbox/enqueue", headers=bad, json=_enqueue_body()).status_code == 403


def test_dispatch_requires_admin(client):
    assert client.post("/outbox/dispatch", json={}).status_code == 401
    assert client.post("/outbox/dispatch", headers=_bearer(), json={}).status_code == 401


def test_dispatch_returns_summary(client, clock):
    client.post("/outbox/enqueue", headers=_bearer(), json=_enqueue_body())
    clock.advance(1)

    resp = client.post("/outbox/dispatch", headers=_admin(), json={"batch_size": 10})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["results"] == {"processed": 1, "sent": 1, "failed": 0, "dead_letter": 0, "rate_limited": 0}


def test_reconcile_returns_run(client, clock):
    outbox.enqueue("custom_api", "sync", "res-1", {"a": 1}, now=clock.now() - timedelta(hours=7))

    resp = client.post(
        "/outbox/reconcile",
        headers=_admin(),
        json={"integration_id": "custom_api", "max_items": 3000, "hard_timeout": 6900},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success"
    assert body["drift_fixed"] == 1

    runs = client.get("/outbox/reconcile-runs", headers=_admin()).json()
    assert runs["total"] == 1
    assert runs["items"][0]["id"] == body["id"]


def test_reconcile_unknown_integration_is_404(client):
    resp = client.post("/outbox/reconcile", headers=_admin(), json={"integration_id": "nope"})

    assert resp.status_code == 404


def test_list_get_and_stats(client):
    created = client.post("/outbox/enqueue", headers=_bearer(), json=_enqueue_body()).json()

    listing = client.get("/outbox", headers=_admin(), params={"status": "queued"}).json()
    assert listing["total"] == 1
    assert listing["items"][0]["id"] == created["id"]

    assert client.get(f"/outbox/{created['id']}", headers=_admin()).json()["idempotency_key"] == created["idempotency_key"]
    assert client.get("/outbox/stats", headers=_admin()).json() == {"queued": 1, "sent": 0, "dead_letter": 0}
    assert client.get("/outbox", headers=_admin(), params={"status": "bogus"}).status_code == 400


def test_get_unknown_record_is_404(client):
    resp = client.get("/outbox/00000000-0000-0000-0000-000000000000", headers=_admin())

    assert resp.status_code == 404


def test_requeue_only_dead_letter(client):
    created = client.post("/outbox/enqueue", headers=_bearer(), json=_enqueue_body()).json()

    resp = client.post(f"/outbox/{created['id']}/requeue", headers=_admin())

    assert resp.status_code == 409


def test_dispatch_route_runs_off_the_server_loop(client, clock):
    seen = []

    class LoopRecordingAdapter:
        async def send(self, integration_id, operation, payload):
            seen.append(threading.current_thread() is threading.main_thread())
            return ProviderResult(ok=True, status_code=200, data={})

    app.dependency_overrides[get_scheduler] = lambda: DispatchScheduler(
        RateLimitTable(DEFAULT_RATE_LIMITS),
        AdapterRegistry({"slack": LoopRecordingAdapter()}),
        provider_timeout=5,
        now=clock.now,
        monotonic=clock.monotonic,
        sleep=clock.sleep,
    )
    client.post("/outbox/enqueue", headers=_bearer(), json=_enqueue_body())
    clock.advance(1)

    resp = client.post("/outbox/dispatch", headers=_admin(), json={"batch_size": 10})

    assert resp.status_code == 200
    assert resp.json()["results"]["sent"] == 1
    assert seen == [False]
    assert not inspect.iscoroutinefunction(routes.dispatch_outbox)


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Basic !!!not-base64!!!", 401),
        ("Basic " + base64.b64encode(b"no-colon").decode("ascii"), 401),
        ("Digest abc", 401),
        ("Basic " + base64.b64encode("ops:wröng".encode("utf-8")).decode("ascii"), 403),
    ],
)
def test_admin_auth_rejects_bad_credentials(client, header, expected):
    resp = client.get("/outbox/stats", headers={"Authorization": header})

    assert resp.status_code == expected
