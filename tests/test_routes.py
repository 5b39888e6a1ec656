from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from api.app.config import load_settings
from api.app.main import create_app
from api.app.services.scheduling import ManualClock, ManualTaskScheduler
from api.app.services.status_tracker import StatusTracker


T0 = datetime(2025, 6, 2, 10, 0, tzinfo=timezone.utc)
ADMIN = {"X-Admin-Key": "test-admin"}


def _message(device_id: str = "D1", **overrides) -> dict:
    payload = {
        "device_id": device_id,
        "timestamp": "2025-06-02T10:00:00.000Z",
        "power_kw": 3.1,
        "voltage": 229.8,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setenv("ADMIN_AUTH_MODE", "key")
    monkeypatch.setenv("ADMIN_API_KEY", "test-admin")
    monkeypatch.setenv("ENABLE_SCHEDULER", "0")
    monkeypatch.setenv("ENABLE_ADMIN_ROUTES", "1")
    monkeypatch.setenv("ENABLE_READ_ROUTES", "1")
    monkeypatch.setenv("ENABLE_INGEST_ROUTES", "1")
    monkeypatch.delenv("MAX_REQUEST_BODY_BYTES", raising=False)
    return monkeypatch


def _client(tracker: StatusTracker | None = None):
    clock = ManualClock(T0)
    tracker = tracker or StatusTracker(clock=clock, scheduler=ManualTaskScheduler(clock))
    app = create_app(load_settings(), tracker=tracker)
    return TestClient(app), tracker, clock


def test_root_and_health(env) -> None:
    client, _, _ = _client()

    root = client.get("/")
    assert root.status_code == 200
    assert root.json()["message"] == "Fleet Status Tracker is running"
    assert root.json()["status"] == "healthy"

    health = client.get("/api/v1/health")
    assert health.status_code == 200
    body = health.json()
    assert body["ok"] is True
    assert body["features"]["scheduler"]["enabled"] is False
    assert body["features"]["routes"] == {"ingest": True, "read": True, "admin": True}


def test_ingest_acknowledges_valid_and_faulty_messages(env) -> None:
    client, tracker, _ = _client()

    ok = client.post("/api/v1/telemetry", json=_message("D1"))
    bad = client.post("/api/v1/telemetry", json=_message("D2", voltage=10))

    assert ok.status_code == 200
    assert ok.json() == {"status": "processed"}
    assert bad.status_code == 200
    assert bad.json() == {"status": "processed"}
    assert tracker.get_device("D1").status.value == "ONLINE"
    assert tracker.get_device("D2").status.value == "FAULTY"
    assert tracker.counters.total_messages == 2


def test_ingest_rejects_unreadable_bodies(env) -> None:
    client, tracker, _ = _client()

    not_json = client.post(
        "/api/v1/telemetry",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    not_object = client.post("/api/v1/telemetry", json=[_message()])

    assert not_json.status_code == 400
    assert not_json.json()["error"]["code"] == "INVALID_PAYLOAD"
    assert not_json.json()["error"]["request_id"]
    assert not_object.status_code == 400
    assert tracker.counters.total_messages == 0


def test_out_of_range_timestamp_is_quarantined_not_a_server_error(env) -> None:
    client, tracker, _ = _client()

    resp = client.post("/api/v1/telemetry", json=_message("X", timestamp="0001-01-01T00:00:00+05:00"))

    assert resp.status_code == 200
    assert resp.json() == {"status": "processed"}
    assert tracker.get_device("X").status.value == "FAULTY"
    assert tracker.counters.total_messages == 1
    assert tracker.quarantine_queue.size() == 1


def test_oversized_body_is_rejected(env) -> None:
    env.setenv("MAX_REQUEST_BODY_BYTES", "128")
    client, tracker, _ = _client()

    resp = client.post("/api/v1/telemetry", json=_message(note="x" * 500))

    assert resp.status_code == 413
    assert resp.json()["error"]["code"] == "PAYLOAD_TOO_LARGE"
    assert tracker.counters.total_messages == 0


def test_request_id_is_echoed(env) -> None:
    client, _, _ = _client()

    resp = client.get("/api/v1/metrics", headers={"X-Request-ID": "req-123"})

    assert resp.headers["X-Request-ID"] == "req-123"


def test_metrics_use_camel_case_keys(env) -> None:
    client, _, clock = _client()
    client.post("/api/v1/telemetry", json=_message("D1", voltage=10))
    clock.advance(5)

    resp = client.get("/api/v1/metrics")

    assert resp.status_code == 200
    body = resp.json()
    assert body["totalMessages"] == 1
    assert body["faulty"] == 1
    assert body["fallbacks"] == 0
    assert body["flapping"] == 0
    assert body["runtime"] == "5.00s"
    assert body["deviceCount"] == 1
    assert "startTime" in body
    assert body["deviceStatusCounts"] == {"ONLINE": 0, "OFFLINE": 0, "FLAPPING": 0, "FAULTY": 1, "UNKNOWN": 0}
    assert set(body["queueStats"]) == {"fallback", "tamperCheck", "quarantine"}
    assert body["queueStats"]["quarantine"] == {
        "name": "quarantine",
        "pending": 1,
        "processed": 0,
        "retryCount": 0,
    }


def test_device_read_endpoints(env) -> None:
    client, _, _ = _client()
    client.post("/api/v1/telemetry", json=_message("B"))
    client.post("/api/v1/telemetry", json=_message("A"))

    listed = client.get("/api/v1/devices")
    assert [d["id"] for d in listed.json()] == ["A", "B"]

    one = client.get("/api/v1/devices/A")
    assert one.status_code == 200
    assert one.json()["status"] == "ONLINE"
    assert one.json()["lastSeen"] is not None
    assert one.json()["statusChangedAt"] is not None
    assert one.json()["lastMessage"]["voltage"] == 229.8

    missing = client.get("/api/v1/devices/nope")
    assert missing.status_code == 404
    assert missing.json()["error"]["message"] == "Device not found"


def test_queue_stats_endpoint(env) -> None:
    client, _, _ = _client()
    client.post("/api/v1/telemetry", json=_message("D1", timestamp="bad-timestamp"))

    body = client.get("/api/v1/queues").json()

    assert body["quarantine"]["pending"] == 1
    assert body["tamperCheck"]["pending"] == 0
    assert body["fallback"]["name"] == "fallback"


def test_admin_routes_require_key(env) -> None:
    client, _, _ = _client()

    assert client.post("/api/v1/admin/sweep").status_code == 401
    assert client.post("/api/v1/admin/sweep", headers={"X-Admin-Key": "wrong"}).status_code == 401
    assert client.post("/api/v1/admin/fallback-retries").status_code == 401


def test_admin_sweep_then_flapping_over_http(env) -> None:
    client, tracker, clock = _client()
    client.post("/api/v1/telemetry", json=_message("D2"))

    clock.advance(6 * 60)
    sweep = client.post("/api/v1/admin/sweep", headers=ADMIN)
    assert sweep.status_code == 200
    assert sweep.json() == {"markedOffline": ["D2"], "count": 1}

    clock.advance(60)
    client.post("/api/v1/telemetry", json=_message("D2", timestamp="2025-06-02T10:07:00.000Z"))

    body = client.get("/api/v1/metrics").json()
    assert body["fallbacks"] == 1
    assert body["flapping"] == 1
    assert body["queueStats"]["tamperCheck"]["pending"] == 1
    assert tracker.get_device("D2").status.value == "FLAPPING"


def test_admin_fallback_drain(env) -> None:
    client, tracker, clock = _client()
    client.post("/api/v1/telemetry", json=_message("D2"))
    clock.advance(6 * 60)
    client.post("/api/v1/admin/sweep", headers=ADMIN)

    resp = client.post("/api/v1/admin/fallback-retries", headers=ADMIN)

    assert resp.status_code == 200
    assert resp.json() == {"dequeued": 1, "scheduled": 1, "exhausted": 0}
    assert tracker.scheduler.pending() == 1


def test_admin_auth_can_be_disabled(env) -> None:
    env.setenv("ADMIN_AUTH_MODE", "none")
    client, _, _ = _client()

    assert client.post("/api/v1/admin/sweep").status_code == 200
