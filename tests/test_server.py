"""Tests for the HTTP status/trigger endpoints."""

from conftest import ZONE_A
from fastapi.testclient import TestClient

from flux_apps_dns.server import create_app


def test_health(harness) -> None:
    client = TestClient(create_app(harness().manager))

    r = client.get("/health")

    assert r.status_code == 200
    assert r.json() == {"status": "ok", "service": "flux-apps-dns"}


def test_trigger_runs_iteration_and_exposes_state(harness) -> None:
    h = harness()
    h.set_apps(minecraft1="1.2.3.4")
    client = TestClient(create_app(h.manager))

    r = client.post("/trigger")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"

    r = client.get("/dns-state")
    assert r.status_code == 200
    assert r.json() == {"minecraft1": {ZONE_A: ["1.2.3.4"]}}

    r = client.get("/status")
    assert r.status_code == 200
    body = r.json()
    assert body["tracked_apps"] == 1
    assert body["pending_deletions"] == 0
    assert body["last_seen_apps"] == ["minecraft1"]
    assert body["dns_gateway_enabled"] is True


def test_trigger_rejected_while_loop_running(harness) -> None:
    h = harness()
    h.set_apps(minecraft1="1.2.3.4")
    client = TestClient(create_app(h.manager))

    h.manager._loop_lock.acquire()
    try:
        r = client.post("/trigger")
    finally:
        h.manager._loop_lock.release()

    assert r.status_code == 409
    assert r.json()["status"] == "skipped"
    assert h.flux_api.calls == 0
    assert h.gateway.create_calls == []
