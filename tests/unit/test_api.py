"""Tests for the operator HTTP API."""

import pytest
from fastapi.testclient import TestClient

from delivery_plane.core.coordinator import ControlPlaneCoordinator
from delivery_plane.core.feature_flags import FlagStore, parse_flag_document
from delivery_plane.main import create_app

PHASES = [{"traffic_weight_percent": 5}, {"traffic_weight_percent": 100}]


@pytest.fixture
def coordinator(flag_document):
    return ControlPlaneCoordinator(
        flags=FlagStore(parse_flag_document(flag_document, version=1)),
        tick_interval=60,
    )


@pytest.fixture
def client(coordinator):
    with TestClient(create_app(coordinator)) as test_client:
        yield test_client


class TestFlagRoutes:
    """Tests for /v1/flags."""

    def test_update_flag(self, client):
        resp = client.put("/v1/flags/dark-mode", json={"enabled": True, "rollout_percentage": 40})
        assert resp.status_code == 200
        data = resp.json()
        assert data["enabled"] is True
        assert data["rollout_percentage"] == 40
        assert data["snapshot_version"] == 2

    def test_update_unknown_flag(self, client):
        resp = client.put("/v1/flags/missing", json={"enabled": True})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    def test_update_invalid_percentage(self, client):
        resp = client.put("/v1/flags/dark-mode", json={"enabled": True, "rollout_percentage": 120})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "VALIDATION_FAILED"

    def test_evaluate(self, client):
        resp = client.post(
            "/v1/flags/new-checkout/evaluate",
            json={"environment": "production", "user_id": "qa-1"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["enabled"] is True
        assert data["reason"] == "explicit_user"
        assert data["variant"] in ("control", "treatment")

    def test_evaluate_unknown_flag(self, client):
        resp = client.post("/v1/flags/missing/evaluate", json={"environment": "production"})
        assert resp.status_code == 200
        assert resp.json()["reason"] == "flag_not_found"


class TestCanaryRoutes:
    """Tests for /v1/canaries."""

    def test_start_get_and_abort(self, client):
        resp = client.post("/v1/canaries", json={"service_name": "checkout", "phases": PHASES})
        assert resp.status_code == 201
        execution_id = resp.json()["id"]
        assert resp.json()["canary_weight"] == 5

        resp = client.get(f"/v1/canaries/{execution_id}")
        assert resp.status_code == 200
        assert resp.json()["status"] == "running"

        resp = client.post(f"/v1/canaries/{execution_id}/abort", json={"reason": "manual"})
        assert resp.status_code == 202
        assert resp.json()["abort_requested"] is True

    def test_start_conflict(self, client):
        client.post("/v1/canaries", json={"service_name": "checkout", "phases": PHASES})
        resp = client.post("/v1/canaries", json={"service_name": "checkout", "phases": PHASES})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "CONFLICT"

    def test_start_invalid_phases(self, client):
        resp = client.post(
            "/v1/canaries",
            json={"service_name": "checkout", "phases": [{"traffic_weight_percent": 50}]},
        )
        assert resp.status_code == 422

    def test_unknown_execution(self, client):
        assert client.get("/v1/canaries/canary-missing").status_code == 404
        assert client.post("/v1/canaries/canary-missing/abort").status_code == 404


class TestCircuitAndRoutingRoutes:
    """Tests for inspection routes."""

    def test_unknown_circuit(self, client):
        assert client.get("/v1/circuits/payments").status_code == 404

    def test_known_circuit(self, client, coordinator):
        coordinator.breakers.get_or_create("payments", "canary")
        resp = client.get("/v1/circuits/payments", params={"variant": "canary"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["state"] == "closed"
        assert data["details"]["name"] == "payments:canary"

    def test_routing(self, client):
        resp = client.get("/v1/routing/checkout")
        assert resp.status_code == 200
        assert resp.json() == {"service": "checkout", "stable_weight": 100, "canary_weight": 0, "version": 0}


def test_health_and_metrics(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["flags"]["count"] == 3

    client.post("/v1/flags/search-v2/evaluate", json={"environment": "production"})
    metrics = client.get("/metrics/")
    assert metrics.status_code == 200
    assert "delivery_flag_evaluations_total" in metrics.text
