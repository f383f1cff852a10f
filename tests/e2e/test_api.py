from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from alertgov.api.app import create_app
from alertgov.service import GovernanceService
from alertgov.suppression.signals import StaticSignalSource

NOISY = {"ack_rate": 0.05, "suspected_false_rate": 0.6, "volume": 15, "dedup_ratio": 0.6,
         "escalation_effectiveness": 0.2}


@pytest.fixture
def service(clock):
    svc = GovernanceService(signals=StaticSignalSource({"g1": NOISY}), clock=clock)
    yield svc
    svc.close()


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_suppression_evaluate_and_state(client):
    r = client.post("/v1/suppression/evaluate", json={"group_ids": ["g1"]})
    assert r.status_code == 200
    body = r.json()
    assert body["results"][0]["state"] == "CANDIDATE"
    assert body["skipped"] == []

    # tracked groups are evaluated when no body is sent
    r = client.post("/v1/suppression/evaluate")
    assert r.json()["results"][0]["state"] == "SUPPRESSED"

    state = client.get("/v1/suppression/g1").json()
    assert state["suppressed"] is True
    assert state["mode"] == "MUTE"

    transitions = client.get("/v1/suppression/transitions", params={"group_id": "g1"}).json()
    assert [t["new"] for t in transitions["transitions"]] == ["CANDIDATE", "SUPPRESSED"]


def test_unknown_group_defaults_to_active(client):
    state = client.get("/v1/suppression/unknown").json()
    assert state["state"] == "ACTIVE"
    assert state["suppressed"] is False


def test_group_meta_blocks_critical(client):
    r = client.put("/v1/suppression/g1/meta", json={"severity_scope": "critical"})
    assert r.status_code == 200
    assert r.json()["severity_scope"] == "critical"
    body = client.post("/v1/suppression/evaluate", json={"group_ids": ["g1"]}).json()
    assert body["results"][0]["state"] == "ACTIVE"


def test_weights_override_and_validation(client):
    r = client.put("/v1/weights", json={"w1": 0.4, "actor": "alice"})
    assert r.status_code == 200
    weights = r.json()["weights"]
    assert sum(weights.values()) == pytest.approx(1.0)

    assert client.put("/v1/weights", json={}).status_code == 400
    assert client.put("/v1/weights", json={"w2": -0.1}).status_code == 400

    got = client.get("/v1/weights").json()
    assert got["weights"] == pytest.approx(weights)


def test_weights_adjust_returns_reason(client):
    payload = {
        "ack_rate": 0.5,
        "escalation_effectiveness": 0.7,
        "false_suppression_rate": 0.1,
        "suspected_false_rate": 0.15,
        "re_noise_rate": 0.2,
    }
    r = client.post("/v1/weights/adjust", json=payload)
    assert r.status_code == 200
    assert r.json()["reason"] == "applied"
    again = client.post("/v1/weights/adjust", json=payload).json()
    assert again["reason"] == "cooldown"
    assert again["weights"] == r.json()["weights"]

    bad = dict(payload, ack_rate=1.5)
    assert client.post("/v1/weights/adjust", json=bad).status_code == 422


def test_tuning_cycle_and_log(client):
    r = client.post("/v1/weights/cycle")
    assert r.status_code == 200
    assert r.json()["reason"] == "warmup"
    entries = client.get("/v1/weights/log").json()["entries"]
    assert entries[-1]["reason"] == "warmup"


def test_alert_ack_escalation_flow(client, clock):
    r = client.post("/v1/alerts", json={"alert_id": "a1", "severity": "critical", "dedup_group": "g1"})
    assert r.status_code == 201

    clock.advance(minutes=6)
    sweep = client.post("/v1/escalations/sweep").json()
    assert [e["alert_id"] for e in sweep["escalated"]] == ["a1"]

    first = client.post("/v1/alerts/a1/ack", json={"actor": "alice"}).json()
    second = client.post("/v1/alerts/a1/ack").json()
    assert first["already_acked"] is False
    assert second["already_acked"] is True
    assert second["acknowledged_at"] == first["acknowledged_at"]

    state = client.get("/v1/alerts/a1").json()
    assert state["ack"]["acked"] is True
    assert state["escalation"]["escalated"] is True

    metrics = client.get("/v1/escalations/metrics").json()
    assert metrics["total"] == 1
    assert client.get("/v1/alerts/metrics").json()["ack_rate"] == 1.0

    assert client.delete("/v1/alerts/a1/ack").json()["changed"] is True
    assert client.delete("/v1/alerts/a1/ack").json()["changed"] is False


def test_force_escalation(client):
    client.post("/v1/alerts", json={"alert_id": "a1", "severity": "high"})
    r = client.post("/v1/escalations/a1/force", json={"actor": "bob", "note": "customer call"})
    assert r.status_code == 200
    body = r.json()
    assert body["manual"] is True
    assert body["reason_code"] == "MANUAL_OVERRIDE"
    assert body["meta"] == {"actor": "bob", "note": "customer call"}


def test_unknown_alert_is_404(client):
    assert client.post("/v1/alerts/ghost/ack").status_code == 404
    assert client.post("/v1/escalations/ghost/force").status_code == 404
    r = client.get("/v1/alerts/ghost")
    assert r.status_code == 404
    assert r.json()["alert_id"] == "ghost"


def test_status(client):
    body = client.get("/status").json()
    assert set(body) >= {"weights", "controller", "runner", "suppression", "tasks"}
    assert body["tasks"] == []


def test_prune_without_persistence_is_skipped(client):
    r = client.post("/v1/persistence/prune")
    assert r.status_code == 200
    assert r.json() == {"skipped": True, "reason": "no_persistence", "deleted": {}}
