from __future__ import annotations

from datetime import timedelta

import pytest

from alertgov.config import EscalationConfig
from alertgov.errors import AlertNotFoundError
from alertgov.escalation.ack import AckLedger
from alertgov.escalation.manager import EscalationManager, compute_cooldown_ms, compute_threshold
from alertgov.events import ALERT_ESCALATED, EventBus
from alertgov.stores.base import AlertRecord
from alertgov.stores.memory import InMemoryAckStore, InMemoryAlertStore, InMemoryEscalationStore

MIN = 60_000


@pytest.fixture
def manager(clock):
    bus = EventBus()
    alerts = InMemoryAlertStore()
    ledger = AckLedger(alerts, InMemoryAckStore(), events=bus, clock=clock)
    return EscalationManager(EscalationConfig(), alerts, InMemoryEscalationStore(), ledger,
                             events=bus, clock=clock)


def add(manager, alert_id, ts, severity="critical"):
    manager.alerts.add(AlertRecord(alert_id=alert_id, timestamp=ts, severity=severity))


def test_threshold_static_below_min_samples():
    cfg = EscalationConfig()
    d = compute_threshold("critical", [10 * MIN] * 7, cfg)
    assert d.threshold_ms == 5 * MIN
    assert not d.dynamic


def test_threshold_dynamic_p75_plus_guardband():
    cfg = EscalationConfig()
    d = compute_threshold("critical", [10 * MIN] * 8, cfg)
    assert d.p75_ms == 10 * MIN
    assert d.guardband_ms == 2 * MIN
    assert d.threshold_ms == 12 * MIN


def test_threshold_never_below_base():
    cfg = EscalationConfig()
    d = compute_threshold("high", [1000] * 20, cfg)
    assert d.threshold_ms == 15 * MIN


def test_cooldown_is_clamped():
    cfg = EscalationConfig()
    assert compute_cooldown_ms(5 * MIN, cfg) == 150_000
    assert compute_cooldown_ms(1000, cfg) == cfg.cooldown_min_ms
    assert compute_cooldown_ms(10 * 3600_000, cfg) == cfg.cooldown_max_ms


def test_dynamic_threshold_learned_from_acks(manager, clock):
    start = clock()
    for i in range(8):
        ts = start - timedelta(hours=2, minutes=i)
        add(manager, f"old{i}", ts)
        manager.ledger.ack_alert(f"old{i}", now=ts + timedelta(minutes=10))
    assert manager.threshold_for("critical").threshold_ms == 12 * MIN


def test_sweep_escalates_once_per_cooldown(manager, clock):
    add(manager, "a1", clock())
    clock.advance(minutes=6)
    first = manager.run_sweep()
    assert [r.alert_id for r in first.escalated] == ["a1"]
    assert first.escalated[0].reason_code == "STALE_UNACK"

    clock.advance(minutes=1)
    second = manager.run_sweep()
    assert second.escalated == []
    assert second.skipped_cooldown == 1
    assert manager.escalations.get("a1").escalation_count == 1

    clock.advance(minutes=2)
    third = manager.run_sweep()
    assert len(third.escalated) == 1
    assert manager.escalations.get("a1").escalation_count == 2


def test_sweep_ignores_young_acked_and_ineligible(manager, clock):
    now = clock()
    add(manager, "young", now - timedelta(minutes=2))
    add(manager, "acked", now - timedelta(minutes=20))
    add(manager, "minor", now - timedelta(hours=1), severity="low")
    manager.ledger.ack_alert("acked")
    result = manager.run_sweep()
    assert result.escalated == []
    assert result.scanned == 1
    assert result.below_threshold == 1


def test_escalation_event_published(manager, clock):
    seen = []
    manager.events.subscribe(ALERT_ESCALATED, lambda _t, rec: seen.append(rec.alert_id))
    add(manager, "a1", clock() - timedelta(minutes=10))
    manager.run_sweep()
    assert seen == ["a1"]


def test_first_ack_after_escalation_wins(manager, clock):
    add(manager, "a1", clock())
    clock.advance(minutes=6)
    manager.run_sweep()
    clock.advance(minutes=1)
    manager.ledger.ack_alert("a1")
    assert manager.escalations.get("a1").ack_after_escalation_ms == MIN

    manager.ledger.unack_alert("a1")
    clock.advance(minutes=2)
    manager.ledger.ack_alert("a1")
    assert manager.escalations.get("a1").ack_after_escalation_ms == MIN


def test_force_escalate_bypasses_threshold_and_cooldown(manager, clock):
    add(manager, "a1", clock())
    rec = manager.force_escalate("a1", actor="oncall")
    assert rec.manual
    assert rec.reason_code == "MANUAL_OVERRIDE"
    again = manager.force_escalate("a1", actor="oncall")
    assert again.escalation_count == 2
    assert manager.get_escalation_state(["a1"])["a1"]["escalation_count"] == 2


def test_force_escalate_on_acked_alert_records_zero_latency(manager, clock):
    add(manager, "a1", clock())
    manager.ledger.ack_alert("a1")
    rec = manager.force_escalate("a1")
    assert rec.ack_after_escalation_ms == 0
    m = manager.get_escalation_metrics(window_ms=3600_000)
    assert m["suspected_false_rate"] == 1.0


def test_force_unknown_alert_raises(manager):
    with pytest.raises(AlertNotFoundError):
        manager.force_escalate("ghost")


def test_escalation_metrics(manager, clock):
    add(manager, "a1", clock())
    add(manager, "a2", clock())
    clock.advance(minutes=6)
    manager.run_sweep()
    clock.advance(minutes=1)
    manager.ledger.ack_alert("a1")
    m = manager.get_escalation_metrics(window_ms=3600_000)
    assert m["total"] == 2
    assert m["active"] == 1
    assert m["effectiveness_rate"] == 0.5
    assert m["suspected_false_rate"] == 0.0
    assert m["mean_ack_after_escalation_ms"] == MIN


def test_escalation_metrics_empty_window(manager):
    m = manager.get_escalation_metrics(window_ms=3600_000)
    assert m["total"] == 0
    assert m["effectiveness_rate"] is None
    assert m["suspected_false_rate"] is None
