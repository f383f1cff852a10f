"""
SLA escalation for stale unacknowledged alerts.

The SLA threshold for a severity is dynamic once enough acknowledgement
latencies are known: max(base, p75 + guardband). Each alert has at most one
escalation record; a re-escalation after the cooldown updates that record.
"""
from __future__ import annotations

import logging
import math
import statistics
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ..config import EscalationConfig
from ..core.robust import percentile
from ..errors import AlertNotFoundError
from ..events import ALERT_ACKNOWLEDGED, ALERT_ESCALATED, EventBus
from ..metrics.prometheus import GovernanceMetrics
from ..stores.base import (
    REASON_MANUAL_OVERRIDE,
    REASON_STALE_UNACK,
    AckRecord,
    AlertRecord,
    AlertStore,
    EscalationRecord,
    EscalationStore,
    as_utc,
    elapsed_ms,
)
from .ack import AckLedger

logger = logging.getLogger(__name__)

MAX_METRICS_WINDOW_MS = 30 * 24 * 3600 * 1000
P75 = 0.75
GUARDBAND_P75_SHARE = 0.2
GUARDBAND_BASE_SHARE = 0.1
COOLDOWN_THRESHOLD_SHARE = 0.5


@dataclass(frozen=True)
class ThresholdDecision:
    severity: str
    threshold_ms: int
    base_ms: int
    sample_count: int
    p75_ms: Optional[int] = None
    guardband_ms: Optional[int] = None

    @property
    def dynamic(self) -> bool:
        return self.p75_ms is not None


@dataclass
class SweepResult:
    scanned: int = 0
    escalated: List[EscalationRecord] = field(default_factory=list)
    skipped_cooldown: int = 0
    below_threshold: int = 0
    thresholds: Dict[str, ThresholdDecision] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "escalated": [r.as_dict() for r in self.escalated],
            "skipped_cooldown": self.skipped_cooldown,
            "below_threshold": self.below_threshold,
            "thresholds": {s: d.threshold_ms for s, d in self.thresholds.items()},
        }


def compute_threshold(severity: str, samples: Sequence[int], cfg: EscalationConfig) -> ThresholdDecision:
    base = cfg.base_for(severity)
    n = len(samples)
    if n < cfg.n_min_samples:
        return ThresholdDecision(severity=severity, threshold_ms=base, base_ms=base, sample_count=n)
    ordered = sorted(samples)
    p75 = int(ordered[min(n - 1, math.floor(n * P75))])
    guardband = max(math.floor(GUARDBAND_P75_SHARE * p75), math.floor(GUARDBAND_BASE_SHARE * base))
    return ThresholdDecision(
        severity=severity,
        threshold_ms=max(base, p75 + guardband),
        base_ms=base,
        sample_count=n,
        p75_ms=p75,
        guardband_ms=guardband,
    )


def compute_cooldown_ms(threshold_ms: int, cfg: EscalationConfig) -> int:
    raw = math.floor(COOLDOWN_THRESHOLD_SHARE * threshold_ms)
    return min(max(raw, cfg.cooldown_min_ms), cfg.cooldown_max_ms)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EscalationManager:
    def __init__(
        self,
        config: EscalationConfig,
        alerts: AlertStore,
        escalations: EscalationStore,
        ledger: AckLedger,
        *,
        events: Optional[EventBus] = None,
        metrics: Optional[GovernanceMetrics] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        config.validate()
        self.config = config
        self.alerts = alerts
        self.escalations = escalations
        self.ledger = ledger
        self.events = events or ledger.events
        self.metrics = metrics or GovernanceMetrics()
        self.clock = clock
        self.events.subscribe(ALERT_ACKNOWLEDGED, self._on_ack)

    def threshold_for(self, severity: str) -> ThresholdDecision:
        samples = self.ledger.latency_samples(severity, self.config.sample_limit)
        return compute_threshold(severity, samples, self.config)

    def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = as_utc(now or self.clock())
        result = SweepResult()
        for alert in self.alerts.list(severities=self.config.eligible_severities):
            if self.ledger.is_acked(alert.alert_id):
                continue
            result.scanned += 1
            decision = result.thresholds.get(alert.severity)
            if decision is None:
                decision = self.threshold_for(alert.severity)
                result.thresholds[alert.severity] = decision
            age = elapsed_ms(alert.timestamp, now)
            if age < decision.threshold_ms:
                result.below_threshold += 1
                continue
            existing = self.escalations.get(alert.alert_id)
            if existing is not None and now < existing.cooldown_until:
                result.skipped_cooldown += 1
                continue
            record = self._escalate(alert, decision.threshold_ms, age, now, REASON_STALE_UNACK, existing)
            result.escalated.append(record)
        if result.escalated:
            logger.info(
                f"Escalation sweep: {len(result.escalated)} escalated, "
                f"{result.skipped_cooldown} in cooldown, {result.scanned} scanned"
            )
        return result

    def force_escalate(
        self,
        alert_id: str,
        actor: str = "operator",
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EscalationRecord:
        """Escalate immediately, ignoring the dynamic threshold and any cooldown.

        If the alert is already acknowledged the record is written with an
        ack-after-escalation latency of 0.
        """
        now = as_utc(now or self.clock())
        alert = self.alerts.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        decision = self.threshold_for(alert.severity)
        existing = self.escalations.get(alert_id)
        age = elapsed_ms(alert.timestamp, now)
        meta = {"actor": actor}
        if note:
            meta["note"] = note
        record = self._escalate(alert, decision.threshold_ms, age, now, REASON_MANUAL_OVERRIDE, existing, meta)
        if self.ledger.is_acked(alert_id) and record.ack_after_escalation_ms is None:
            self.escalations.set_ack_latency_if_null(alert_id, 0)
            record = replace(record, ack_after_escalation_ms=0)
        logger.warning(f"Alert {alert_id} manually escalated by {actor}")
        return record

    def _escalate(
        self,
        alert: AlertRecord,
        threshold_ms: int,
        age_ms: int,
        now: datetime,
        reason: str,
        existing: Optional[EscalationRecord],
        meta: Optional[Dict[str, Any]] = None,
    ) -> EscalationRecord:
        cooldown = compute_cooldown_ms(threshold_ms, self.config)
        record = EscalationRecord(
            alert_id=alert.alert_id,
            alert_timestamp=alert.timestamp,
            severity=alert.severity,
            escalated_at=now,
            reason_code=reason,
            threshold_ms=int(threshold_ms),
            age_ms_at_escalation=int(age_ms),
            cooldown_until=now + timedelta(milliseconds=cooldown),
            ack_after_escalation_ms=existing.ack_after_escalation_ms if existing else None,
            escalation_count=(existing.escalation_count + 1) if existing else 1,
            manual=reason == REASON_MANUAL_OVERRIDE,
            meta=dict(meta or {}),
        )
        self.escalations.upsert(record)
        self.metrics.escalations_total.labels(severity=alert.severity, reason=reason).inc()
        logger.info(
            f"Escalated alert {alert.alert_id} ({alert.severity}, age={age_ms}ms, "
            f"threshold={threshold_ms}ms, count={record.escalation_count}, reason={reason})"
        )
        self.events.publish(ALERT_ESCALATED, record)
        return record

    def _on_ack(self, _topic: str, ack: AckRecord) -> None:
        self.record_acknowledgement(ack.alert_id, ack.acknowledged_at)

    def record_acknowledgement(self, alert_id: str, acked_at: datetime) -> bool:
        """Write ack-after-escalation latency once. Returns True if written."""
        record = self.escalations.get(alert_id)
        if record is None or record.ack_after_escalation_ms is not None:
            return False
        latency = max(0, elapsed_ms(record.escalated_at, acked_at))
        return self.escalations.set_ack_latency_if_null(alert_id, latency)

    def get_escalation_state(self, alert_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for alert_id in alert_ids:
            rec = self.escalations.get(alert_id)
            out[alert_id] = {
                "escalated": rec is not None,
                "escalated_at": rec.escalated_at.isoformat() if rec else None,
                "reason": rec.reason_code if rec else None,
                "cooldown_ends_at": rec.cooldown_until.isoformat() if rec else None,
                "escalation_count": rec.escalation_count if rec else 0,
            }
        return out

    def get_escalation_metrics(self, window_ms: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = as_utc(now or self.clock())
        window = min(max(0, int(window_ms)), MAX_METRICS_WINDOW_MS)
        records = self.escalations.list_since(now - timedelta(milliseconds=window))
        total = len(records)
        latencies: List[int] = []
        effective = 0
        suspected_false = 0
        active = 0
        manual = 0
        for rec in records:
            if rec.manual:
                manual += 1
            lat = rec.ack_after_escalation_ms
            if lat is None:
                active += 1
                continue
            latencies.append(lat)
            if lat <= math.floor(self.config.effectiveness_window_factor * rec.threshold_ms):
                effective += 1
            if lat < math.floor(self.config.suspected_false_factor * rec.threshold_ms):
                suspected_false += 1
        return {
            "window_ms": window,
            "total": total,
            "active": active,
            "manual": manual,
            "effectiveness_rate": round(effective / total, 4) if total else None,
            "suspected_false_rate": round(suspected_false / total, 4) if total else None,
            "mean_ack_after_escalation_ms": round(statistics.fmean(latencies)) if latencies else None,
            "p95_ack_after_escalation_ms": round(percentile(latencies, 0.95)) if latencies else None,
        }
