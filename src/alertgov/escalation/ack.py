"""Idempotent acknowledgement ledger."""
from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..core.robust import percentile
from ..errors import AlertNotFoundError
from ..events import ALERT_ACKNOWLEDGED, ALERT_UNACKNOWLEDGED, EventBus
from ..metrics.prometheus import GovernanceMetrics
from ..stores.base import AckRecord, AckStore, AlertStore, as_utc, elapsed_ms

logger = logging.getLogger(__name__)

DEFAULT_CRITICAL_STALE_MS = 15 * 60_000
STALE_LIST_LIMIT = 20


@dataclass(frozen=True)
class AckResult:
    alert_id: str
    acknowledged_at: datetime
    already_acked: bool
    acknowledged_by: str
    note: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "acknowledged_at": self.acknowledged_at.isoformat(),
            "already_acked": self.already_acked,
            "acknowledged_by": self.acknowledged_by,
            "note": self.note,
        }


@dataclass(frozen=True)
class UnackResult:
    alert_id: str
    changed: bool


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AckLedger:
    def __init__(
        self,
        alerts: AlertStore,
        acks: AckStore,
        *,
        events: Optional[EventBus] = None,
        metrics: Optional[GovernanceMetrics] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.alerts = alerts
        self.acks = acks
        self.events = events or EventBus()
        self.metrics = metrics or GovernanceMetrics()
        self.clock = clock

    def ack_alert(
        self,
        alert_id: str,
        actor: str = "system",
        note: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> AckResult:
        """Acknowledge an alert once. Repeats return the stored acknowledgement."""
        alert = self.alerts.get(alert_id)
        if alert is None:
            self.metrics.acks_total.labels(outcome="not_found").inc()
            raise AlertNotFoundError(alert_id)
        record = AckRecord(
            alert_id=alert_id,
            alert_timestamp=alert.timestamp,
            severity=alert.severity,
            acknowledged_at=as_utc(now or self.clock()),
            acknowledged_by=actor or "system",
            dedup_group=alert.dedup_group,
            note=note,
            meta=dict(meta or {}),
        )
        stored, created = self.acks.insert_if_absent(record)
        if created:
            self.metrics.acks_total.labels(outcome="acked").inc()
            self.metrics.ack_latency_seconds.observe(stored.latency_ms / 1000.0)
            logger.info(f"Alert {alert_id} acknowledged by {stored.acknowledged_by}")
        else:
            self.metrics.acks_total.labels(outcome="already_acked").inc()
            logger.debug(f"Alert {alert_id} already acknowledged at {stored.acknowledged_at.isoformat()}")
        self.events.publish(ALERT_ACKNOWLEDGED, stored)
        return AckResult(
            alert_id=alert_id,
            acknowledged_at=stored.acknowledged_at,
            already_acked=not created,
            acknowledged_by=stored.acknowledged_by,
            note=stored.note,
        )

    def unack_alert(self, alert_id: str) -> UnackResult:
        changed = self.acks.delete(alert_id)
        if changed:
            self.metrics.acks_total.labels(outcome="unacked").inc()
            logger.info(f"Alert {alert_id} acknowledgement removed")
            self.events.publish(ALERT_UNACKNOWLEDGED, alert_id)
        return UnackResult(alert_id=alert_id, changed=changed)

    def is_acked(self, alert_id: str) -> bool:
        return self.acks.get(alert_id) is not None

    def get_ack(self, alert_id: str) -> Optional[AckRecord]:
        return self.acks.get(alert_id)

    def get_ack_state(self, alert_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for alert_id in alert_ids:
            rec = self.acks.get(alert_id)
            out[alert_id] = {
                "acked": rec is not None,
                "acknowledged_at": rec.acknowledged_at.isoformat() if rec else None,
                "acknowledged_by": rec.acknowledged_by if rec else None,
            }
        return out

    def latency_samples(self, severity: str, limit: int) -> List[int]:
        return self.acks.latencies(severity, limit)

    def get_ack_metrics(
        self,
        window_ms: int,
        now: Optional[datetime] = None,
        critical_stale_ms: int = DEFAULT_CRITICAL_STALE_MS,
    ) -> Dict[str, Any]:
        """
        Ack statistics for alerts raised inside the window.

        Returns total/acked/unacked counts, ack_rate (None when the window has
        no alerts), MTTA mean and p95 in ms, a per-severity breakdown, and the
        open critical alerts older than ``critical_stale_ms``.
        """
        now = as_utc(now or self.clock())
        since = now - timedelta(milliseconds=max(0, window_ms))
        alerts = self.alerts.list(since=since)
        by_severity: Dict[str, Dict[str, Any]] = {}
        latencies: List[int] = []
        stale: List[Dict[str, Any]] = []
        open_critical = 0
        acked = 0
        for alert in alerts:
            bucket = by_severity.setdefault(alert.severity, {"total": 0, "acked": 0, "latencies": []})
            bucket["total"] += 1
            rec = self.acks.get(alert.alert_id)
            if rec is not None:
                acked += 1
                bucket["acked"] += 1
                bucket["latencies"].append(rec.latency_ms)
                latencies.append(rec.latency_ms)
            elif alert.severity == "critical":
                open_critical += 1
                age = elapsed_ms(alert.timestamp, now)
                if age >= critical_stale_ms:
                    stale.append({"alert_id": alert.alert_id, "age_ms": age})

        breakdown = {}
        for severity, b in by_severity.items():
            lats = b.pop("latencies")
            breakdown[severity] = {
                "total": b["total"],
                "acked": b["acked"],
                "ack_rate": round(b["acked"] / b["total"], 4) if b["total"] else None,
                "mtta_avg_ms": round(statistics.fmean(lats)) if lats else None,
                "mtta_p95_ms": round(percentile(lats, 0.95)) if lats else None,
            }
        total = len(alerts)
        stale.sort(key=lambda s: s["age_ms"], reverse=True)
        return {
            "window_ms": window_ms,
            "total": total,
            "acked": acked,
            "unacked": total - acked,
            "ack_rate": round(acked / total, 4) if total else None,
            "mtta_avg_ms": round(statistics.fmean(latencies)) if latencies else None,
            "mtta_p95_ms": round(percentile(latencies, 0.95)) if latencies else None,
            "by_severity": breakdown,
            "open_critical": open_critical,
            "stale_critical": stale[:STALE_LIST_LIMIT],
        }
