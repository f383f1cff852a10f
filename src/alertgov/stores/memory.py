from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .base import (
    AckRecord,
    AckStore,
    AlertRecord,
    AlertStore,
    EscalationRecord,
    EscalationStore,
    as_utc,
)


class InMemoryAlertStore(AlertStore):
    def __init__(self) -> None:
        self._alerts: Dict[str, AlertRecord] = {}
        self._lock = threading.Lock()

    def add(self, alert: AlertRecord) -> AlertRecord:
        alert = replace(alert, timestamp=as_utc(alert.timestamp))
        with self._lock:
            self._alerts[alert.alert_id] = alert
        return alert

    def get(self, alert_id: str) -> Optional[AlertRecord]:
        with self._lock:
            return self._alerts.get(alert_id)

    def list(self, severities: Optional[Iterable[str]] = None,
             since: Optional[datetime] = None) -> List[AlertRecord]:
        wanted = set(severities) if severities is not None else None
        with self._lock:
            items = list(self._alerts.values())
        out = []
        for a in items:
            if wanted is not None and a.severity not in wanted:
                continue
            if since is not None and a.timestamp < as_utc(since):
                continue
            out.append(a)
        return sorted(out, key=lambda a: a.timestamp)


class InMemoryAckStore(AckStore):
    def __init__(self) -> None:
        self._acks: Dict[str, AckRecord] = {}
        self._lock = threading.Lock()

    def get(self, alert_id: str) -> Optional[AckRecord]:
        with self._lock:
            return self._acks.get(alert_id)

    def insert_if_absent(self, record: AckRecord) -> Tuple[AckRecord, bool]:
        with self._lock:
            existing = self._acks.get(record.alert_id)
            if existing is not None:
                return existing, False
            self._acks[record.alert_id] = record
            return record, True

    def delete(self, alert_id: str) -> bool:
        with self._lock:
            return self._acks.pop(alert_id, None) is not None

    def list_since(self, since: Optional[datetime] = None) -> List[AckRecord]:
        with self._lock:
            items = list(self._acks.values())
        if since is not None:
            since = as_utc(since)
            items = [a for a in items if a.acknowledged_at >= since]
        return sorted(items, key=lambda a: a.acknowledged_at)

    def latencies(self, severity: str, limit: int) -> List[int]:
        with self._lock:
            items = [a for a in self._acks.values() if a.severity == severity]
        items.sort(key=lambda a: a.acknowledged_at, reverse=True)
        return [a.latency_ms for a in items[:limit]]


class InMemoryEscalationStore(EscalationStore):
    def __init__(self) -> None:
        self._records: Dict[str, EscalationRecord] = {}
        self._lock = threading.Lock()

    def get(self, alert_id: str) -> Optional[EscalationRecord]:
        with self._lock:
            return self._records.get(alert_id)

    def upsert(self, record: EscalationRecord) -> EscalationRecord:
        with self._lock:
            self._records[record.alert_id] = record
        return record

    def set_ack_latency_if_null(self, alert_id: str, latency_ms: int) -> bool:
        with self._lock:
            rec = self._records.get(alert_id)
            if rec is None or rec.ack_after_escalation_ms is not None:
                return False
            self._records[alert_id] = replace(rec, ack_after_escalation_ms=int(latency_ms))
            return True

    def list_since(self, since: Optional[datetime] = None) -> List[EscalationRecord]:
        with self._lock:
            items = list(self._records.values())
        if since is not None:
            since = as_utc(since)
            items = [r for r in items if r.escalated_at >= since]
        return sorted(items, key=lambda r: r.escalated_at)
