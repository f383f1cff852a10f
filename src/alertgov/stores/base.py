"""Record types and store contracts shared by the in-memory and SQL stores."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

REASON_STALE_UNACK = "STALE_UNACK"
REASON_MANUAL_OVERRIDE = "MANUAL_OVERRIDE"


def as_utc(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def elapsed_ms(start: datetime, end: datetime) -> int:
    return int((as_utc(end) - as_utc(start)).total_seconds() * 1000)


def _ser(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in data.items()}


@dataclass(frozen=True)
class AlertRecord:
    alert_id: str
    timestamp: datetime
    severity: str
    dedup_group: Optional[str] = None
    message: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return _ser(asdict(self))


@dataclass(frozen=True)
class AckRecord:
    alert_id: str
    alert_timestamp: datetime
    severity: str
    acknowledged_at: datetime
    acknowledged_by: str = "system"
    dedup_group: Optional[str] = None
    note: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def latency_ms(self) -> int:
        return max(0, elapsed_ms(self.alert_timestamp, self.acknowledged_at))

    def as_dict(self) -> Dict[str, Any]:
        out = _ser(asdict(self))
        out["latency_ms"] = self.latency_ms
        return out


@dataclass(frozen=True)
class EscalationRecord:
    alert_id: str
    alert_timestamp: datetime
    severity: str
    escalated_at: datetime
    reason_code: str
    threshold_ms: int
    age_ms_at_escalation: int
    cooldown_until: datetime
    ack_after_escalation_ms: Optional[int] = None
    escalation_count: int = 1
    manual: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return _ser(asdict(self))


class AlertStore:
    def add(self, alert: AlertRecord) -> AlertRecord:
        raise NotImplementedError

    def get(self, alert_id: str) -> Optional[AlertRecord]:
        raise NotImplementedError

    def list(self, severities: Optional[Iterable[str]] = None,
             since: Optional[datetime] = None) -> List[AlertRecord]:
        raise NotImplementedError


class AckStore:
    def get(self, alert_id: str) -> Optional[AckRecord]:
        raise NotImplementedError

    def insert_if_absent(self, record: AckRecord) -> Tuple[AckRecord, bool]:
        """Atomically insert; returns (stored record, created)."""
        raise NotImplementedError

    def delete(self, alert_id: str) -> bool:
        raise NotImplementedError

    def list_since(self, since: Optional[datetime] = None) -> List[AckRecord]:
        raise NotImplementedError

    def latencies(self, severity: str, limit: int) -> List[int]:
        """Ack latencies in ms for ``severity``, most recent acknowledgements first."""
        raise NotImplementedError


class EscalationStore:
    def get(self, alert_id: str) -> Optional[EscalationRecord]:
        raise NotImplementedError

    def upsert(self, record: EscalationRecord) -> EscalationRecord:
        raise NotImplementedError

    def set_ack_latency_if_null(self, alert_id: str, latency_ms: int) -> bool:
        """Write ack-after-escalation latency once; False if absent or already set."""
        raise NotImplementedError

    def list_since(self, since: Optional[datetime] = None) -> List[EscalationRecord]:
        raise NotImplementedError
