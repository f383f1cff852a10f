"""SQLAlchemy-backed stores. Timestamps are normalized to aware UTC on read."""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..db import session_scope
from ..models.tables import Acknowledgement, Alert, Escalation
from .base import (
    AckRecord,
    AckStore,
    AlertRecord,
    AlertStore,
    EscalationRecord,
    EscalationStore,
    as_utc,
)


def _alert_from_row(row: Alert) -> AlertRecord:
    return AlertRecord(
        alert_id=row.id,
        timestamp=as_utc(row.ts),
        severity=row.severity,
        dedup_group=row.dedup_group,
        message=row.message,
    )


def _ack_from_row(row: Acknowledgement) -> AckRecord:
    return AckRecord(
        alert_id=row.alert_id,
        alert_timestamp=as_utc(row.alert_ts),
        severity=row.severity,
        acknowledged_at=as_utc(row.acknowledged_at),
        acknowledged_by=row.acknowledged_by,
        dedup_group=row.dedup_group,
        note=row.note,
        meta=dict(row.meta or {}),
    )


def _escalation_from_row(row: Escalation) -> EscalationRecord:
    return EscalationRecord(
        alert_id=row.alert_id,
        alert_timestamp=as_utc(row.alert_ts),
        severity=row.severity,
        escalated_at=as_utc(row.escalated_at),
        reason_code=row.reason_code,
        threshold_ms=row.threshold_ms,
        age_ms_at_escalation=row.age_ms_at_escalation,
        cooldown_until=as_utc(row.cooldown_until),
        ack_after_escalation_ms=row.ack_after_escalation_ms,
        escalation_count=row.escalation_count,
        manual=bool(row.manual),
        meta=dict(row.meta or {}),
    )


class SQLAlertStore(AlertStore):
    def __init__(self, session_factory: sessionmaker) -> None:
        self._sessions = session_factory

    def add(self, alert: AlertRecord) -> AlertRecord:
        with session_scope(self._sessions) as db:
            db.merge(Alert(
                id=alert.alert_id,
                ts=as_utc(alert.timestamp),
                severity=alert.severity,
                dedup_group=alert.dedup_group,
                message=alert.message,
            ))
        return AlertRecord(alert.alert_id, as_utc(alert.timestamp), alert.severity,
                           alert.dedup_group, alert.message)

    def get(self, alert_id: str) -> Optional[AlertRecord]:
        with session_scope(self._sessions) as db:
            row = db.get(Alert, alert_id)
            return _alert_from_row(row) if row else None

    def list(self, severities: Optional[Iterable[str]] = None,
             since: Optional[datetime] = None) -> List[AlertRecord]:
        stmt = select(Alert)
        if severities is not None:
            stmt = stmt.where(Alert.severity.in_(list(severities)))
        if since is not None:
            stmt = stmt.where(Alert.ts >= as_utc(since))
        with session_scope(self._sessions) as db:
            rows = db.scalars(stmt.order_by(Alert.ts)).all()
            return [_alert_from_row(r) for r in rows]


class SQLAckStore(AckStore):
    def __init__(self, session_factory: sessionmaker) -> None:
        self._sessions = session_factory
        self._lock = threading.Lock()

    def get(self, alert_id: str) -> Optional[AckRecord]:
        with session_scope(self._sessions) as db:
            row = db.get(Acknowledgement, alert_id)
            return _ack_from_row(row) if row else None

    def insert_if_absent(self, record: AckRecord) -> Tuple[AckRecord, bool]:
        with self._lock:
            existing = self.get(record.alert_id)
            if existing is not None:
                return existing, False
            try:
                with session_scope(self._sessions) as db:
                    db.add(Acknowledgement(
                        alert_id=record.alert_id,
                        alert_ts=as_utc(record.alert_timestamp),
                        severity=record.severity,
                        dedup_group=record.dedup_group,
                        acknowledged_at=as_utc(record.acknowledged_at),
                        acknowledged_by=record.acknowledged_by,
                        note=record.note,
                        meta=dict(record.meta),
                    ))
            except IntegrityError:
                # Another writer inserted first; its row wins.
                existing = self.get(record.alert_id)
                if existing is None:
                    raise
                return existing, False
            return record, True

    def delete(self, alert_id: str) -> bool:
        with self._lock, session_scope(self._sessions) as db:
            row = db.get(Acknowledgement, alert_id)
            if row is None:
                return False
            db.delete(row)
            return True

    def list_since(self, since: Optional[datetime] = None) -> List[AckRecord]:
        stmt = select(Acknowledgement)
        if since is not None:
            stmt = stmt.where(Acknowledgement.acknowledged_at >= as_utc(since))
        with session_scope(self._sessions) as db:
            rows = db.scalars(stmt.order_by(Acknowledgement.acknowledged_at)).all()
            return [_ack_from_row(r) for r in rows]

    def latencies(self, severity: str, limit: int) -> List[int]:
        stmt = (
            select(Acknowledgement)
            .where(Acknowledgement.severity == severity)
            .order_by(Acknowledgement.acknowledged_at.desc())
            .limit(limit)
        )
        with session_scope(self._sessions) as db:
            return [_ack_from_row(r).latency_ms for r in db.scalars(stmt).all()]


class SQLEscalationStore(EscalationStore):
    def __init__(self, session_factory: sessionmaker) -> None:
        self._sessions = session_factory
        self._lock = threading.Lock()

    def get(self, alert_id: str) -> Optional[EscalationRecord]:
        with session_scope(self._sessions) as db:
            row = db.get(Escalation, alert_id)
            return _escalation_from_row(row) if row else None

    def upsert(self, record: EscalationRecord) -> EscalationRecord:
        with self._lock, session_scope(self._sessions) as db:
            db.merge(Escalation(
                alert_id=record.alert_id,
                alert_ts=as_utc(record.alert_timestamp),
                severity=record.severity,
                escalated_at=as_utc(record.escalated_at),
                reason_code=record.reason_code,
                threshold_ms=int(record.threshold_ms),
                age_ms_at_escalation=int(record.age_ms_at_escalation),
                cooldown_until=as_utc(record.cooldown_until),
                ack_after_escalation_ms=record.ack_after_escalation_ms,
                escalation_count=record.escalation_count,
                manual=record.manual,
                meta=dict(record.meta),
            ))
        return record

    def set_ack_latency_if_null(self, alert_id: str, latency_ms: int) -> bool:
        with self._lock, session_scope(self._sessions) as db:
            row = db.get(Escalation, alert_id)
            if row is None or row.ack_after_escalation_ms is not None:
                return False
            row.ack_after_escalation_ms = int(latency_ms)
            return True

    def list_since(self, since: Optional[datetime] = None) -> List[EscalationRecord]:
        stmt = select(Escalation)
        if since is not None:
            stmt = stmt.where(Escalation.escalated_at >= as_utc(since))
        with session_scope(self._sessions) as db:
            rows = db.scalars(stmt.order_by(Escalation.escalated_at)).all()
            return [_escalation_from_row(r) for r in rows]
