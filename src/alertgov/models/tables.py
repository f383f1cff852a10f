"""
Governance data models: alerts, acknowledgements, escalations and the
persisted controller / suppression state.
"""
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _now():
    return datetime.now(UTC)


class Alert(Base):
    """Alert registered for acknowledgement tracking and escalation"""
    __tablename__ = "alerts"

    id = Column(String, primary_key=True)
    ts = Column(DateTime(timezone=True), index=True, nullable=False)
    severity = Column(String, index=True, nullable=False, default="medium")
    dedup_group = Column(String, index=True, nullable=True)
    message = Column(Text, nullable=True)


class Acknowledgement(Base):
    """At most one row per alert"""
    __tablename__ = "acknowledgements"

    alert_id = Column(String, primary_key=True)
    alert_ts = Column(DateTime(timezone=True), nullable=False)
    severity = Column(String, index=True, nullable=False)
    dedup_group = Column(String, index=True, nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), index=True, nullable=False)
    acknowledged_by = Column(String, nullable=False, default="system")
    note = Column(Text, nullable=True)
    meta = Column(JSON, nullable=True)


class Escalation(Base):
    """One row per escalated alert; re-escalation bumps escalation_count"""
    __tablename__ = "escalations"

    alert_id = Column(String, primary_key=True)
    alert_ts = Column(DateTime(timezone=True), nullable=False)
    severity = Column(String, index=True, nullable=False)
    escalated_at = Column(DateTime(timezone=True), index=True, nullable=False)
    reason_code = Column(String, nullable=False)  # STALE_UNACK|MANUAL_OVERRIDE
    threshold_ms = Column(Integer, nullable=False)
    age_ms_at_escalation = Column(Integer, nullable=False)
    cooldown_until = Column(DateTime(timezone=True), nullable=False)
    ack_after_escalation_ms = Column(Integer, nullable=True)  # written once
    escalation_count = Column(Integer, nullable=False, default=1)
    manual = Column(Boolean, nullable=False, default=False)
    meta = Column(JSON, nullable=True)


class WeightSnapshot(Base):
    """Weight vector plus controller state, latest row wins"""
    __tablename__ = "weight_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime(timezone=True), default=_now, index=True)
    w1 = Column(Float, nullable=False)
    w2 = Column(Float, nullable=False)
    w3 = Column(Float, nullable=False)
    w4 = Column(Float, nullable=False)
    w5 = Column(Float, nullable=False)
    controller = Column(JSON, nullable=True)


class SuppressionSnapshot(Base):
    __tablename__ = "suppression_snapshots"

    dedup_group = Column(String, primary_key=True)
    updated_at = Column(DateTime(timezone=True), default=_now, index=True)
    state = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)


class WeightAdjustment(Base):
    """Append-only controller decision history"""
    __tablename__ = "weight_adjustments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime(timezone=True), default=_now, index=True)
    cycle = Column(Integer, index=True, nullable=True)
    reason = Column(String, index=True, nullable=False)
    adjusted = Column(Boolean, nullable=False, default=False)
    payload = Column(JSON, nullable=False)


class SuppressionTransition(Base):
    """Append-only suppression state transition history"""
    __tablename__ = "suppression_transitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dedup_group = Column(String, index=True, nullable=False)
    from_state = Column(String, nullable=False)
    to_state = Column(String, nullable=False)
    at = Column(DateTime(timezone=True), index=True, nullable=False)
    reason = Column(String, nullable=True)
    payload = Column(JSON, nullable=True)


class PersistenceAudit(Base):
    """Outcome of every gateway call"""
    __tablename__ = "persistence_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime(timezone=True), default=_now, index=True)
    action = Column(String, index=True, nullable=False)
    count = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Float, nullable=False, default=0.0)
    success = Column(Boolean, nullable=False, default=True)
    error = Column(Text, nullable=True)
