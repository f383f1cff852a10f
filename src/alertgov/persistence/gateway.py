"""
Persistence gateway for controller weights, suppression snapshots and the
append-only decision history. Every call may be skipped: with NullGateway the
engine runs purely in memory.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from datetime import UTC, datetime
from typing import Any, Deque, Dict, List, Mapping, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from ..config import WEIGHT_KEYS
from ..db import session_scope
from ..errors import PersistenceError
from ..models.tables import (
    PersistenceAudit,
    SuppressionSnapshot,
    SuppressionTransition,
    WeightAdjustment,
    WeightSnapshot,
)
from ..suppression.state import TransitionRecord

logger = logging.getLogger(__name__)


class PersistenceGateway:
    enabled = True

    def save_weights_snapshot(self, weights: Mapping[str, float], controller_state: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def load_latest_weights(self) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def save_suppression_snapshots(self, snapshots: List[Mapping[str, Any]]) -> None:
        raise NotImplementedError

    def load_suppression_snapshots(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def append_weight_adjustment(self, entry: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def append_transition(self, record: TransitionRecord) -> None:
        raise NotImplementedError

    def prune(self, history_before: datetime, audit_before: datetime, *,
              batch_size: int = 500, budget_s: float = 0.2) -> Dict[str, int]:
        """Delete decision history older than ``history_before`` and call audit older than ``audit_before``."""
        raise NotImplementedError


class NullGateway(PersistenceGateway):
    """No persistence configured: every call is a no-op."""

    enabled = False

    def save_weights_snapshot(self, weights, controller_state) -> None:
        return None

    def load_latest_weights(self) -> Optional[Dict[str, Any]]:
        return None

    def save_suppression_snapshots(self, snapshots) -> None:
        return None

    def load_suppression_snapshots(self) -> List[Dict[str, Any]]:
        return []

    def append_weight_adjustment(self, entry) -> None:
        return None

    def append_transition(self, record) -> None:
        return None

    def prune(self, history_before, audit_before, *, batch_size: int = 500, budget_s: float = 0.2) -> Dict[str, int]:
        return {}


class InMemoryGateway(PersistenceGateway):
    """Keeps everything in process memory; used by simulations and tests."""

    def __init__(self, history_limit: int = 1000) -> None:
        self._lock = threading.Lock()
        self.weight_rows: List[Dict[str, Any]] = []
        self.suppression_rows: Dict[str, Dict[str, Any]] = {}
        self.adjustments: Deque[Dict[str, Any]] = deque(maxlen=history_limit)
        self.transitions: Deque[Dict[str, Any]] = deque(maxlen=history_limit)

    def save_weights_snapshot(self, weights, controller_state) -> None:
        with self._lock:
            self.weight_rows.append({"weights": dict(weights), "controller": dict(controller_state)})

    def load_latest_weights(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return dict(self.weight_rows[-1]) if self.weight_rows else None

    def save_suppression_snapshots(self, snapshots) -> None:
        with self._lock:
            for snap in snapshots:
                self.suppression_rows[snap["dedup_group"]] = dict(snap)

    def load_suppression_snapshots(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(s) for s in self.suppression_rows.values()]

    def append_weight_adjustment(self, entry) -> None:
        with self._lock:
            self.adjustments.append(dict(entry))

    def append_transition(self, record) -> None:
        with self._lock:
            self.transitions.append(record.as_dict())

    def prune(self, history_before, audit_before, *, batch_size: int = 500, budget_s: float = 0.2) -> Dict[str, int]:
        cutoff = history_before.isoformat()
        deleted: Dict[str, int] = {}
        with self._lock:
            for name, rows in (("weight_adjustments", self.adjustments), ("suppression_transitions", self.transitions)):
                kept = [r for r in rows if str(r.get("at", cutoff)) >= cutoff]
                deleted[name] = len(rows) - len(kept)
                rows.clear()
                rows.extend(kept)
        return deleted


class SQLAlchemyGateway(PersistenceGateway):
    """Durable gateway; every call is recorded in persistence_audit."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._sessions = session_factory

    def _audit(self, action: str, count: int, started: float, error: Optional[BaseException] = None) -> None:
        duration_ms = (time.perf_counter() - started) * 1000.0
        try:
            with session_scope(self._sessions) as db:
                db.add(PersistenceAudit(
                    action=action,
                    count=count,
                    duration_ms=round(duration_ms, 3),
                    success=error is None,
                    error=str(error) if error else None,
                ))
        except Exception:
            logger.exception(f"Failed to write persistence audit for {action}")

    def _run(self, action: str, count: int, fn):
        started = time.perf_counter()
        try:
            result = fn()
        except Exception as exc:
            self._audit(action, count, started, exc)
            raise PersistenceError(f"{action} failed: {exc}") from exc
        self._audit(action, count, started)
        return result

    def save_weights_snapshot(self, weights, controller_state) -> None:
        def _save():
            with session_scope(self._sessions) as db:
                db.add(WeightSnapshot(
                    **{k: float(weights[k]) for k in WEIGHT_KEYS},
                    controller=dict(controller_state),
                ))
        self._run("save_weights", 1, _save)

    def load_latest_weights(self) -> Optional[Dict[str, Any]]:
        def _load():
            with session_scope(self._sessions) as db:
                row = db.scalars(
                    select(WeightSnapshot).order_by(WeightSnapshot.id.desc()).limit(1)
                ).first()
                if row is None:
                    return None
                return {
                    "weights": {k: getattr(row, k) for k in WEIGHT_KEYS},
                    "controller": dict(row.controller or {}),
                }
        return self._run("load_weights", 1, _load)

    def save_suppression_snapshots(self, snapshots) -> None:
        snapshots = list(snapshots)

        def _save():
            now = datetime.now(UTC)
            with session_scope(self._sessions) as db:
                for snap in snapshots:
                    db.merge(SuppressionSnapshot(
                        dedup_group=snap["dedup_group"],
                        updated_at=now,
                        state=snap["state"],
                        payload=dict(snap),
                    ))
        self._run("save_suppression", len(snapshots), _save)

    def load_suppression_snapshots(self) -> List[Dict[str, Any]]:
        def _load():
            with session_scope(self._sessions) as db:
                rows = db.scalars(select(SuppressionSnapshot)).all()
                return [dict(r.payload) for r in rows]
        return self._run("load_suppression", 0, _load)

    def append_weight_adjustment(self, entry) -> None:
        def _append():
            with session_scope(self._sessions) as db:
                db.add(WeightAdjustment(
                    cycle=entry.get("cycle"),
                    reason=str(entry.get("reason", "unknown")),
                    adjusted=bool(entry.get("adjusted", False)),
                    payload=dict(entry),
                ))
        self._run("append_adjustment", 1, _append)

    def append_transition(self, record: TransitionRecord) -> None:
        def _append():
            with session_scope(self._sessions) as db:
                db.add(SuppressionTransition(
                    dedup_group=record.dedup_group,
                    from_state=record.previous.value,
                    to_state=record.new.value,
                    at=record.at,
                    reason=record.reason,
                    payload=record.as_dict(),
                ))
        self._run("append_transition", 1, _append)

    def prune(self, history_before: datetime, audit_before: datetime, *,
              batch_size: int = 500, budget_s: float = 0.2) -> Dict[str, int]:
        """Batched deletes, oldest rows first, stopping once ``budget_s`` is spent."""
        started = time.perf_counter()
        plan = (
            ("persistence_audit", PersistenceAudit, PersistenceAudit.created_at < audit_before),
            ("suppression_transitions", SuppressionTransition, SuppressionTransition.at < history_before),
            ("weight_adjustments", WeightAdjustment, WeightAdjustment.created_at < history_before),
        )
        deleted: Dict[str, int] = {}
        try:
            for name, model, condition in plan:
                deleted[name] = 0
                while True:
                    with session_scope(self._sessions) as db:
                        ids = db.scalars(
                            select(model.id).where(condition).order_by(model.id).limit(batch_size)
                        ).all()
                        if ids:
                            db.execute(delete(model).where(model.id.in_(ids)))
                    deleted[name] += len(ids)
                    if len(ids) < batch_size or time.perf_counter() - started >= budget_s:
                        break
                if time.perf_counter() - started >= budget_s:
                    logger.info(f"Prune budget of {budget_s}s spent after {name}")
                    break
        except Exception as exc:
            self._audit("prune", sum(deleted.values()), started, exc)
            raise PersistenceError(f"prune failed: {exc}") from exc
        self._audit("prune", sum(deleted.values()), started)
        return deleted

    def audit_rows(self, limit: int = 100) -> List[Dict[str, Any]]:
        with session_scope(self._sessions) as db:
            rows = db.scalars(
                select(PersistenceAudit).order_by(PersistenceAudit.id.desc()).limit(limit)
            ).all()
            return [
                {"action": r.action, "count": r.count, "duration_ms": r.duration_ms,
                 "success": r.success, "error": r.error}
                for r in rows
            ]
