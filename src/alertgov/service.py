"""
GovernanceService: the explicit object graph behind every public operation.

Nothing here is a module-level singleton; build one service per process (or
per test) and pass it to the API or CLI.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from .audit.store import JSONLAuditStore
from .config import GovernanceConfig, SuppressionConfig, EscalationConfig
from .core.scoring import Weights
from .db import init_db, make_engine, make_session_factory
from .errors import PersistenceError
from .escalation.ack import AckLedger, AckResult, UnackResult
from .escalation.manager import EscalationManager, SweepResult
from .events import SUPPRESSION_TRANSITION, WEIGHTS_CHANGED, EventBus
from .metrics.aggregator import MetricsAggregator
from .metrics.prometheus import GovernanceMetrics
from .persistence.gateway import NullGateway, PersistenceGateway, SQLAlchemyGateway
from .persistence.writer import BackgroundWriter
from .scheduling.ticker import PeriodicTask
from .stores.base import AckStore, AlertRecord, AlertStore, EscalationRecord, EscalationStore, as_utc
from .stores.memory import InMemoryAckStore, InMemoryAlertStore, InMemoryEscalationStore
from .stores.sql import SQLAckStore, SQLAlertStore, SQLEscalationStore
from .suppression.engine import SuppressionEngine
from .suppression.signals import SignalSource, StaticSignalSource
from .suppression.state import BatchResult, TransitionRecord
from .tuning.controller import AdaptiveWeightController, AdjustmentResult, MetricsSnapshot
from .tuning.runner import AdaptiveRunner

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class GovernanceService:
    def __init__(
        self,
        config: Optional[GovernanceConfig] = None,
        signals: Optional[SignalSource] = None,
        *,
        alerts: Optional[AlertStore] = None,
        acks: Optional[AckStore] = None,
        escalations: Optional[EscalationStore] = None,
        gateway: Optional[PersistenceGateway] = None,
        audit: Optional[JSONLAuditStore] = None,
        metrics: Optional[GovernanceMetrics] = None,
        clock: Callable[[], datetime] = _utcnow,
        synchronous_persistence: bool = False,
    ) -> None:
        self.config = (config or GovernanceConfig()).validate()
        self.clock = clock
        self.metrics = metrics or GovernanceMetrics()
        self.events = EventBus()
        self.signals = signals or StaticSignalSource()
        self.gateway = gateway or NullGateway()
        self.audit = audit
        self.alert_store = alerts or InMemoryAlertStore()
        self.ack_store = acks or InMemoryAckStore()
        self.escalation_store = escalations or InMemoryEscalationStore()

        self.engine = SuppressionEngine(
            self.config.suppression, self.signals, events=self.events, metrics=self.metrics, clock=clock
        )
        self.controller = AdaptiveWeightController(self.config.tuning, clock=clock)
        # The controller is the single writer of the weight vector.
        self.engine.apply_weights(self.controller.weights)
        self.ledger = AckLedger(
            self.alert_store, self.ack_store, events=self.events, metrics=self.metrics, clock=clock
        )
        self.escalation = EscalationManager(
            self.config.escalation,
            self.alert_store,
            self.escalation_store,
            self.ledger,
            events=self.events,
            metrics=self.metrics,
            clock=clock,
        )
        self.aggregator = MetricsAggregator(
            self.engine, self.escalation, self.ledger, self.config.tuning.targets
        )
        self.writer = BackgroundWriter(
            self.metrics,
            timeout_s=self.config.runner.persistence_timeout_s,
            synchronous=synchronous_persistence,
            max_pending=self.config.runner.persistence_max_pending,
        )
        self.runner = AdaptiveRunner(
            self.config.runner,
            self.controller,
            self.engine,
            self.aggregator,
            gateway=self.gateway,
            writer=self.writer,
            events=self.events,
            metrics=self.metrics,
        )
        if self.gateway.enabled:
            self.events.subscribe(SUPPRESSION_TRANSITION, self._persist_transition)

        self.tracked_groups: Set[str] = set()
        self._tasks: List[PeriodicTask] = []
        self._prune_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: GovernanceConfig, signals: Optional[SignalSource] = None,
                    **kwargs: Any) -> "GovernanceService":
        """Build with SQL stores and gateway when ``database_url`` is set, JSONL audit when ``audit_path`` is."""
        if config.database_url:
            engine = make_engine(config.database_url)
            init_db(engine)
            factory = make_session_factory(engine)
            kwargs.setdefault("alerts", SQLAlertStore(factory))
            kwargs.setdefault("acks", SQLAckStore(factory))
            kwargs.setdefault("escalations", SQLEscalationStore(factory))
            kwargs.setdefault("gateway", SQLAlchemyGateway(factory))
        if config.audit_path:
            kwargs.setdefault("audit", JSONLAuditStore(Path(config.audit_path)))
        return cls(config, signals, **kwargs)

    def _persist_transition(self, _topic: str, record: TransitionRecord) -> None:
        self.writer.submit("append_transition", self.gateway.append_transition, record)

    def _audit(self, actor: str, action: str, diff: Dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.append(actor, action, diff)

    # ---------------------------------------------------------------- alerts
    def register_alert(
        self,
        alert_id: str,
        severity: str,
        timestamp: Optional[datetime] = None,
        dedup_group: Optional[str] = None,
        message: Optional[str] = None,
    ) -> AlertRecord:
        alert = AlertRecord(
            alert_id=alert_id,
            timestamp=as_utc(timestamp or self.clock()),
            severity=severity,
            dedup_group=dedup_group,
            message=message,
        )
        stored = self.alert_store.add(alert)
        if dedup_group:
            self.tracked_groups.add(dedup_group)
        return stored

    def ack_alert(self, alert_id: str, actor: str = "system", note: Optional[str] = None,
                  meta: Optional[Dict[str, Any]] = None, now: Optional[datetime] = None) -> AckResult:
        return self.ledger.ack_alert(alert_id, actor=actor, note=note, meta=meta, now=now)

    def unack_alert(self, alert_id: str) -> UnackResult:
        return self.ledger.unack_alert(alert_id)

    def get_ack_state(self, alert_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        return self.ledger.get_ack_state(alert_ids)

    def get_ack_metrics(self, window_ms: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.ledger.get_ack_metrics(window_ms, now or self.clock())

    # ----------------------------------------------------------- suppression
    def track_groups(self, group_ids: Iterable[str]) -> None:
        self.tracked_groups.update(group_ids)

    def evaluate_suppression_window(self, group_ids: Optional[Iterable[str]] = None,
                                    now: Optional[datetime] = None) -> BatchResult:
        if group_ids is None:
            ids = sorted(self.tracked_groups | set(self.engine.group_ids()))
        else:
            ids = list(group_ids)
            self.tracked_groups.update(ids)
        return self.engine.evaluate_window(ids, now or self.clock())

    def get_suppression_state(self, group_id: str) -> Dict[str, Any]:
        return self.engine.get_suppression_state(group_id)

    def get_suppression_metrics(self) -> Dict[str, Any]:
        return self.engine.get_metrics(self.clock())

    def recent_transitions(self, limit: int = 50, group_id: Optional[str] = None) -> List[TransitionRecord]:
        return self.engine.recent_transitions(limit, group_id)

    # --------------------------------------------------------------- weights
    @property
    def weights(self) -> Weights:
        return self.engine.weights

    def set_weights(self, partial: Mapping[str, float], actor: str = "operator") -> Weights:
        """Operator override, clamped to the controller bounds and renormalized."""
        before = self.controller.weights
        weights = self.controller.set_weights(partial)
        self.engine.apply_weights(weights)
        self.events.publish(WEIGHTS_CHANGED, weights)
        self._audit(actor, "weights.override", {
            "requested": dict(partial),
            "before": before.as_dict(),
            "after": weights.as_dict(),
        })
        if self.gateway.enabled:
            self.writer.submit("save_weights", self.gateway.save_weights_snapshot,
                               weights.as_dict(), self.controller.state_snapshot()["controller"])
        return weights

    def compute_adjustment(self, metrics: MetricsSnapshot | Mapping[str, Any]) -> AdjustmentResult:
        """Run the controller once on caller-provided metrics and apply the result."""
        result = self.controller.compute_adjustment(metrics)
        if result.adjusted:
            self.engine.apply_weights(result.weights)
            self.events.publish(WEIGHTS_CHANGED, result.weights)
        self.metrics.controller_decisions_total.labels(reason=result.reason).inc()
        return result

    def collect_metrics(self, now: Optional[datetime] = None) -> MetricsSnapshot:
        return self.aggregator.collect(now or self.clock())

    def run_tuning_cycle(self, now: Optional[datetime] = None) -> AdjustmentResult:
        return self.runner.run_once(now or self.clock())

    # ------------------------------------------------------------ escalation
    def run_escalation_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        return self.escalation.run_sweep(now or self.clock())

    def force_escalate(self, alert_id: str, actor: str = "operator", note: Optional[str] = None,
                       now: Optional[datetime] = None) -> EscalationRecord:
        record = self.escalation.force_escalate(alert_id, actor=actor, note=note, now=now)
        self._audit(actor, "escalation.force", {"alert_id": alert_id, "note": note,
                                                "escalation_count": record.escalation_count})
        return record

    def get_escalation_metrics(self, window_ms: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.escalation.get_escalation_metrics(window_ms, now or self.clock())

    def get_escalation_state(self, alert_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        return self.escalation.get_escalation_state(alert_ids)

    # -------------------------------------------------------------- lifecycle
    def hydrate(self) -> Dict[str, Any]:
        return self.runner.hydrate()

    def start(self) -> None:
        """Start the periodic sweeps, plus retention pruning when persistence is on."""
        if self._tasks:
            return
        self.hydrate()
        cfg = self.config
        self._tasks = [
            PeriodicTask("suppression", cfg.suppression.eval_interval_ms / 1000.0,
                         self.evaluate_suppression_window, self.metrics),
            PeriodicTask("tuning", cfg.runner.interval_ms / 1000.0, self.run_tuning_cycle, self.metrics),
            PeriodicTask("escalation", cfg.escalation.run_interval_ms / 1000.0,
                         self.run_escalation_sweep, self.metrics),
        ]
        if self.gateway.enabled and cfg.runner.prune_interval_ms > 0:
            self._tasks.append(PeriodicTask("prune", cfg.runner.prune_interval_ms / 1000.0,
                                            self.prune_history, self.metrics))
        for task in self._tasks:
            task.start()

    def prune_history(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Trim decision history and call audit past their retention windows.

        Overlapping runs are skipped; a gateway failure is logged and reported,
        never raised.
        """
        cfg = self.config.runner
        if not self.gateway.enabled:
            return {"skipped": True, "reason": "no_persistence", "deleted": {}}
        if not self._prune_lock.acquire(blocking=False):
            return {"skipped": True, "reason": "already_running", "deleted": {}}
        try:
            now = as_utc(now or self.clock())
            deleted = self.gateway.prune(
                now - timedelta(days=cfg.history_retention_days),
                now - timedelta(days=cfg.audit_retention_days),
                batch_size=cfg.prune_batch_size,
                budget_s=cfg.prune_budget_s,
            )
        except PersistenceError as exc:
            logger.error(f"History pruning failed: {exc}")
            return {"skipped": False, "error": str(exc), "deleted": {}}
        finally:
            self._prune_lock.release()
        for table, count in deleted.items():
            if count:
                self.metrics.history_pruned_total.labels(table=table).inc(count)
        total = sum(deleted.values())
        if total:
            logger.info(f"Pruned {total} history rows: {deleted}")
        return {"skipped": False, "deleted": deleted, "total": total}

    def stop(self) -> None:
        for task in self._tasks:
            task.stop(timeout=5.0)
        self._tasks = []
        self.writer.flush()

    def close(self) -> None:
        self.stop()
        self.writer.close()
        self.engine.close()

    def reset_all(self, actor: str = "operator") -> None:
        self.engine.reset_all()
        self.controller.reset()
        self.engine.apply_weights(self.controller.weights)
        self._audit(actor, "state.reset", {"weights": self.controller.weights.as_dict()})

    def reload_config(self, suppression: Optional[SuppressionConfig] = None,
                      escalation: Optional[EscalationConfig] = None, actor: str = "operator") -> GovernanceConfig:
        """Hot-swap the suppression and/or escalation sections after validating them."""
        new = self.config
        if suppression is not None:
            suppression.validate()
            new = replace(new, suppression=suppression)
        if escalation is not None:
            escalation.validate()
            new = replace(new, escalation=escalation)
        self.config = new
        self.engine.config = new.suppression
        self.escalation.config = new.escalation
        self._audit(actor, "config.reload", {
            "suppression": suppression is not None,
            "escalation": escalation is not None,
        })
        logger.info("Configuration reloaded")
        return new

    def status(self) -> Dict[str, Any]:
        return {
            "weights": self.weights.as_dict(),
            "controller": self.controller.state_snapshot()["controller"],
            "runner": self.runner.status(),
            "suppression": self.engine.get_metrics(self.clock()),
            "tasks": [
                {"name": t.name, "running": t.running, "runs": t.runs, "dropped": t.dropped}
                for t in self._tasks
            ],
        }
