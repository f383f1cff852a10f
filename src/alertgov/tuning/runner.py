"""
One tuning cycle: collect metrics, run the controller, push weights into the
suppression engine, and persist the outcome without waiting for it.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from ..config import RunnerConfig
from ..events import WEIGHTS_CHANGED, EventBus
from ..metrics.aggregator import MetricsAggregator
from ..metrics.prometheus import GovernanceMetrics
from ..persistence.gateway import NullGateway, PersistenceGateway
from ..persistence.writer import BackgroundWriter
from ..suppression.engine import SuppressionEngine
from ..suppression.state import SuppressionState
from .controller import REASON_COOLDOWN, REASON_FREEZE, AdaptiveWeightController, AdjustmentResult

logger = logging.getLogger(__name__)

RUN_LOG_LIMIT = 200
SIGNIFICANT_SUPPRESSED_GROUPS = 3
SIGNIFICANT_GROUP_DELTA = 3
SIGNIFICANT_GROUP_RATIO = 0.25


class AdaptiveRunner:
    def __init__(
        self,
        config: RunnerConfig,
        controller: AdaptiveWeightController,
        engine: SuppressionEngine,
        aggregator: MetricsAggregator,
        *,
        gateway: Optional[PersistenceGateway] = None,
        writer: Optional[BackgroundWriter] = None,
        events: Optional[EventBus] = None,
        metrics: Optional[GovernanceMetrics] = None,
    ) -> None:
        config.validate()
        self.config = config
        self.controller = controller
        self.engine = engine
        self.aggregator = aggregator
        self.gateway = gateway or NullGateway()
        self.metrics = metrics or engine.metrics
        self.writer = writer or BackgroundWriter(
            self.metrics, timeout_s=config.persistence_timeout_s, max_pending=config.persistence_max_pending
        )
        self.events = events or engine.events
        self.cycle = 0
        self.hydrated = False
        self.last_result: Optional[AdjustmentResult] = None
        self._lock = threading.Lock()
        self._log: Deque[Dict[str, Any]] = deque(maxlen=RUN_LOG_LIMIT)
        self._cooldown_streak = 0
        self._last_weight_save_cycle = 0
        self._last_snapshot_cycle = 0
        self._snapshot_group_baseline = 0

    # --------------------------------------------------------------- hydration
    def hydrate(self) -> Dict[str, Any]:
        """Restore weights and group state from the gateway, once.

        A failed or empty load leaves the configured defaults in place.
        """
        out: Dict[str, Any] = {"weights": False, "groups": 0}
        if self.hydrated:
            return out
        self.hydrated = True
        if not self.gateway.enabled:
            return out
        try:
            row = self.gateway.load_latest_weights()
            if row:
                self.controller.restore(row)
                self.engine.apply_weights(self.controller.weights)
                out["weights"] = True
        except Exception:
            logger.exception("Loading persisted weights failed; using configured defaults")
        try:
            out["groups"] = self.engine.hydrate(self.gateway.load_suppression_snapshots())
            self._snapshot_group_baseline = out["groups"]
        except Exception:
            logger.exception("Loading suppression snapshots failed; starting with empty state")
        return out

    # ------------------------------------------------------------------ cycle
    def run_once(self, now: Optional[datetime] = None) -> AdjustmentResult:
        with self._lock:
            self.cycle += 1
            if not self.hydrated:
                self.hydrate()
            now = now or self.engine.clock()
            snapshot = self.aggregator.collect(now)
            if self.cycle <= self.config.warmup_cycles:
                result = self.controller.record_warmup(snapshot)
            else:
                result = self.controller.compute_adjustment(snapshot)
                if result.adjusted:
                    self.engine.apply_weights(result.weights)
                    self.events.publish(WEIGHTS_CHANGED, result.weights)
            self.last_result = result
            self.metrics.controller_decisions_total.labels(reason=result.reason).inc()
            entry = result.as_dict()
            entry["runner_cycle"] = self.cycle
            entry["at"] = now.isoformat()
            entry["metrics"] = snapshot.as_dict()
            self._log.append(entry)
            if self.gateway.enabled:
                self._persist(result, entry)
            return result

    def _persist(self, result: AdjustmentResult, entry: Dict[str, Any]) -> None:
        gw = self.gateway
        every = self.config.debounce_cooldown_every
        self.writer.submit("append_adjustment", gw.append_weight_adjustment, entry)

        if result.reason == REASON_COOLDOWN and not result.adjusted:
            self._cooldown_streak += 1
        else:
            self._cooldown_streak = 0
        should_save = (
            result.adjusted
            or result.reason == REASON_FREEZE
            or (self._cooldown_streak >= every and self.cycle - self._last_weight_save_cycle >= every)
        )
        probe = self.writer.disabled and self.cycle % every == 0
        if should_save or probe:
            cycle = self.cycle

            def _saved() -> None:
                self._last_weight_save_cycle = cycle

            self.writer.submit(
                "save_weights",
                gw.save_weights_snapshot,
                result.weights.as_dict(),
                self.controller.state_snapshot()["controller"],
                probe=probe,
                on_success=_saved,
            )

        snapshots = self.engine.snapshots()
        if self._significant_change(snapshots) or self.cycle - self._last_snapshot_cycle >= self.config.snapshot_every:
            cycle, count = self.cycle, len(snapshots)

            def _snapshotted() -> None:
                self._last_snapshot_cycle = cycle
                self._snapshot_group_baseline = count

            self.writer.submit("save_suppression", gw.save_suppression_snapshots, snapshots,
                               on_success=_snapshotted)

    def _significant_change(self, snapshots: List[Dict[str, Any]]) -> bool:
        suppressed = sum(1 for s in snapshots if s["state"] == SuppressionState.SUPPRESSED.value)
        if suppressed < SIGNIFICANT_SUPPRESSED_GROUPS:
            return False
        delta = abs(len(snapshots) - self._snapshot_group_baseline)
        if delta >= SIGNIFICANT_GROUP_DELTA:
            return True
        return self._snapshot_group_baseline > 0 and delta / self._snapshot_group_baseline >= SIGNIFICANT_GROUP_RATIO

    # ----------------------------------------------------------------- status
    def status(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "hydrated": self.hydrated,
            "last_result": self.last_result.as_dict() if self.last_result else None,
            "persistence": self.writer.stats(),
            "persistence_enabled": self.gateway.enabled,
        }

    def run_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        items = list(self._log)
        return items[-limit:] if limit > 0 else []
