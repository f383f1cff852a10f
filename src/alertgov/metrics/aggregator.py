"""Builds the controller's MetricsSnapshot from the live components."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional

from ..config import MetricTargets
from ..tuning.controller import MetricsSnapshot

if TYPE_CHECKING:
    from ..escalation.ack import AckLedger
    from ..escalation.manager import EscalationManager
    from ..suppression.engine import SuppressionEngine

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = 24 * 3600 * 1000


class MetricsAggregator:
    def __init__(
        self,
        suppression: "SuppressionEngine",
        escalation: "EscalationManager",
        ledger: "AckLedger",
        targets: MetricTargets,
        window_ms: int = DEFAULT_WINDOW_MS,
    ) -> None:
        self.suppression = suppression
        self.escalation = escalation
        self.ledger = ledger
        self.targets = targets
        self.window_ms = window_ms

    def collect(self, now: Optional[datetime] = None) -> MetricsSnapshot:
        """
        Gather one snapshot. A source with no data in the window reports the
        target value for its metric (zero error) and marks the snapshot degraded.
        """
        now = now or self.suppression.clock()
        targets = self.targets
        degraded: List[str] = []

        ack = self.ledger.get_ack_metrics(self.window_ms, now)
        ack_rate = ack["ack_rate"]
        if ack_rate is None:
            ack_rate = targets.ack_rate
            degraded.append("ack_rate")

        esc = self.escalation.get_escalation_metrics(self.window_ms, now)
        effectiveness = esc["effectiveness_rate"]
        if effectiveness is None:
            effectiveness = targets.escalation_effectiveness
            degraded.append("escalation_effectiveness")
        suspected = esc["suspected_false_rate"]
        if suspected is None:
            suspected = targets.suspected_false_rate
            degraded.append("suspected_false_rate")

        if self.suppression.has_exit_data():
            false_supp = self.suppression.false_suppression_rate()
        else:
            false_supp = targets.false_suppression_rate
            degraded.append("false_suppression_rate")

        re_noise = self.suppression.re_noise_rate(now)
        if re_noise is None:
            re_noise = targets.re_noise_rate
            degraded.append("re_noise_rate")

        if degraded:
            logger.debug(f"Metrics snapshot degraded, using targets for: {degraded}")
        return MetricsSnapshot(
            ack_rate=float(ack_rate),
            escalation_effectiveness=float(effectiveness),
            false_suppression_rate=float(false_supp),
            suspected_false_rate=float(suspected),
            re_noise_rate=float(re_noise),
            degraded=bool(degraded),
            degraded_sources=tuple(degraded),
        )

    def summary(self, now: Optional[datetime] = None) -> Dict[str, object]:
        snap = self.collect(now)
        return {"metrics": snap.as_dict(), "targets": self.targets.as_dict()}
