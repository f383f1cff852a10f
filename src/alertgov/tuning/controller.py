"""
Closed-loop weight controller.

Reads aggregated operational metrics once per tuning cycle and nudges the
noise-score weights toward the configured targets. Safety rails: deadband,
per-component delta clamp, L1 drift cap, cooldown between adjustments,
outlier skip, and a convergence freeze with a minimum hold.
"""
from __future__ import annotations

import logging
import statistics
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from ..config import WEIGHT_KEYS, AdaptiveWeightConfig
from ..core.robust import median_mad
from ..core.scoring import Weights, project_weights

logger = logging.getLogger(__name__)

METRIC_KEYS: Tuple[str, ...] = (
    "ack_rate",
    "escalation_effectiveness",
    "false_suppression_rate",
    "suspected_false_rate",
    "re_noise_rate",
)

# -1: higher is better, +1: lower is better
DIRECTION: Dict[str, int] = {
    "ack_rate": -1,
    "escalation_effectiveness": -1,
    "false_suppression_rate": 1,
    "suspected_false_rate": 1,
    "re_noise_rate": 1,
}

# Share of a false-suppression correction applied to each weight.
FALSE_SUPPRESSION_ROUTING: Dict[str, float] = {"w2": -0.5, "w3": -0.2, "w4": -0.3, "w5": 0.4}
SUSPECTED_FALSE_DEDUP_SHARE = 0.2

OUTLIER_MIN_HISTORY = 3
OUTLIER_MAD_FLOOR = 1e-6

REASON_APPLIED = "applied"
REASON_COOLDOWN = "cooldown"
REASON_FREEZE = "freeze"
REASON_NO_CHANGE = "no_change"
REASON_WARMUP = "warmup"


@dataclass(frozen=True)
class MetricsSnapshot:
    ack_rate: float
    escalation_effectiveness: float
    false_suppression_rate: float
    suspected_false_rate: float
    re_noise_rate: float
    degraded: bool = False
    degraded_sources: Tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MetricsSnapshot":
        return cls(**{k: float(data[k]) for k in METRIC_KEYS})

    def values(self) -> Dict[str, float]:
        return {k: getattr(self, k) for k in METRIC_KEYS}

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = self.values()
        out["degraded"] = self.degraded
        out["degraded_sources"] = list(self.degraded_sources)
        return out


@dataclass(frozen=True)
class AdjustmentResult:
    cycle: int
    adjusted: bool
    reason: str
    weights: Weights
    previous_weights: Weights
    errors: Dict[str, float]
    deltas: Dict[str, float] = field(default_factory=dict)
    skipped: Tuple[str, ...] = ()
    severe: bool = False
    frozen: bool = False
    l1_change: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "adjusted": self.adjusted,
            "reason": self.reason,
            "weights": self.weights.as_dict(),
            "previous_weights": self.previous_weights.as_dict(),
            "errors": dict(self.errors),
            "deltas": dict(self.deltas),
            "skipped": list(self.skipped),
            "severe": self.severe,
            "frozen": self.frozen,
            "l1_change": self.l1_change,
        }


@dataclass
class ControllerState:
    weights: Weights
    cycle: int = 0
    last_adjustment_cycle: Optional[int] = None
    freeze_active: bool = False
    freeze_since_cycle: Optional[int] = None
    consecutive_zero_error_cycles: int = 0
    consecutive_converged_cycles: int = 0
    last_severe_adjustment_cycle: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["weights"] = self.weights.as_dict()
        return data


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AdaptiveWeightController:
    def __init__(self, config: AdaptiveWeightConfig, clock: Callable[[], datetime] = _utcnow) -> None:
        config.validate()
        self.config = config
        self.clock = clock
        self._lock = threading.Lock()
        self.state = ControllerState(
            weights=project_weights(config.initial_weights, config.w_min, config.w_max)
        )
        self._history: Deque[Tuple[Dict[str, float], Dict[str, float]]] = deque(maxlen=config.history_size)
        self._log: Deque[Dict[str, Any]] = deque(maxlen=config.log_limit)

    @property
    def weights(self) -> Weights:
        return self.state.weights

    # ----------------------------------------------------------------- helpers
    def compute_errors(self, values: Mapping[str, float]) -> Dict[str, float]:
        targets = self.config.targets.as_dict()
        errors: Dict[str, float] = {}
        for key in METRIC_KEYS:
            err = DIRECTION[key] * (float(values[key]) - targets[key])
            errors[key] = 0.0 if abs(err) < self.config.deadband else err
        return errors

    def _is_converged(self) -> bool:
        window = list(self._history)[-self.config.convergence_window:]
        if len(window) < self.config.convergence_window:
            return False
        mags = [abs(e) for _v, errs in window for e in errs.values()]
        return statistics.fmean(mags) <= self.config.convergence_threshold if mags else True

    def _outliers(self, values: Mapping[str, float]) -> List[str]:
        # Compared against history before the current sample is appended.
        past = list(self._history)
        if len(past) < OUTLIER_MIN_HISTORY:
            return []
        skipped = []
        for key in METRIC_KEYS:
            med, mad = median_mad(v[key] for v, _e in past)
            if abs(values[key] - med) > self.config.outlier_mad_k * max(mad, OUTLIER_MAD_FLOOR):
                skipped.append(key)
        return skipped

    def _clamp_delta(self, d: float) -> float:
        m = self.config.max_delta
        return max(-m, min(m, d))

    def _route(self, errors: Mapping[str, float], skipped: List[str]) -> Dict[str, float]:
        k = self.config.adjust_factor
        deltas = {w: 0.0 for w in WEIGHT_KEYS}

        def err(key: str) -> float:
            return 0.0 if key in skipped else errors[key]

        # Positive error: metric is on the wrong side of its target.
        if err("ack_rate"):
            deltas["w1"] += self._clamp_delta(k * err("ack_rate"))
        if err("suspected_false_rate"):
            deltas["w2"] += self._clamp_delta(k * err("suspected_false_rate"))
            if err("suspected_false_rate") > 0:
                deltas["w4"] += self._clamp_delta(k * err("suspected_false_rate") * SUSPECTED_FALSE_DEDUP_SHARE)
        if err("escalation_effectiveness"):
            deltas["w5"] += self._clamp_delta(k * err("escalation_effectiveness"))
        if err("false_suppression_rate"):
            reduce = k * err("false_suppression_rate")
            for w, share in FALSE_SUPPRESSION_ROUTING.items():
                deltas[w] += self._clamp_delta(reduce * share)
        for w in WEIGHT_KEYS:
            deltas[w] = self._clamp_delta(deltas[w])
        return deltas

    def _cap_drift(self, deltas: Dict[str, float]) -> Dict[str, float]:
        l1 = sum(abs(d) for d in deltas.values())
        if l1 > self.config.max_cycle_drift and l1 > 0:
            scale = self.config.max_cycle_drift / l1
            return {w: d * scale for w, d in deltas.items()}
        return deltas

    # -------------------------------------------------------------- main loop
    def compute_adjustment(self, metrics: MetricsSnapshot | Mapping[str, Any]) -> AdjustmentResult:
        """
        Run one controller cycle.

        Order of checks:
          1) errors with deadband; streak counters for zero error and convergence
          2) freeze hold / release, or entry into freeze
          3) severe deviation override (never two cycles in a row)
          4) cooldown
          5) outlier skip, routing, delta clamp, L1 drift cap
          6) projection onto the bounded simplex
        """
        if not isinstance(metrics, MetricsSnapshot):
            metrics = MetricsSnapshot.from_mapping(metrics)
        values = metrics.values()
        cfg = self.config
        with self._lock:
            st = self.state
            st.cycle += 1
            errors = self.compute_errors(values)
            skipped = self._outliers(values)
            self._history.append((values, errors))

            if all(e == 0.0 for e in errors.values()):
                st.consecutive_zero_error_cycles += 1
            else:
                st.consecutive_zero_error_cycles = 0
            converged = self._is_converged()
            st.consecutive_converged_cycles = st.consecutive_converged_cycles + 1 if converged else 0

            if st.freeze_active:
                held = st.cycle - (st.freeze_since_cycle or st.cycle)
                if held < cfg.min_freeze_hold_cycles or converged:
                    return self._finish(metrics, errors, REASON_FREEZE, st.weights, {}, skipped)
                st.freeze_active = False
                st.freeze_since_cycle = None
                st.consecutive_zero_error_cycles = 0
                st.consecutive_converged_cycles = 0
                logger.info(f"Weight controller unfrozen at cycle {st.cycle}")
            elif (
                st.consecutive_zero_error_cycles >= cfg.stable_freeze_cycles
                or st.consecutive_converged_cycles >= cfg.stable_freeze_cycles
            ):
                st.freeze_active = True
                st.freeze_since_cycle = st.cycle
                logger.info(f"Weight controller frozen at cycle {st.cycle} (metrics converged)")
                return self._finish(metrics, errors, REASON_FREEZE, st.weights, {}, skipped)

            severe = any(abs(e) > cfg.severe_deviation_threshold for e in errors.values())
            if severe and st.last_severe_adjustment_cycle == st.cycle - 1:
                severe = False
            in_cooldown = (
                st.last_adjustment_cycle is not None
                and st.cycle - st.last_adjustment_cycle < cfg.cooldown_cycles
            )
            if in_cooldown and not severe:
                return self._finish(metrics, errors, REASON_COOLDOWN, st.weights, {}, skipped)

            deltas = self._cap_drift(self._route(errors, skipped))
            if all(d == 0.0 for d in deltas.values()):
                return self._finish(metrics, errors, REASON_NO_CHANGE, st.weights, deltas, skipped)

            previous = st.weights
            raw = {w: getattr(previous, w) + deltas[w] for w in WEIGHT_KEYS}
            new_weights = project_weights(raw, cfg.w_min, cfg.w_max)
            st.weights = new_weights
            st.last_adjustment_cycle = st.cycle
            if severe:
                st.last_severe_adjustment_cycle = st.cycle
            return self._finish(metrics, errors, REASON_APPLIED, previous, deltas, skipped, severe=severe)

    def _finish(
        self,
        metrics: MetricsSnapshot,
        errors: Dict[str, float],
        reason: str,
        previous: Weights,
        deltas: Dict[str, float],
        skipped: List[str],
        severe: bool = False,
    ) -> AdjustmentResult:
        st = self.state
        result = AdjustmentResult(
            cycle=st.cycle,
            adjusted=reason == REASON_APPLIED,
            reason=reason,
            weights=st.weights,
            previous_weights=previous,
            errors=errors,
            deltas={w: round(d, 6) for w, d in deltas.items()},
            skipped=tuple(skipped),
            severe=severe,
            frozen=st.freeze_active,
            l1_change=round(previous.l1_distance(st.weights), 6),
        )
        entry = result.as_dict()
        entry["at"] = self.clock().isoformat()
        entry["metrics"] = metrics.as_dict()
        self._log.append(entry)
        if result.adjusted:
            logger.info(
                f"Weights adjusted at cycle {st.cycle}: {st.weights.as_dict()} "
                f"(severe={severe}, skipped={list(skipped)})"
            )
        else:
            logger.debug(f"Controller cycle {st.cycle}: {reason}")
        return result

    # ----------------------------------------------------------- maintenance
    def record_warmup(self, metrics: MetricsSnapshot | Mapping[str, Any]) -> AdjustmentResult:
        """Record a sample without adjusting: used while the loop warms up."""
        if not isinstance(metrics, MetricsSnapshot):
            metrics = MetricsSnapshot.from_mapping(metrics)
        with self._lock:
            self.state.cycle += 1
            values = metrics.values()
            errors = self.compute_errors(values)
            self._history.append((values, errors))
            return self._finish(metrics, errors, REASON_WARMUP, self.state.weights, {}, [])

    def set_weights(self, partial: Mapping[str, float]) -> Weights:
        """Operator override: merge, project onto the bounds, start a cooldown."""
        with self._lock:
            merged = self.state.weights.merged(partial)
            self.state.weights = project_weights(merged, self.config.w_min, self.config.w_max)
            self.state.last_adjustment_cycle = self.state.cycle
            self._log.append({
                "cycle": self.state.cycle,
                "adjusted": True,
                "reason": "override",
                "weights": self.state.weights.as_dict(),
                "at": self.clock().isoformat(),
            })
            logger.info(f"Weights overridden by operator: {self.state.weights.as_dict()}")
            return self.state.weights

    def restore(self, row: Mapping[str, Any]) -> None:
        """Rehydrate from a persisted snapshot (see ``state_snapshot``)."""
        with self._lock:
            weights = row.get("weights") or {}
            self.state.weights = project_weights(
                {k: float(weights.get(k, getattr(self.state.weights, k))) for k in WEIGHT_KEYS},
                self.config.w_min,
                self.config.w_max,
            )
            ctrl = row.get("controller") or {}
            self.state.cycle = int(ctrl.get("cycle", self.state.cycle))
            self.state.last_adjustment_cycle = ctrl.get("last_adjustment_cycle")
            self.state.freeze_active = bool(ctrl.get("freeze_active", False))
            self.state.freeze_since_cycle = ctrl.get("freeze_since_cycle")
            self.state.last_severe_adjustment_cycle = ctrl.get("last_severe_adjustment_cycle")
            self.state.consecutive_zero_error_cycles = int(ctrl.get("consecutive_zero_error_cycles", 0))
            self.state.consecutive_converged_cycles = int(ctrl.get("consecutive_converged_cycles", 0))
        logger.info(f"Weight controller restored at cycle {self.state.cycle}")

    def state_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data = self.state.as_dict()
            weights = data.pop("weights")
            return {"weights": weights, "controller": data}

    def adjustment_log(self, limit: int = 100) -> List[Dict[str, Any]]:
        items = list(self._log)
        return items[-limit:] if limit > 0 else []

    def reset(self) -> None:
        with self._lock:
            self.state = ControllerState(
                weights=project_weights(self.config.initial_weights, self.config.w_min, self.config.w_max)
            )
            self._history.clear()
            self._log.clear()
