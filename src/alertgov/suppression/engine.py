"""
Adaptive suppression state machine.

Each dedup group moves through ACTIVE -> CANDIDATE -> SUPPRESSED -> MONITORING
-> ACTIVE, driven by a weighted noise score compared against hysteresis
thresholds. Thresholds are static unless robust mode has enough history to
derive them from the group's own median/MAD.
"""
from __future__ import annotations

import logging
import statistics
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from ..config import SuppressionConfig
from ..core.robust import compute_dynamic_thresholds
from ..core.scoring import ENGINE_W_MAX, ENGINE_W_MIN, Weights, noise_score, project_weights
from ..errors import SignalFetchError
from ..events import SUPPRESSION_TRANSITION, EventBus
from ..metrics.prometheus import GovernanceMetrics
from .signals import SignalSnapshot, SignalSource
from .state import (
    BatchResult,
    GroupResult,
    GroupRuntimeState,
    GroupStatus,
    SuppressionState,
    TransitionRecord,
)

logger = logging.getLogger(__name__)

EXIT_LOG_LIMIT = 300

ACTIVE = SuppressionState.ACTIVE
CANDIDATE = SuppressionState.CANDIDATE
SUPPRESSED = SuppressionState.SUPPRESSED
MONITORING = SuppressionState.MONITORING


@dataclass
class _ExitRecord:
    dedup_group: str
    exited_at: datetime
    reentered_at: Optional[datetime] = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SuppressionEngine:
    def __init__(
        self,
        config: SuppressionConfig,
        signals: SignalSource,
        *,
        events: Optional[EventBus] = None,
        metrics: Optional[GovernanceMetrics] = None,
        clock: Callable[[], datetime] = _utcnow,
        fetch_workers: int = 4,
    ) -> None:
        config.validate()
        self.config = config
        self.signals = signals
        self.events = events or EventBus()
        self.metrics = metrics or GovernanceMetrics()
        self.clock = clock
        self._weights = project_weights(config.weights, ENGINE_W_MIN, ENGINE_W_MAX)
        self._weights_lock = threading.Lock()
        self._groups: Dict[str, GroupRuntimeState] = {}
        self._published: Dict[str, GroupStatus] = {}
        self._publish_lock = threading.Lock()
        self._eval_lock = threading.Lock()
        self._transitions: Deque[TransitionRecord] = deque(maxlen=config.transition_log_limit)
        self._exits: Deque[_ExitRecord] = deque(maxlen=EXIT_LOG_LIMIT)
        self._executor = ThreadPoolExecutor(max_workers=fetch_workers, thread_name_prefix="signal-fetch")
        self._suppression_exits = 0
        self._false_suppressions = 0
        self._total_volume = 0.0
        self._suppressed_volume = 0.0
        self.metrics.set_weights(self._weights.as_dict())

    # ------------------------------------------------------------------ weights
    @property
    def weights(self) -> Weights:
        return self._weights

    def apply_weights(self, weights: Weights) -> Weights:
        """Swap in an already-projected weight vector."""
        with self._weights_lock:
            self._weights = weights
        self.metrics.set_weights(weights.as_dict())
        return weights

    # --------------------------------------------------------------- evaluation
    def set_group_meta(self, group_id: str, *, severity_scope: Optional[str] = None,
                       strategy: Optional[str] = None) -> None:
        with self._eval_lock:
            st = self._group(group_id)
            if severity_scope is not None:
                st.severity_scope = severity_scope
            if strategy is not None:
                st.strategy = strategy
            self._publish(st)

    def evaluate_window(self, group_ids: Iterable[str], now: Optional[datetime] = None) -> BatchResult:
        """Evaluate groups sequentially; a group whose signals fail is skipped."""
        now = now or self.clock()
        started = time.perf_counter()
        results: List[GroupResult] = []
        transitions: List[TransitionRecord] = []
        with self._eval_lock:
            for group_id in dict.fromkeys(group_ids):
                try:
                    signals = self._fetch(group_id)
                except SignalFetchError as exc:
                    reason = "timeout" if "timed out" in str(exc) else "error"
                    logger.warning(f"Skipping group {group_id} this cycle: {exc}")
                    self.metrics.groups_skipped_total.labels(reason=reason).inc()
                    prev = self._groups.get(group_id)
                    results.append(GroupResult(
                        dedup_group=group_id,
                        state=prev.state if prev else None,
                        skipped=True,
                        reason=reason,
                    ))
                    continue
                result, record = self._evaluate_group(group_id, signals, now)
                results.append(result)
                if record is not None:
                    transitions.append(record)
            self.metrics.set_state_counts(self._state_counts())
        elapsed = time.perf_counter() - started
        self.metrics.evaluation_seconds.observe(elapsed)
        return BatchResult(evaluated_at=now, results=results, transitions=transitions,
                           duration_ms=round(elapsed * 1000.0, 3))

    def _fetch(self, group_id: str) -> SignalSnapshot:
        future = self._executor.submit(self.signals.get_signals, group_id)
        try:
            raw = future.result(timeout=self.config.signal_timeout_s)
        except FuturesTimeout as exc:
            future.cancel()
            raise SignalFetchError(group_id, f"timed out after {self.config.signal_timeout_s}s") from exc
        except SignalFetchError:
            raise
        except Exception as exc:
            raise SignalFetchError(group_id, f"signal source raised {type(exc).__name__}: {exc}") from exc
        return SignalSnapshot.normalize(raw)

    def _group(self, group_id: str) -> GroupRuntimeState:
        st = self._groups.get(group_id)
        if st is None:
            st = GroupRuntimeState(dedup_group=group_id, history_size=self.config.robust.history_size)
            self._groups[group_id] = st
        return st

    def _is_blocked(self, st: GroupRuntimeState, signals: SignalSnapshot) -> bool:
        cfg = self.config
        if st.severity_scope == "critical" and not cfg.allow_suppress_critical:
            return True
        return signals.escalation_effectiveness >= cfg.escalation_effectiveness_block_threshold

    def _evaluate_group(
        self, group_id: str, signals: SignalSnapshot, now: datetime
    ) -> Tuple[GroupResult, Optional[TransitionRecord]]:
        cfg = self.config
        st = self._group(group_id)
        # first severity seen sticks; operators change it through set_group_meta
        if signals.severity is not None and st.severity_scope is None:
            st.severity_scope = signals.severity

        score = noise_score(
            signals.ack_rate,
            signals.suspected_false_rate,
            signals.volume,
            signals.dedup_ratio,
            signals.escalation_effectiveness,
            self._weights,
            cfg.min_volume,
        )
        st.noise_score = score
        st.last_volume = signals.volume
        st.last_eval_at = now
        st.ack_history.append(signals.ack_rate)
        st.suspected_false_history.append(signals.suspected_false_rate)
        st.volume_history.append(signals.volume)
        st.dedup_history.append(signals.dedup_ratio)
        st.escalation_ineffective_history.append(1.0 - signals.escalation_effectiveness)
        st.noise_history.append(score)
        self.metrics.noise_score.observe(score)

        dyn = compute_dynamic_thresholds(st.noise_history, cfg.high, cfg.robust)
        st.dynamic_thresholds = dyn
        if cfg.robust.enabled and dyn is not None:
            high, low = dyn.high, dyn.low
        else:
            high, low = cfg.high, cfg.low

        # A dynamic high below the static one must be confirmed by a streak.
        need_gate = cfg.robust.enabled and dyn is not None and dyn.high < cfg.high
        if need_gate:
            st.robust_high_streak = st.robust_high_streak + 1 if score >= high else 0
        else:
            st.robust_high_streak = 0
        gate_ok = not need_gate or st.robust_high_streak >= cfg.robust.min_consecutive_above_high

        blocked = self._is_blocked(st, signals)
        volume_ok = signals.volume >= cfg.min_volume

        if st.state is SUPPRESSED:
            st.ack_inside.append(signals.ack_rate)
        elif st.post_exit_open:
            st.ack_after.append(signals.ack_rate)

        previous = st.state
        target: Optional[SuppressionState] = None
        reason = ""
        if st.state is ACTIVE:
            if not blocked and volume_ok and score >= high and gate_ok:
                target, reason = CANDIDATE, "noise_above_high"
        elif st.state is CANDIDATE:
            if blocked:
                target, reason = ACTIVE, "blocked"
            elif not volume_ok:
                target, reason = ACTIVE, "low_volume"
            elif score < low:
                target, reason = ACTIVE, "noise_below_low"
            elif score >= high and gate_ok:
                target, reason = SUPPRESSED, "confirmed_noise"
        elif st.state is SUPPRESSED:
            st.suppressed_count += 1
            if score < low:
                # the exit cycle counts as the first stable window
                st.consecutive_stable = 1
                target, reason = MONITORING, "noise_below_low"
            else:
                st.consecutive_stable = 0
        elif st.state is MONITORING:
            if not blocked and volume_ok and score >= high:
                target, reason = SUPPRESSED, "re_spike"
            elif score < low:
                st.consecutive_stable += 1
                if st.consecutive_stable >= cfg.stable_recovery_windows:
                    target, reason = ACTIVE, "stable_recovery"
            else:
                st.consecutive_stable = 0

        record = None
        if target is not None:
            record = self._transition(st, target, reason, now)

        self._total_volume += signals.volume
        if st.state is SUPPRESSED:
            self._suppressed_volume += signals.volume

        self._publish(st)
        result = GroupResult(
            dedup_group=group_id,
            state=st.state,
            previous_state=previous,
            noise_score=score,
            high=high,
            low=low,
            transitioned=record is not None,
            reason=reason or None,
        )
        return result, record

    def _transition(
        self, st: GroupRuntimeState, target: SuppressionState, reason: str, now: datetime
    ) -> TransitionRecord:
        previous = st.state
        duration_ms: Optional[int] = None
        if previous is SUPPRESSED and st.last_suppression_start is not None:
            duration_ms = int((now - st.last_suppression_start).total_seconds() * 1000)

        if previous is MONITORING:
            self._close_post_exit_window(st)

        if target is SUPPRESSED:
            st.noise_score_enter = st.noise_score
            st.last_suppression_start = now
            st.ack_inside.clear()
            self._mark_reentry(st.dedup_group, now)
        elif previous is SUPPRESSED:
            st.noise_score_exit = st.noise_score
            st.last_exit_at = now
            if duration_ms is not None:
                st.durations_ms.append(duration_ms)
            st.post_exit_open = True
            st.ack_after.clear()
            self._suppression_exits += 1
            self._exits.append(_ExitRecord(dedup_group=st.dedup_group, exited_at=now))

        if target is ACTIVE and previous is MONITORING:
            st.recovered_at = now
            st.last_suppression_start = None
        if target is not MONITORING:
            st.consecutive_stable = 0
        st.state = target
        st.last_state_change_at = now

        record = TransitionRecord(
            dedup_group=st.dedup_group,
            previous=previous,
            new=target,
            at=now,
            reason=reason,
            noise_score=st.noise_score,
            noise_score_enter=st.noise_score_enter,
            noise_score_exit=st.noise_score_exit,
            suppressed_duration_ms=duration_ms,
        )
        self._transitions.append(record)
        self.metrics.transitions_total.labels(from_state=previous.value, to_state=target.value).inc()
        logger.info(
            f"Group {st.dedup_group}: {previous.value} -> {target.value} "
            f"(reason={reason}, noise={st.noise_score:.4f})"
        )
        self.events.publish(SUPPRESSION_TRANSITION, record)
        return record

    def _close_post_exit_window(self, st: GroupRuntimeState) -> None:
        if st.post_exit_open and st.ack_inside and st.ack_after:
            jump = statistics.fmean(st.ack_after) - statistics.fmean(st.ack_inside)
            if jump >= self.config.recovery_ack_rate_jump:
                self._false_suppressions += 1
                self.metrics.false_suppressions_total.inc()
                logger.warning(
                    f"Group {st.dedup_group}: suspected false suppression "
                    f"(ack rate jumped {jump:.3f} after exit)"
                )
        st.post_exit_open = False
        st.ack_inside.clear()
        st.ack_after.clear()

    def _mark_reentry(self, group_id: str, now: datetime) -> None:
        horizon = timedelta(seconds=self.config.re_noise_horizon_s)
        for rec in reversed(self._exits):
            if rec.dedup_group != group_id:
                continue
            if rec.reentered_at is None and now - rec.exited_at <= horizon:
                rec.reentered_at = now
            break

    def _publish(self, st: GroupRuntimeState) -> None:
        status = st.status()
        with self._publish_lock:
            published = dict(self._published)
            published[st.dedup_group] = status
            self._published = published

    def _state_counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in SuppressionState}
        for st in self._groups.values():
            counts[st.state.value] += 1
        return counts

    # ------------------------------------------------------------------ queries
    def get_status(self, group_id: str) -> Optional[GroupStatus]:
        return self._published.get(group_id)

    def get_suppression_state(self, group_id: str) -> Dict[str, Any]:
        status = self._published.get(group_id)
        if status is None:
            return {
                "dedup_group": group_id,
                "suppressed": False,
                "state": ACTIVE.value,
                "noise_score": 0.0,
                "mode": "NONE",
                "since": None,
            }
        return status.as_dict()

    def group_ids(self) -> List[str]:
        return list(self._published)

    def recent_transitions(self, limit: int = 50, group_id: Optional[str] = None) -> List[TransitionRecord]:
        items = list(self._transitions)
        if group_id is not None:
            items = [t for t in items if t.dedup_group == group_id]
        return items[-limit:] if limit > 0 else []

    def false_suppression_rate(self) -> float:
        if self._suppression_exits == 0:
            return 0.0
        return self._false_suppressions / self._suppression_exits

    def re_noise_rate(self, now: Optional[datetime] = None) -> Optional[float]:
        """Share of recent exits whose group re-entered suppression within the horizon.

        None when no group exited within the horizon.
        """
        now = now or self.clock()
        horizon = timedelta(seconds=self.config.re_noise_horizon_s)
        recent = [r for r in list(self._exits) if now - r.exited_at <= horizon]
        if not recent:
            return None
        return sum(1 for r in recent if r.reentered_at is not None) / len(recent)

    def has_exit_data(self) -> bool:
        return self._suppression_exits > 0

    def get_metrics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        statuses = list(self._published.values())
        counts = {s.value: 0 for s in SuppressionState}
        for status in statuses:
            counts[status.state.value] += 1
        re_noise = self.re_noise_rate(now)
        suppressed_ratio = (self._suppressed_volume / self._total_volume) if self._total_volume > 0 else 0.0
        return {
            "groups": len(statuses),
            "states": counts,
            "suppression_exits": self._suppression_exits,
            "false_suppressions": self._false_suppressions,
            "false_suppression_rate": round(self.false_suppression_rate(), 4),
            "re_noise_rate": round(re_noise, 4) if re_noise is not None else None,
            "total_volume": self._total_volume,
            "suppressed_volume": self._suppressed_volume,
            "suppressed_volume_ratio": round(suppressed_ratio, 4),
            "weights": self._weights.as_dict(),
        }

    # -------------------------------------------------------------- persistence
    def snapshots(self) -> List[Dict[str, Any]]:
        with self._eval_lock:
            return [st.snapshot() for st in self._groups.values()]

    def hydrate(self, snapshots: Iterable[Mapping[str, Any]]) -> int:
        """Restore group state from persisted snapshots; returns groups restored."""
        restored = 0
        with self._eval_lock:
            for snap in snapshots:
                try:
                    st = GroupRuntimeState.from_snapshot(dict(snap), self.config.robust.history_size)
                except (KeyError, ValueError, TypeError) as exc:
                    logger.warning(f"Ignoring malformed suppression snapshot: {exc}")
                    continue
                self._groups[st.dedup_group] = st
                self._publish(st)
                restored += 1
        if restored:
            logger.info(f"Hydrated {restored} suppression group(s)")
        return restored

    def reset_all(self) -> None:
        with self._eval_lock:
            self._groups.clear()
            with self._publish_lock:
                self._published = {}
            self._transitions.clear()
            self._exits.clear()
            self._suppression_exits = 0
            self._false_suppressions = 0
            self._total_volume = 0.0
            self._suppressed_volume = 0.0
            self.metrics.set_state_counts(self._state_counts())
        logger.info("Suppression state reset")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
