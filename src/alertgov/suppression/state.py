from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from ..core.robust import DynamicThresholds

AFTER_EXIT_SAMPLE_LIMIT = 100
DURATION_LIMIT = 300


class SuppressionState(str, Enum):
    ACTIVE = "ACTIVE"
    CANDIDATE = "CANDIDATE"
    SUPPRESSED = "SUPPRESSED"
    MONITORING = "MONITORING"


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


@dataclass(frozen=True)
class TransitionRecord:
    dedup_group: str
    previous: SuppressionState
    new: SuppressionState
    at: datetime
    reason: str
    noise_score: float
    noise_score_enter: Optional[float] = None
    noise_score_exit: Optional[float] = None
    suppressed_duration_ms: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "dedup_group": self.dedup_group,
            "previous": self.previous.value,
            "new": self.new.value,
            "at": self.at.isoformat(),
            "reason": self.reason,
            "noise_score": self.noise_score,
            "noise_score_enter": self.noise_score_enter,
            "noise_score_exit": self.noise_score_exit,
            "suppressed_duration_ms": self.suppressed_duration_ms,
        }


@dataclass
class GroupRuntimeState:
    """Mutable per-group state. Owned by the evaluating sweep only."""

    dedup_group: str
    history_size: int = 30
    strategy: Optional[str] = None
    severity_scope: Optional[str] = None
    state: SuppressionState = SuppressionState.ACTIVE
    noise_score: float = 0.0
    noise_score_enter: Optional[float] = None
    noise_score_exit: Optional[float] = None
    suppressed_count: int = 0
    last_volume: float = 0.0
    dynamic_thresholds: Optional[DynamicThresholds] = None
    consecutive_stable: int = 0
    robust_high_streak: int = 0
    last_state_change_at: Optional[datetime] = None
    last_suppression_start: Optional[datetime] = None
    last_exit_at: Optional[datetime] = None
    recovered_at: Optional[datetime] = None
    last_eval_at: Optional[datetime] = None
    post_exit_open: bool = False
    ack_history: Deque[float] = field(init=False)
    suspected_false_history: Deque[float] = field(init=False)
    volume_history: Deque[float] = field(init=False)
    dedup_history: Deque[float] = field(init=False)
    escalation_ineffective_history: Deque[float] = field(init=False)
    noise_history: Deque[float] = field(init=False)
    ack_inside: Deque[float] = field(init=False)
    ack_after: Deque[float] = field(init=False)
    durations_ms: Deque[int] = field(init=False)

    def __post_init__(self) -> None:
        n = self.history_size
        self.ack_history = deque(maxlen=n)
        self.suspected_false_history = deque(maxlen=n)
        self.volume_history = deque(maxlen=n)
        self.dedup_history = deque(maxlen=n)
        self.escalation_ineffective_history = deque(maxlen=n)
        self.noise_history = deque(maxlen=n)
        self.ack_inside = deque(maxlen=AFTER_EXIT_SAMPLE_LIMIT)
        self.ack_after = deque(maxlen=AFTER_EXIT_SAMPLE_LIMIT)
        self.durations_ms = deque(maxlen=DURATION_LIMIT)

    def snapshot(self) -> Dict[str, Any]:
        """Serializable subset used for persistence and hydration."""
        return {
            "dedup_group": self.dedup_group,
            "state": self.state.value,
            "noise_score": self.noise_score,
            "noise_score_enter": self.noise_score_enter,
            "noise_score_exit": self.noise_score_exit,
            "suppressed_count": self.suppressed_count,
            "last_volume": self.last_volume,
            "severity_scope": self.severity_scope,
            "strategy": self.strategy,
            "last_state_change_at": _iso(self.last_state_change_at),
            "last_suppression_start": _iso(self.last_suppression_start),
            "consecutive_stable": self.consecutive_stable,
            "dynamic_thresholds": self.dynamic_thresholds.as_dict() if self.dynamic_thresholds else None,
            "robust_high_streak": self.robust_high_streak,
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any], history_size: int) -> "GroupRuntimeState":
        st = cls(dedup_group=str(data["dedup_group"]), history_size=history_size)
        st.state = SuppressionState(data.get("state", SuppressionState.ACTIVE.value))
        st.noise_score = float(data.get("noise_score") or 0.0)
        st.noise_score_enter = data.get("noise_score_enter")
        st.noise_score_exit = data.get("noise_score_exit")
        st.suppressed_count = int(data.get("suppressed_count") or 0)
        st.last_volume = float(data.get("last_volume") or 0.0)
        st.severity_scope = data.get("severity_scope")
        st.strategy = data.get("strategy")
        st.last_state_change_at = _parse_ts(data.get("last_state_change_at"))
        st.last_suppression_start = _parse_ts(data.get("last_suppression_start"))
        st.consecutive_stable = int(data.get("consecutive_stable") or 0)
        dyn = data.get("dynamic_thresholds")
        if isinstance(dyn, dict):
            st.dynamic_thresholds = DynamicThresholds(
                high=float(dyn["high"]), low=float(dyn["low"]),
                median=float(dyn.get("median", 0.0)), mad=float(dyn.get("mad", 0.0)),
            )
        st.robust_high_streak = int(data.get("robust_high_streak") or 0)
        # A group restored in MONITORING has lost its inside-suppression samples.
        st.post_exit_open = False
        return st

    def status(self) -> "GroupStatus":
        return GroupStatus(
            dedup_group=self.dedup_group,
            state=self.state,
            noise_score=self.noise_score,
            since=self.last_state_change_at,
            suppressed_count=self.suppressed_count,
            last_volume=self.last_volume,
            severity_scope=self.severity_scope,
            strategy=self.strategy,
            thresholds=self.dynamic_thresholds,
            robust_high_streak=self.robust_high_streak,
            consecutive_stable=self.consecutive_stable,
            last_eval_at=self.last_eval_at,
        )


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class GroupStatus:
    """Immutable view of a group published after each evaluation."""

    dedup_group: str
    state: SuppressionState
    noise_score: float
    since: Optional[datetime]
    suppressed_count: int
    last_volume: float
    severity_scope: Optional[str]
    strategy: Optional[str]
    thresholds: Optional[DynamicThresholds]
    robust_high_streak: int
    consecutive_stable: int
    last_eval_at: Optional[datetime]

    @property
    def suppressed(self) -> bool:
        return self.state is SuppressionState.SUPPRESSED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "dedup_group": self.dedup_group,
            "suppressed": self.suppressed,
            "state": self.state.value,
            "noise_score": self.noise_score,
            "mode": "MUTE" if self.suppressed else "NONE",
            "since": _iso(self.since),
            "suppressed_count": self.suppressed_count,
            "last_volume": self.last_volume,
            "severity_scope": self.severity_scope,
            "strategy": self.strategy,
            "thresholds": self.thresholds.as_dict() if self.thresholds else None,
            "robust_high_streak": self.robust_high_streak,
            "consecutive_stable": self.consecutive_stable,
            "last_eval_at": _iso(self.last_eval_at),
        }


@dataclass(frozen=True)
class GroupResult:
    dedup_group: str
    state: Optional[SuppressionState]
    previous_state: Optional[SuppressionState] = None
    noise_score: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    transitioned: bool = False
    skipped: bool = False
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "dedup_group": self.dedup_group,
            "state": self.state.value if self.state else None,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "noise_score": self.noise_score,
            "high": self.high,
            "low": self.low,
            "transitioned": self.transitioned,
            "skipped": self.skipped,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class BatchResult:
    evaluated_at: datetime
    results: List[GroupResult]
    transitions: List[TransitionRecord]
    duration_ms: float

    @property
    def skipped(self) -> List[str]:
        return [r.dedup_group for r in self.results if r.skipped]

    def get(self, group_id: str) -> Optional[GroupResult]:
        for r in self.results:
            if r.dedup_group == group_id:
                return r
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "evaluated_at": self.evaluated_at.isoformat(),
            "results": [r.as_dict() for r in self.results],
            "transitions": [t.as_dict() for t in self.transitions],
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
        }
