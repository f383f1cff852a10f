from __future__ import annotations

import threading
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, Iterable, Mapping, Optional, Union

from ..errors import SignalFetchError


def _rate(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    if v != v:  # NaN
        return default
    return max(0.0, min(1.0, v))


@dataclass(frozen=True)
class SignalSnapshot:
    """Operational signals for one dedup group over one evaluation window."""

    ack_rate: float = 0.0
    suspected_false_rate: float = 0.0
    volume: float = 0.0
    dedup_ratio: float = 1.0
    escalation_effectiveness: float = 0.0
    severity: Optional[str] = None

    @classmethod
    def normalize(cls, raw: Union["SignalSnapshot", Mapping[str, Any], None]) -> "SignalSnapshot":
        """Clamp rates to [0, 1] and volume to >= 0; fill missing fields with defaults."""
        if isinstance(raw, SignalSnapshot):
            raw = asdict(raw)
        raw = raw or {}
        try:
            volume = max(0.0, float(raw.get("volume") or 0.0))
        except (TypeError, ValueError):
            volume = 0.0
        severity = raw.get("severity")
        return cls(
            ack_rate=_rate(raw.get("ack_rate"), 0.0),
            suspected_false_rate=_rate(raw.get("suspected_false_rate"), 0.0),
            volume=volume,
            dedup_ratio=_rate(raw.get("dedup_ratio"), 1.0),
            escalation_effectiveness=_rate(raw.get("escalation_effectiveness"), 0.0),
            severity=str(severity) if severity is not None else None,
        )

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SignalSource:
    """Provides per-group signals. Implementations may block; callers bound the wait."""

    def get_signals(self, group_id: str) -> Union[SignalSnapshot, Mapping[str, Any]]:
        raise NotImplementedError


class StaticSignalSource(SignalSource):
    def __init__(self, signals: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        self._signals: Dict[str, SignalSnapshot] = {}
        self._lock = threading.Lock()
        for group_id, snap in (signals or {}).items():
            self.set(group_id, snap)

    def set(self, group_id: str, signals: Union[SignalSnapshot, Mapping[str, Any]]) -> None:
        with self._lock:
            self._signals[group_id] = SignalSnapshot.normalize(signals)

    def get_signals(self, group_id: str) -> SignalSnapshot:
        with self._lock:
            snap = self._signals.get(group_id)
        if snap is None:
            raise SignalFetchError(group_id, "no signals registered")
        return snap


class QueueSignalSource(SignalSource):
    """Replays scripted snapshots per group; the last one repeats once the queue drains."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[SignalSnapshot]] = {}
        self._last: Dict[str, SignalSnapshot] = {}
        self._lock = threading.Lock()

    def push(self, group_id: str, signals: Union[SignalSnapshot, Mapping[str, Any]]) -> None:
        with self._lock:
            self._queues.setdefault(group_id, deque()).append(SignalSnapshot.normalize(signals))

    def extend(self, group_id: str, items: Iterable[Union[SignalSnapshot, Mapping[str, Any]]]) -> None:
        for item in items:
            self.push(group_id, item)

    def pending(self, group_id: str) -> int:
        with self._lock:
            return len(self._queues.get(group_id, ()))

    def get_signals(self, group_id: str) -> SignalSnapshot:
        with self._lock:
            q = self._queues.get(group_id)
            if q:
                self._last[group_id] = q.popleft()
            snap = self._last.get(group_id)
        if snap is None:
            raise SignalFetchError(group_id, "no signals queued")
        return snap


class CallableSignalSource(SignalSource):
    def __init__(self, fn: Callable[[str], Union[SignalSnapshot, Mapping[str, Any]]]) -> None:
        self._fn = fn

    def get_signals(self, group_id: str) -> Union[SignalSnapshot, Mapping[str, Any]]:
        return self._fn(group_id)
