"""Fire-and-forget execution of gateway calls with a failure-ratio breaker."""
from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Callable, Deque, Dict, Optional

from ..metrics.prometheus import GovernanceMetrics

logger = logging.getLogger(__name__)

WINDOW_SIZE = 50
MIN_SAMPLES = 10
DISABLE_RATIO = 0.6
ENABLE_RATIO = 0.2
DEFAULT_MAX_PENDING = 100


class BackgroundWriter:
    """
    Runs persistence calls on a single worker thread.

    Outcomes feed a sliding window of the last 50 calls. With at least 10
    samples, a failure ratio >= 0.6 disables writes and a ratio < 0.2
    re-enables them. Callers keep submitting ``probe`` calls while disabled.

    A call that has not finished ``timeout_s`` after submission counts as a
    failure; its eventual outcome is ignored. At most ``max_pending`` calls
    wait for the worker, and overflow is dropped and counted as a failure.
    """

    def __init__(self, metrics: Optional[GovernanceMetrics] = None, timeout_s: float = 3.0,
                 synchronous: bool = False, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self.metrics = metrics or GovernanceMetrics()
        self.timeout_s = timeout_s
        self.synchronous = synchronous
        self.max_pending = max_pending
        self._executor: Optional[ThreadPoolExecutor] = None
        if not synchronous:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="persistence")
        self._outcomes: Deque[int] = deque(maxlen=WINDOW_SIZE)
        self._lock = threading.Lock()
        self._pending = 0
        self.disabled = False

    def submit(self, action: str, fn: Callable[..., Any], *args: Any,
               probe: bool = False, on_success: Optional[Callable[[], None]] = None) -> Optional[Future]:
        if self.disabled and not probe:
            logger.debug(f"Persistence disabled; skipping {action}")
            return None
        if self._executor is None:
            return self._run_inline(action, fn, args, on_success)

        with self._lock:
            full = self._pending >= self.max_pending
            if not full:
                self._pending += 1
        if full:
            logger.warning(f"Persistence backlog at {self.max_pending}; dropping {action}")
            self.metrics.persistence_dropped_total.labels(action=action).inc()
            self.record(False)
            return None

        settled = threading.Lock()

        def _settle(ok: bool) -> bool:
            # whichever of the call and its watchdog finishes first decides the outcome
            if not settled.acquire(blocking=False):
                return False
            self.record(ok)
            return True

        def _expire() -> None:
            if _settle(False):
                logger.warning(f"Persistence call {action} exceeded {self.timeout_s}s")
                self.metrics.persistence_timeouts_total.labels(action=action).inc()

        watchdog = threading.Timer(self.timeout_s, _expire)
        watchdog.daemon = True

        def _call() -> Any:
            try:
                result = fn(*args)
            except Exception:
                logger.exception(f"Persistence call {action} failed")
                self.metrics.persistence_failures_total.labels(action=action).inc()
                _settle(False)
                raise
            finally:
                watchdog.cancel()
                with self._lock:
                    self._pending -= 1
            _settle(True)
            if on_success is not None:
                on_success()
            return result

        watchdog.start()
        return self._executor.submit(_call)

    def _run_inline(self, action: str, fn: Callable[..., Any], args: tuple,
                    on_success: Optional[Callable[[], None]]) -> Future:
        fut: Future = Future()
        try:
            result = fn(*args)
        except Exception as exc:
            logger.exception(f"Persistence call {action} failed")
            self.metrics.persistence_failures_total.labels(action=action).inc()
            self.record(False)
            fut.set_exception(exc)
            return fut
        self.record(True)
        if on_success is not None:
            on_success()
        fut.set_result(result)
        return fut

    def record(self, ok: bool) -> None:
        with self._lock:
            self._outcomes.append(0 if ok else 1)
            size = len(self._outcomes)
            ratio = sum(self._outcomes) / size if size else 0.0
            if not ok and size >= MIN_SAMPLES and ratio >= DISABLE_RATIO and not self.disabled:
                self.disabled = True
                logger.error(f"Persistence disabled: failure ratio {ratio:.2f} over {size} calls")
            elif ok and self.disabled and size >= MIN_SAMPLES and ratio < ENABLE_RATIO:
                self.disabled = False
                logger.info(f"Persistence re-enabled: failure ratio {ratio:.2f}")

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._outcomes)
            failures = sum(self._outcomes)
            pending = self._pending
        return {
            "size": size,
            "failures": failures,
            "failure_ratio": round(failures / size, 4) if size else 0.0,
            "disabled": self.disabled,
            "pending": pending,
        }

    def flush(self) -> bool:
        """Wait up to ``timeout_s`` for queued writes; False if they did not drain."""
        if self._executor is None:
            return True
        marker = self._executor.submit(lambda: None)
        try:
            marker.result(timeout=self.timeout_s)
        except FuturesTimeout:
            logger.warning("Timed out waiting for persistence queue to drain")
            return False
        return True

    def close(self) -> None:
        """Drain what finishes in time, then drop the rest; a hung call never blocks shutdown."""
        if self._executor is None:
            return
        if not self.flush():
            logger.warning(f"Abandoning {self.stats()['pending']} queued persistence calls")
        self._executor.shutdown(wait=False, cancel_futures=True)
