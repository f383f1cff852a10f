from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from ..metrics.prometheus import GovernanceMetrics

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Fixed-interval ticker with an explicit stop token.

    Each tick dispatches ``fn`` on a worker thread. A tick that fires while the
    previous run is still executing is dropped, never queued. ``run_once`` runs
    ``fn`` inline for deterministic stepping and honours the same rule.
    """

    def __init__(
        self,
        name: str,
        interval_s: float,
        fn: Callable[[], Any],
        metrics: Optional[GovernanceMetrics] = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError(f"{name}: interval must be > 0")
        self.name = name
        self.interval_s = interval_s
        self.fn = fn
        self.metrics = metrics
        self.stop_token = threading.Event()
        self._busy = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.failures = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self.stop_token.clear()
        self._thread = threading.Thread(target=self._loop, name=f"ticker-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"Started periodic task {self.name} every {self.interval_s}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        self.stop_token.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info(f"Stopped periodic task {self.name}")

    def _loop(self) -> None:
        while not self.stop_token.wait(self.interval_s):
            self.tick()

    def _drop(self) -> None:
        self.dropped += 1
        if self.metrics is not None:
            self.metrics.ticks_dropped_total.labels(task=self.name).inc()
        logger.warning(f"Dropped tick for {self.name}: previous run still in flight")

    def tick(self) -> bool:
        """Dispatch one run in the background; False if the tick was dropped."""
        if not self._busy.acquire(blocking=False):
            self._drop()
            return False
        threading.Thread(target=self._execute, name=f"run-{self.name}", daemon=True).start()
        return True

    def run_once(self) -> Any:
        """Run inline; returns the result, or None if a run is already in flight."""
        if not self._busy.acquire(blocking=False):
            self._drop()
            return None
        return self._execute()

    def _execute(self) -> Any:
        try:
            result = self.fn()
            self.runs += 1
            return result
        except Exception:
            self.failures += 1
            logger.exception(f"Periodic task {self.name} failed")
            return None
        finally:
            self._busy.release()
