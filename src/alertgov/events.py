"""In-process event bus.

Handlers run synchronously in registration order. A failing handler is logged
and skipped; it never breaks the publisher or the handlers after it.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], None]

ALERT_ACKNOWLEDGED = "alert.acknowledged"
ALERT_UNACKNOWLEDGED = "alert.unacknowledged"
SUPPRESSION_TRANSITION = "suppression.transition"
WEIGHTS_CHANGED = "weights.changed"
ALERT_ESCALATED = "alert.escalated"


class EventBus:
    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it."""
        with self._lock:
            self._handlers[topic].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._handlers[topic].remove(handler)
                except ValueError:
                    pass

        return _unsubscribe

    def publish(self, topic: str, payload: Any) -> int:
        """Deliver to every handler of ``topic``; returns how many succeeded."""
        with self._lock:
            handlers = list(self._handlers.get(topic, ()))
        delivered = 0
        for handler in handlers:
            try:
                handler(topic, payload)
                delivered += 1
            except Exception:
                logger.exception(f"Event handler failed for topic {topic}")
        return delivered

    def handler_count(self, topic: str) -> int:
        with self._lock:
            return len(self._handlers.get(topic, ()))
