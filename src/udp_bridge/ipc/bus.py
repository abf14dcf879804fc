from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)

BusHandler = Callable[[str], None]


class BusAdapter(Protocol):
    """The two calls the bridge needs from a pub/sub system."""

    def publish(self, topic_name: str, data: str) -> None: ...

    def subscribe(self, topic_name: str, handler: BusHandler) -> None: ...


class LocalBus:
    """In-process bus: handlers run synchronously on the publishing thread.

    Used when no DDS backend is available and by tests.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, list[BusHandler]] = {}

    def subscribe(self, topic_name: str, handler: BusHandler) -> None:
        with self._lock:
            self._handlers.setdefault(str(topic_name), []).append(handler)

    def publish(self, topic_name: str, data: str) -> None:
        with self._lock:
            handlers = list(self._handlers.get(str(topic_name), ()))
        for handler in handlers:
            try:
                handler(str(data))
            except Exception:
                logger.exception("bus handler failed (topic=%s)", topic_name)

    def topics(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)
