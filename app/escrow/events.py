# app/escrow/events.py
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger("escrow.events")

TRANSACTION_UPDATED = "transaction.updated"
TRANSACTION_DELETED = "transaction.deleted"
NOTIFICATION_CREATED = "notification.created"
MESSAGE_CREATED = "message.created"

Handler = Callable[[str, dict[str, Any]], None]


class EventBus:
    """
    In-process pub/sub so connected clients can refresh their views.

    Delivery is at-most-once and synchronous. A failing subscriber is logged
    and never breaks the write that published the event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._subscribers[topic].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._subscribers[topic]:
                    self._subscribers[topic].remove(handler)

        return unsubscribe

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        with self._lock:
            handlers = list(self._subscribers.get(topic, ())) + list(self._subscribers.get("*", ()))
        for handler in handlers:
            try:
                handler(topic, payload)
            except Exception:
                logger.exception("event subscriber failed topic=%s", topic)
