from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class ChangeEvent:
    type: str
    action: str
    calendar_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "action": self.action,
            "calendarId": self.calendar_id,
            "data": self.payload,
        }


class ChangeBroadcaster:
    def __init__(self, max_queue_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self._lock = threading.Lock()
        self._subscribers: dict[str, set[queue.Queue]] = {}

    def subscribe(self, calendar_id: str) -> queue.Queue:
        subscriber: queue.Queue = queue.Queue(maxsize=self.max_queue_size)
        with self._lock:
            self._subscribers.setdefault(calendar_id, set()).add(subscriber)
        return subscriber

    def unsubscribe(self, calendar_id: str, subscriber: queue.Queue) -> None:
        with self._lock:
            subscribers = self._subscribers.get(calendar_id)
            if not subscribers:
                return
            subscribers.discard(subscriber)
            if not subscribers:
                self._subscribers.pop(calendar_id, None)

    def subscriber_count(self, calendar_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(calendar_id, ()))

    def publish(self, event: ChangeEvent) -> int:
        with self._lock:
            subscribers = list(self._subscribers.get(event.calendar_id, ()))
        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber.put_nowait(event)
                delivered += 1
            except queue.Full:
                logger.warning("Dropping %s/%s event for slow subscriber", event.type, event.action)
        return delivered
