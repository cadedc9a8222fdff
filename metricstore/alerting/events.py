"""
Alert Event Stream

Provides:
- Alert transition events
- Subscriber callbacks
- Bounded event history
- asyncio queues for external notifiers
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..index import Labels

logger = logging.getLogger("AlertEvaluator")


class AlertTransition(Enum):
    """Transitions reported on the event stream"""
    PENDING = "pending"
    FIRING = "firing"
    FIRING_REPEAT = "firing_repeat"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


@dataclass
class AlertEvent:
    """One alert state transition"""

    rule_name: str
    labels: Labels
    transition: AlertTransition
    timestamp: float
    value: Optional[float] = None
    annotations: Dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"alert_evt_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rule_name": self.rule_name,
            "labels": self.labels.to_dict(),
            "transition": self.transition.value,
            "timestamp": self.timestamp,
            "value": self.value,
            "annotations": self.annotations
        }


class AlertEventStream:
    """Fan-out of alert events to callbacks and queues"""

    def __init__(self, history_size: int = 1000, queue_size: int = 1000):
        self._subscribers: Dict[str, Callable[[AlertEvent], None]] = {}
        self._queues: List[asyncio.Queue] = []
        self._queue_size = queue_size
        self._history: deque = deque(maxlen=history_size)
        self._stats = {
            "total_published": 0,
            "total_delivered": 0,
            "dropped": 0,
            "by_transition": {}
        }

    def subscribe(self, subscriber_id: str, callback: Callable[[AlertEvent], None]) -> bool:
        self._subscribers[subscriber_id] = callback
        return True

    def unsubscribe(self, subscriber_id: str) -> bool:
        return self._subscribers.pop(subscriber_id, None) is not None

    def open_queue(self) -> asyncio.Queue:
        """Queue receiving every event published from now on"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues.append(queue)
        return queue

    def close_queue(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, event: AlertEvent) -> int:
        """Record and deliver an event; returns the number of deliveries"""
        self._history.append(event)
        key = event.transition.value
        self._stats["total_published"] += 1
        self._stats["by_transition"][key] = self._stats["by_transition"].get(key, 0) + 1

        delivered = 0
        for subscriber_id, callback in list(self._subscribers.items()):
            try:
                callback(event)
                delivered += 1
            except Exception:
                logger.exception(f"Alert subscriber {subscriber_id} failed on {key} event")

        for queue in self._queues:
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                self._stats["dropped"] += 1
                logger.warning(f"Alert event queue full, dropping {key} event for {event.rule_name}")

        self._stats["total_delivered"] += delivered
        return delivered

    def get_history(
        self,
        rule_name: Optional[str] = None,
        transition: Optional[AlertTransition] = None,
        limit: int = 100
    ) -> List[AlertEvent]:
        events = list(self._history)
        if rule_name:
            events = [e for e in events if e.rule_name == rule_name]
        if transition:
            events = [e for e in events if e.transition == transition]
        return events[-limit:]

    def clear_history(self) -> int:
        count = len(self._history)
        self._history.clear()
        return count

    def get_statistics(self) -> dict:
        return {
            "total_published": self._stats["total_published"],
            "total_delivered": self._stats["total_delivered"],
            "dropped": self._stats["dropped"],
            "history_size": len(self._history),
            "subscriber_count": len(self._subscribers),
            "queue_count": len(self._queues),
            "by_transition": dict(self._stats["by_transition"])
        }
