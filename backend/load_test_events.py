# -*- coding: utf-8 -*-
"""
Load Test Events
Non-blocking publish/subscribe channel for load test lifecycle notifications
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class LoadTestEventType(Enum):
    PHASE_CHANGED = "phase_changed"
    USER_COMPLETED = "user_completed"
    SYSTEM_STRESS = "system_stress"
    TEST_COMPLETED = "test_completed"


@dataclass
class LoadTestEvent:
    type: LoadTestEventType
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class EventSubscription:
    """
    A queue of events for one consumer. Consumers either drain it
    synchronously or await the next event.
    """

    def __init__(self, event_types: Optional[Iterable[LoadTestEventType]] = None, max_size: int = 0):
        self.event_types = set(event_types) if event_types else None
        self._queue: "asyncio.Queue[LoadTestEvent]" = asyncio.Queue(maxsize=max_size)
        self.dropped = 0

    def wants(self, event: LoadTestEvent) -> bool:
        return self.event_types is None or event.type in self.event_types

    def offer(self, event: LoadTestEvent):
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug(f"Subscription full, dropped {event.type.value} event")

    def drain(self) -> List[LoadTestEvent]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    async def get(self, timeout: Optional[float] = None) -> LoadTestEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def __len__(self) -> int:
        return self._queue.qsize()


class LoadTestEventBus:
    """Fan-out of events to subscriptions; publishing never blocks"""

    def __init__(self):
        self._subscriptions: List[EventSubscription] = []
        self._lock = threading.Lock()

    def subscribe(self, *event_types: LoadTestEventType, max_size: int = 0) -> EventSubscription:
        subscription = EventSubscription(event_types or None, max_size=max_size)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event_type: LoadTestEventType, payload: Dict[str, Any]) -> LoadTestEvent:
        event = LoadTestEvent(type=event_type, payload=payload)
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            if subscription.wants(event):
                subscription.offer(event)
        return event
