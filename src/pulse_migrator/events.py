"""
Pulse Migrator Event Bus

Process-wide publish/subscribe channel for log lines and stage progress.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Tuple, Union

from pulse_migrator.logging_config import get_logger
from pulse_migrator.models import (
    LogEvent, LogLevel, ProgressEvent, StatusEvent, StageName, StageStatus
)


Event = Union[LogEvent, ProgressEvent, StatusEvent]
Subscriber = Callable[[Event], None]

logger = get_logger("events")

_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class SubscriptionHandle:
    """Returned by subscribe(); pass to unsubscribe() to remove the listener."""
    id: int


class EventBus:
    """Fan-out of events to subscribers in registration order.

    Delivery happens synchronously on the publishing thread. There is no
    buffering: a subscriber only sees events published while registered.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[Tuple[SubscriptionHandle, Subscriber]] = []
        self._ids = itertools.count(1)

    def subscribe(self, callback: Subscriber) -> SubscriptionHandle:
        """Register a subscriber."""
        with self._lock:
            handle = SubscriptionHandle(next(self._ids))
            self._subscribers.append((handle, callback))
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """Remove a subscriber. Returns False if the handle was not registered."""
        with self._lock:
            for i, (registered, _) in enumerate(self._subscribers):
                if registered == handle:
                    del self._subscribers[i]
                    return True
        return False

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: Event):
        """Deliver event to every subscriber registered right now."""
        with self._lock:
            subscribers = list(self._subscribers)

        if isinstance(event, LogEvent):
            logger.log(_LEVELS[event.level], event.message)

        for handle, callback in subscribers:
            try:
                callback(event)
            except Exception:
                # One broken listener must not starve the others
                logger.exception("Event subscriber %s failed", handle.id)

    def log(self, message: str, level: LogLevel = LogLevel.INFO):
        """Publish a log line."""
        self.publish(LogEvent(message=message, level=level))

    def progress(self, stage: StageName, status: StageStatus):
        """Publish a stage status change."""
        self.publish(ProgressEvent(stage=stage, status=status))


class EventRecorder:
    """Subscriber that keeps every event it receives. Handy for reports."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[Event] = []

    def __call__(self, event: Event):
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[Event]:
        with self._lock:
            return [e for e in self.events if e.type == event_type]

    def to_dicts(self) -> List[dict]:
        with self._lock:
            return [e.to_dict() for e in self.events]
