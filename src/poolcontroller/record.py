"""Human-readable events correlated with reconciliation outcomes.

Events are kept in a bounded in-memory ring (readable by the CLI and tests)
and mirrored to the log, normal events at INFO and warnings at WARNING.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

logger = logging.getLogger(__name__)

MAX_RETAINED_EVENTS = 1000


class EventType(str, Enum):
    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass(frozen=True)
class Event:
    """One recorded event about an object."""

    object_key: str
    type: EventType
    reason: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventRecorder:
    """Thread-safe event sink shared by all reconcilers."""

    def __init__(self, max_events: int = MAX_RETAINED_EVENTS) -> None:
        self._events: deque[Event] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def eventf(self, object_key: str, reason: str, message: str) -> None:
        self._record(object_key, EventType.NORMAL, reason, message)

    def warnf(self, object_key: str, reason: str, message: str) -> None:
        self._record(object_key, EventType.WARNING, reason, message)

    def _record(self, object_key: str, event_type: EventType, reason: str, message: str) -> None:
        event = Event(object_key=object_key, type=event_type, reason=reason, message=message)
        with self._lock:
            self._events.append(event)

        extra = {"object": object_key, "reason": reason, "event_type": event_type.value}
        if event_type == EventType.WARNING:
            logger.warning(message, extra=extra)
        else:
            logger.info(message, extra=extra)

    def events(self, object_key: str | None = None) -> list[Event]:
        """Return retained events, oldest first, optionally for one object."""
        with self._lock:
            events = list(self._events)
        if object_key is None:
            return events
        return [e for e in events if e.object_key == object_key]

    def reasons(self, object_key: str | None = None) -> list[str]:
        return [e.reason for e in self.events(object_key)]
