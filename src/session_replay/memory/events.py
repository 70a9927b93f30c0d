from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable
from uuid import uuid4

from loguru import logger


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Event:
    id: str
    session_id: str
    type: str
    payload: dict
    created_at: datetime


class EventEmitter:
    """Process-lifetime event log with optional subscribers.

    Subscriber failures are logged and never propagate to the emitter.
    """

    def __init__(self, *, max_events: int = 10_000):
        self._events: list[Event] = []
        self._max_events = max(1, max_events)
        self._subscribers: list[Callable[[Event], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[Event], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def emit(self, session_id: str, event_type: str, payload: dict) -> None:
        event = Event(
            id=str(uuid4()),
            session_id=session_id,
            type=event_type,
            payload=dict(payload),
            created_at=utc_now(),
        )
        with self._lock:
            self._events.append(event)
            if len(self._events) > self._max_events:
                del self._events[: len(self._events) - self._max_events]
            subscribers = list(self._subscribers)

        logger.debug(f"Event {event_type} for session {session_id}")
        for callback in subscribers:
            try:
                callback(event)
            except Exception as ex:
                logger.warning(f"Event subscriber failed for {event_type}: {ex}")

    def events(self, session_id: str | None = None, event_type: str | None = None) -> list[Event]:
        with self._lock:
            snapshot = list(self._events)
        return [
            e
            for e in snapshot
            if (session_id is None or e.session_id == session_id)
            and (event_type is None or e.type == event_type)
        ]
