from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable

from session_replay.memory.models import CachedResponse


class ResponseCache:
    """Per-session response cache keyed by the exact prompt string.

    Expiry is checked lazily on read; :meth:`prune` removes stale entries eagerly.
    """

    def __init__(self, clock: Callable[[], datetime]):
        self._clock = clock
        self._entries: dict[str, list[CachedResponse]] = {}
        self._lock = threading.Lock()

    def put(self, session_id: str, prompt: str, response: str, message_id: str, ttl: float) -> CachedResponse:
        cached = CachedResponse(
            prompt=prompt,
            response=response,
            message_id=message_id,
            timestamp=self._clock(),
            ttl=ttl,
        )
        with self._lock:
            self._entries.setdefault(session_id, []).append(cached)
        return cached

    def get(self, session_id: str, prompt: str) -> CachedResponse | None:
        now = self._clock()
        with self._lock:
            bucket = list(self._entries.get(session_id, ()))
        for cached in reversed(bucket):
            if cached.prompt == prompt and cached.is_valid(now):
                return cached
        return None

    def prune(self, session_id: str | None = None) -> int:
        now = self._clock()
        removed = 0
        with self._lock:
            session_ids = [session_id] if session_id is not None else list(self._entries)
            for sid in session_ids:
                bucket = self._entries.get(sid)
                if bucket is None:
                    continue
                valid = [c for c in bucket if c.is_valid(now)]
                removed += len(bucket) - len(valid)
                if valid:
                    self._entries[sid] = valid
                else:
                    del self._entries[sid]
        return removed

    def drop_session(self, session_id: str) -> int:
        with self._lock:
            return len(self._entries.pop(session_id, ()))
