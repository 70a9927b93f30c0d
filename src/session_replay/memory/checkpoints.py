from __future__ import annotations

import copy
from datetime import datetime
from typing import Callable, Iterable
from uuid import uuid4

from session_replay.memory.events import EventEmitter
from session_replay.memory.models import MessageRecord, SessionContext, Snapshot


class CheckpointManager:
    def __init__(self, events: EventEmitter | None, *, clock: Callable[[], datetime]):
        self._events = events
        self._clock = clock
        self._snapshots: dict[str, Snapshot] = {}

    def create_checkpoint(
        self,
        session_id: str,
        context: SessionContext,
        records: Iterable[MessageRecord],
        *,
        name: str | None = None,
    ) -> str:
        checkpoint_id = f"checkpoint-{uuid4()}"
        snapshot = Snapshot(
            id=checkpoint_id,
            name=name,
            session_id=session_id,
            context=copy.deepcopy(context),
            messages=tuple(copy.deepcopy(list(records))),
            created_at=self._clock(),
        )
        self._snapshots[checkpoint_id] = snapshot
        if self._events is not None:
            self._events.emit(
                session_id,
                "checkpoint.created",
                {"session_id": session_id, "checkpoint_id": checkpoint_id, "name": name},
            )
        return checkpoint_id

    def restore(self, checkpoint_id: str) -> Snapshot | None:
        snapshot = self._snapshots.get(checkpoint_id)
        if snapshot is None:
            return None
        # Callers get their own copy so the stored snapshot stays read-only.
        return copy.deepcopy(snapshot)

    def for_session(self, checkpoint_ids: Iterable[str]) -> list[Snapshot]:
        results: list[Snapshot] = []
        for checkpoint_id in checkpoint_ids:
            snapshot = self.restore(checkpoint_id)
            if snapshot is not None:
                results.append(snapshot)
        return results
