from __future__ import annotations

import copy
import itertools
import threading
from datetime import datetime
from typing import Callable
from uuid import uuid4

from loguru import logger

from session_replay.errors import NotFoundError, Result, SessionExistsError
from session_replay.memory.cache import ResponseCache
from session_replay.memory.checkpoints import CheckpointManager
from session_replay.memory.events import EventEmitter, utc_now
from session_replay.memory.models import (
    CachedResponse,
    ConversationHistory,
    ForkPoint,
    ForkResult,
    Message,
    MessageMetadata,
    MessageRecord,
    Session,
    SessionContext,
    SessionLineage,
    SessionStatus,
    Snapshot,
)

DEFAULT_CACHE_TTL_SECONDS = 3600.0


class ConversationStore:
    """In-memory owner of sessions, message records, forks, checkpoints and cached responses.

    Records live in a flat arena keyed by id; each session keeps the ordered ids
    of its own chain. Forking copies records into fresh ids, so no record is
    ever shared between sessions. Every mutation runs under a single re-entrant
    lock, which keeps add/fork/checkpoint atomic relative to each other.
    """

    def __init__(
        self,
        events: EventEmitter | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        strict_parents: bool = True,
    ):
        self._events = events
        self._clock = clock
        self._strict_parents = strict_parents
        self._sessions: dict[str, Session] = {}
        self._records: dict[str, MessageRecord] = {}
        self._fork_points: dict[str, ForkPoint] = {}
        self._cache = ResponseCache(clock)
        self._checkpoints = CheckpointManager(events, clock=clock)
        self._message_counter = itertools.count(1)
        self._lock = threading.RLock()

    # -- sessions ---------------------------------------------------------

    def save_session(
        self,
        session_id: str,
        parent_id: str | None = None,
        context: SessionContext | None = None,
    ) -> Result[None]:
        with self._lock:
            if session_id in self._sessions:
                return Result.fail(SessionExistsError(f"Session {session_id} already exists"))

            parent = self._sessions.get(parent_id) if parent_id else None
            if parent_id and parent is None:
                if self._strict_parents:
                    return Result.fail(NotFoundError(f"Parent session {parent_id} not found"))
                logger.debug(f"Parent session {parent_id} not found; registering {session_id} unlinked")

            initial = copy.deepcopy(context) if context is not None else SessionContext()
            seed_history = list(initial.history)
            initial.history = []
            now = self._clock()
            self._sessions[session_id] = Session(
                id=session_id,
                parent_id=parent_id,
                created_at=now,
                last_accessed_at=now,
                context=initial,
            )
            if parent is not None:
                parent.child_ids.append(session_id)

            for message in seed_history:
                self._append_record(session_id, message, cached=False, tokens_used=None)

        self._emit(session_id, "session.created", {"session_id": session_id, "parent_session_id": parent_id})
        return Result.success(None)

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session is not None else None

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def list_sessions(self) -> list[Session]:
        with self._lock:
            sessions = [copy.deepcopy(s) for s in self._sessions.values()]
        return sorted(sessions, key=lambda s: s.last_accessed_at, reverse=True)

    def set_status(self, session_id: str, status: SessionStatus) -> Result[None]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return Result.fail(_session_not_found(session_id))
            session.status = status
        return Result.success(None)

    def get_context(self, session_id: str) -> Result[SessionContext]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return Result.fail(_session_not_found(session_id))
            return Result.success(copy.deepcopy(session.context))

    def replace_history(self, session_id: str, history: list[Message]) -> Result[None]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return Result.fail(_session_not_found(session_id))
            session.context.history = list(history)
            session.last_accessed_at = self._clock()
        return Result.success(None)

    # -- messages ---------------------------------------------------------

    def add_message(
        self,
        session_id: str,
        message: Message,
        *,
        cached: bool = False,
        tokens_used: int | None = None,
    ) -> Result[MessageRecord]:
        with self._lock:
            if session_id not in self._sessions:
                return Result.fail(_session_not_found(session_id))
            record = self._append_record(session_id, message, cached=cached, tokens_used=tokens_used)
            snapshot = copy.deepcopy(record)

        self._emit(
            session_id,
            "message.appended",
            {"session_id": session_id, "message_id": snapshot.id, "role": snapshot.role},
        )
        return Result.success(snapshot)

    def get_message(self, message_id: str) -> Result[MessageRecord]:
        with self._lock:
            record = self._records.get(message_id)
            if record is None:
                return Result.fail(NotFoundError(f"Message {message_id} not found"))
            return Result.success(copy.deepcopy(record))

    def _append_record(
        self,
        session_id: str,
        message: Message,
        *,
        cached: bool,
        tokens_used: int | None,
    ) -> MessageRecord:
        session = self._sessions[session_id]
        previous_id = session.message_ids[-1] if session.message_ids else None
        record = MessageRecord(
            id=self._next_message_id(session_id),
            session_id=session_id,
            message=message,
            metadata=MessageMetadata(generated_at=self._clock(), cached=cached, tokens_used=tokens_used),
            parent_message_id=previous_id,
        )
        if previous_id is not None:
            self._records[previous_id].child_message_ids.append(record.id)

        self._records[record.id] = record
        session.message_ids.append(record.id)
        session.context.history.append(message)
        session.last_accessed_at = self._clock()
        return record

    def _next_message_id(self, session_id: str) -> str:
        return f"msg-{session_id}-{next(self._message_counter)}"

    # -- forks ------------------------------------------------------------

    def fork_session(self, session_id: str, at_message_id: str | None = None) -> Result[ForkResult]:
        with self._lock:
            source = self._sessions.get(session_id)
            if source is None:
                return Result.fail(_session_not_found(session_id))

            if at_message_id is None:
                fork_index = len(source.message_ids)
            elif at_message_id in source.message_ids:
                fork_index = source.message_ids.index(at_message_id) + 1
            else:
                return Result.fail(
                    NotFoundError(f"Message {at_message_id} not found in session {session_id}")
                )

            new_session_id = f"session-fork-{uuid4()}"
            now = self._clock()
            context = copy.deepcopy(source.context)
            context.history = []
            forked = Session(
                id=new_session_id,
                parent_id=session_id,
                created_at=now,
                last_accessed_at=now,
                context=context,
            )
            self._sessions[new_session_id] = forked
            source.child_ids.append(new_session_id)

            previous_copy: MessageRecord | None = None
            for source_id in source.message_ids[:fork_index]:
                original = self._records[source_id]
                duplicate = MessageRecord(
                    id=self._next_message_id(new_session_id),
                    session_id=new_session_id,
                    message=original.message,
                    metadata=copy.deepcopy(original.metadata),
                    parent_message_id=previous_copy.id if previous_copy is not None else None,
                )
                if previous_copy is not None:
                    previous_copy.child_message_ids.append(duplicate.id)
                self._records[duplicate.id] = duplicate
                forked.message_ids.append(duplicate.id)
                context.history.append(original.message)
                previous_copy = duplicate

            fork_message_id = source.message_ids[fork_index - 1] if fork_index > 0 else None
            forked.fork_point_ids = list(source.fork_point_ids)
            if fork_message_id is not None:
                self._records[fork_message_id].is_fork_point = True
                fork_point = self._fork_points.get(fork_message_id)
                if fork_point is None:
                    fork_point = ForkPoint(
                        message_id=fork_message_id,
                        original_session_id=session_id,
                        forked_session_ids=[],
                        timestamp=now,
                    )
                    self._fork_points[fork_message_id] = fork_point
                    source.fork_point_ids.append(fork_message_id)
                fork_point.forked_session_ids.append(new_session_id)
                if fork_message_id not in forked.fork_point_ids:
                    forked.fork_point_ids.append(fork_message_id)

            result_context = copy.deepcopy(context)

        logger.info(f"Forked session {session_id} into {new_session_id} at message {fork_message_id or '-'}")
        self._emit(
            session_id,
            "session.forked",
            {
                "session_id": session_id,
                "new_session_id": new_session_id,
                "message_id": fork_message_id,
                "copied_messages": fork_index,
            },
        )
        return Result.success(ForkResult(new_session_id=new_session_id, context=result_context))

    # -- history ----------------------------------------------------------

    def get_session_lineage(self, session_id: str) -> Result[SessionLineage]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return Result.fail(_session_not_found(session_id))
            return Result.success(self._lineage(session))

    def get_conversation_history(self, session_id: str) -> Result[ConversationHistory]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return Result.fail(_session_not_found(session_id))
            history = ConversationHistory(
                session_id=session_id,
                messages=[copy.deepcopy(self._records[mid]) for mid in session.message_ids],
                fork_points=[copy.deepcopy(self._fork_points[mid]) for mid in session.fork_point_ids],
                lineage=self._lineage(session),
                context=copy.deepcopy(session.context),
            )
        return Result.success(history)

    def _lineage(self, session: Session) -> SessionLineage:
        return SessionLineage(
            session_id=session.id,
            parent_id=session.parent_id,
            child_ids=tuple(session.child_ids),
            created_at=session.created_at,
            message_count=len(session.message_ids),
            fork_count=len(session.fork_point_ids),
            last_accessed_at=session.last_accessed_at,
        )

    def build_session_summary(self, session_id: str) -> Result[dict]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return Result.fail(_session_not_found(session_id))
            records = [self._records[mid] for mid in session.message_ids]

            user_count = 0
            assistant_count = 0
            last_user_preview = ""
            last_assistant_preview = ""
            for record in records:
                if record.role == "user":
                    user_count += 1
                    last_user_preview = _preview_content(record.content)
                elif record.role == "assistant":
                    assistant_count += 1
                    last_assistant_preview = _preview_content(record.content)

            return Result.success(
                {
                    "session_id": session_id,
                    "status": session.status,
                    "parent_session_id": session.parent_id,
                    "created_at": session.created_at.isoformat(timespec="seconds"),
                    "last_accessed_at": session.last_accessed_at.isoformat(timespec="seconds"),
                    "message_count": len(records),
                    "user_message_count": user_count,
                    "assistant_message_count": assistant_count,
                    "fork_count": len(session.fork_point_ids),
                    "checkpoint_count": len(session.checkpoint_ids),
                    "last_user_preview": last_user_preview,
                    "last_assistant_preview": last_assistant_preview,
                }
            )

    # -- response cache ---------------------------------------------------

    def cache_response(
        self,
        session_id: str,
        prompt: str,
        response: str,
        message_id: str,
        ttl: float = DEFAULT_CACHE_TTL_SECONDS,
    ) -> Result[CachedResponse]:
        return Result.success(self._cache.put(session_id, prompt, response, message_id, ttl))

    def get_cached_response(self, session_id: str, prompt: str) -> Result[CachedResponse | None]:
        return Result.success(self._cache.get(session_id, prompt))

    def prune_cache(self, session_id: str | None = None) -> int:
        removed = self._cache.prune(session_id)
        if removed:
            logger.debug(f"Pruned {removed} expired cached response(s)")
        return removed

    def drop_cache(self, session_id: str) -> int:
        """Forget every cached response of ``session_id``, expired or not."""
        dropped = self._cache.drop_session(session_id)
        if dropped:
            logger.debug(f"Dropped {dropped} cached response(s) of session {session_id}")
        return dropped

    # -- checkpoints ------------------------------------------------------

    def create_checkpoint(self, session_id: str, name: str | None = None) -> Result[str]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return Result.fail(_session_not_found(session_id))
            checkpoint_id = self._checkpoints.create_checkpoint(
                session_id,
                session.context,
                [self._records[mid] for mid in session.message_ids],
                name=name,
            )
            session.checkpoint_ids.append(checkpoint_id)
        return Result.success(checkpoint_id)

    def restore_checkpoint(self, checkpoint_id: str) -> Result[Snapshot]:
        snapshot = self._checkpoints.restore(checkpoint_id)
        if snapshot is None:
            return Result.fail(NotFoundError(f"Checkpoint {checkpoint_id} not found"))
        return Result.success(snapshot)

    def list_checkpoints(self, session_id: str) -> Result[list[Snapshot]]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return Result.fail(_session_not_found(session_id))
            checkpoint_ids = list(session.checkpoint_ids)
        return Result.success(self._checkpoints.for_session(checkpoint_ids))

    def _emit(self, session_id: str, event_type: str, payload: dict) -> None:
        if self._events is not None:
            self._events.emit(session_id, event_type, payload)


def _session_not_found(session_id: str) -> NotFoundError:
    return NotFoundError(f"Session {session_id} not found")


def _preview_content(content: str, max_chars: int = 140) -> str:
    text = " ".join(content.split())
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."
