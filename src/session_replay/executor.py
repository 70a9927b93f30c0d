from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable
from uuid import uuid4

from session_replay.compaction import CompactionStrategy, NoneCompactionStrategy
from session_replay.errors import ExecutionError, NotFoundError, Result, SessionInactiveError
from session_replay.executor_config import ExecutorConfig
from session_replay.logging_config import session_logger
from session_replay.memory.events import EventEmitter, utc_now
from session_replay.memory.models import ConversationHistory, ForkResult, Message, SessionContext
from session_replay.memory.store import ConversationStore
from session_replay.output_sanitizer import OutputSanitizer, ToolUse
from session_replay.process_runner import ProcessRunner
from session_replay.prompt_builder import PromptBuilder
from session_replay.timeouts import resolve_timeout
from session_replay.tool_policy import ToolPolicy


@dataclass(frozen=True)
class ExecuteOptions:
    timeout_seconds: float | None = None
    operation_type: str | None = None
    tools: tuple[str, ...] | None = None
    use_cache: bool | None = None


@dataclass(frozen=True)
class ExecutionMetadata:
    start_time: datetime
    end_time: datetime
    duration_seconds: float
    model: str
    cached: bool
    timeout_seconds: float


@dataclass(frozen=True)
class ExecuteResult:
    output: str
    metadata: ExecutionMetadata
    user_message_id: str
    assistant_message_id: str
    tool_uses: list[ToolUse] = field(default_factory=list)
    truncated: bool = False


class SessionExecutor:
    """Runs one replayed turn at a time per session against the stateless CLI.

    Each ``execute`` rebuilds the full transcript from the store, spawns one
    process, sanitizes its output and commits the user/assistant pair only on
    success. Calls on the same session are serialized; different sessions run
    concurrently.
    """

    def __init__(
        self,
        config: ExecutorConfig,
        *,
        store: ConversationStore,
        runner: ProcessRunner,
        policy: ToolPolicy | None = None,
        sanitizer: OutputSanitizer | None = None,
        prompt_builder: PromptBuilder | None = None,
        compaction: CompactionStrategy | None = None,
        events: EventEmitter | None = None,
    ):
        self._config = config
        self._store = store
        self._runner = runner
        self._policy = policy or ToolPolicy()
        self._sanitizer = sanitizer or OutputSanitizer()
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._compaction = compaction or NoneCompactionStrategy()
        self._events = events
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def policy(self) -> ToolPolicy:
        return self._policy

    def create_session(
        self,
        session_id: str | None = None,
        *,
        system_prompt: str | None = None,
        parent_id: str | None = None,
        history: Iterable[Message] | None = None,
    ) -> Result[str]:
        session_id = session_id or f"session-{uuid4()}"
        context = SessionContext(
            system_prompt=system_prompt if system_prompt is not None else self._config.system_prompt,
            history=list(history or ()),
            working_directory=self._config.working_directory,
        )
        saved = self._store.save_session(session_id, parent_id=parent_id, context=context)
        if not saved.ok:
            return Result.fail(saved.error)
        session_logger(session_id).info(f"Created session {session_id}")
        return Result.success(session_id)

    async def execute(
        self,
        session_id: str,
        prompt: str,
        options: ExecuteOptions | None = None,
    ) -> Result[ExecuteResult]:
        options = options or ExecuteOptions()
        # Invalid operation types are caller bugs and raise before any work starts.
        timeout_seconds = resolve_timeout(
            prompt,
            explicit=options.timeout_seconds,
            operation_type=options.operation_type,
            session_default=self._config.default_timeout_seconds,
        )
        if not self._store.has_session(session_id):
            return Result.fail(NotFoundError(f"Session {session_id} not found"))

        async with self._lock_for(session_id):
            try:
                return await self._execute_locked(session_id, prompt, options, timeout_seconds)
            except Exception as ex:
                session_logger(session_id).error(f"Unexpected failure executing turn: {ex}")
                self._mark_error(session_id, ex)
                return Result.fail(ExecutionError(f"Execution failed: {ex}"))

    async def _execute_locked(
        self,
        session_id: str,
        prompt: str,
        options: ExecuteOptions,
        timeout_seconds: float,
    ) -> Result[ExecuteResult]:
        session = self._store.get_session(session_id)
        if session is None:
            return Result.fail(NotFoundError(f"Session {session_id} not found"))
        if session.status == "terminated":
            return Result.fail(SessionInactiveError(f"Session {session_id} is terminated"))

        if self._config.auto_compact and len(session.context.history) > self._config.compact_threshold_messages:
            await self._compact_locked(session_id, self._compaction)

        context = self._store.get_context(session_id).unwrap()
        payload = self._prompt_builder.build(context, prompt)
        session_logger(session_id).debug(
            f"Replaying {len(context.history)} messages"
            f" ({len(payload):,} chars, timeout={timeout_seconds:g}s)"
        )

        start_time = utc_now()
        started = time.monotonic()
        use_cache = self._config.response_cache_enabled if options.use_cache is None else options.use_cache

        if use_cache:
            cached = self._store.get_cached_response(session_id, payload).value
            if cached is not None:
                session_logger(session_id).debug(f"Cache hit (message {cached.message_id})")
                return self._commit_turn(
                    session_id,
                    prompt,
                    cached.response,
                    payload=payload,
                    tool_uses=[],
                    truncated=False,
                    cached=True,
                    store_in_cache=False,
                    start_time=start_time,
                    started=started,
                    timeout_seconds=timeout_seconds,
                )

        policy = self._policy.narrowed(options.tools) if options.tools is not None else self._policy
        self._emit(session_id, "input.sent", {"session_id": session_id, "chars": len(payload)})

        run = await self._runner.run(
            payload,
            model=self._config.model,
            policy=policy,
            timeout_seconds=timeout_seconds,
            session_id=session_id,
        )
        if not run.ok:
            self._mark_error(session_id, run.error)
            return Result.fail(run.error)

        cleaned = self._sanitizer.clean(run.value.stdout)
        return self._commit_turn(
            session_id,
            prompt,
            cleaned.text,
            payload=payload,
            tool_uses=cleaned.tool_uses,
            truncated=cleaned.truncated,
            cached=False,
            store_in_cache=use_cache,
            start_time=start_time,
            started=started,
            timeout_seconds=timeout_seconds,
        )

    def _commit_turn(
        self,
        session_id: str,
        prompt: str,
        output: str,
        *,
        payload: str,
        tool_uses: list[ToolUse],
        truncated: bool,
        cached: bool,
        store_in_cache: bool,
        start_time: datetime,
        started: float,
        timeout_seconds: float,
    ) -> Result[ExecuteResult]:
        user_record = self._store.add_message(
            session_id, Message(role="user", content=prompt, timestamp=start_time)
        ).unwrap()
        end_time = utc_now()
        assistant_record = self._store.add_message(
            session_id,
            Message(role="assistant", content=output, timestamp=end_time),
            cached=cached,
        ).unwrap()

        if store_in_cache:
            self._store.cache_response(
                session_id,
                payload,
                output,
                assistant_record.id,
                ttl=self._config.response_cache_ttl_seconds,
            )

        self._store.set_status(session_id, "active")
        metadata = ExecutionMetadata(
            start_time=start_time,
            end_time=end_time,
            duration_seconds=time.monotonic() - started,
            model=self._config.model,
            cached=cached,
            timeout_seconds=timeout_seconds,
        )
        self._emit(
            session_id,
            "output.received",
            {
                "session_id": session_id,
                "message_id": assistant_record.id,
                "cached": cached,
                "tool_uses": len(tool_uses),
                "duration_seconds": metadata.duration_seconds,
            },
        )
        return Result.success(
            ExecuteResult(
                output=output,
                metadata=metadata,
                user_message_id=user_record.id,
                assistant_message_id=assistant_record.id,
                tool_uses=list(tool_uses),
                truncated=truncated,
            )
        )

    async def compact(self, session_id: str, strategy: CompactionStrategy | None = None) -> Result[int]:
        """Compact the replay history; returns how many messages were removed."""
        if not self._store.has_session(session_id):
            return Result.fail(NotFoundError(f"Session {session_id} not found"))
        async with self._lock_for(session_id):
            removed = await self._compact_locked(session_id, strategy or self._compaction)
        return Result.success(removed)

    async def _compact_locked(self, session_id: str, strategy: CompactionStrategy) -> int:
        history = self._store.get_context(session_id).unwrap().history
        compacted = await strategy.maybe_compact(list(history))
        if compacted == history:
            return 0
        self._store.replace_history(session_id, compacted)
        removed = len(history) - len(compacted)
        session_logger(session_id).info(f"Compacted replay history: {len(history)} -> {len(compacted)} messages")
        self._emit(
            session_id,
            "session.compacted",
            {"session_id": session_id, "before": len(history), "after": len(compacted)},
        )
        return removed

    def fork(self, session_id: str, at_message_id: str | None = None) -> Result[ForkResult]:
        return self._store.fork_session(session_id, at_message_id)

    def checkpoint(self, session_id: str, name: str | None = None) -> Result[str]:
        return self._store.create_checkpoint(session_id, name)

    def history(self, session_id: str) -> Result[ConversationHistory]:
        return self._store.get_conversation_history(session_id)

    def destroy(self, session_id: str) -> Result[None]:
        result = self._store.set_status(session_id, "terminated")
        if not result.ok:
            return result
        self._locks.pop(session_id, None)
        self._store.drop_cache(session_id)
        session_logger(session_id).info(f"Destroyed session {session_id}")
        self._emit(session_id, "session.destroyed", {"session_id": session_id})
        return Result.success(None)

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _mark_error(self, session_id: str, error: BaseException | None) -> None:
        if not self._store.has_session(session_id):
            return
        self._store.set_status(session_id, "error")
        self._emit(
            session_id,
            "session.error",
            {"session_id": session_id, "error": type(error).__name__, "message": str(error)},
        )

    def _emit(self, session_id: str, event_type: str, payload: dict) -> None:
        if self._events is not None:
            self._events.emit(session_id, event_type, payload)
