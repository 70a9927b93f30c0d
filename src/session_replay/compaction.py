from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from loguru import logger

from session_replay.memory.events import utc_now
from session_replay.memory.models import Message
from session_replay.output_sanitizer import sanitize
from session_replay.timeouts import STANDARD_REQUEST_SECONDS

if TYPE_CHECKING:
    from session_replay.process_runner import ProcessRunner

DEFAULT_KEEP_MESSAGES = 10


@runtime_checkable
class CompactionStrategy(Protocol):
    async def maybe_compact(self, messages: list[Message]) -> list[Message]: ...


class NoneCompactionStrategy:
    async def maybe_compact(self, messages: list[Message]) -> list[Message]:
        return messages


class TruncateCompactionStrategy:
    def __init__(self, keep_messages: int = DEFAULT_KEEP_MESSAGES):
        self._keep_messages = max(1, keep_messages)

    async def maybe_compact(self, messages: list[Message]) -> list[Message]:
        if len(messages) <= self._keep_messages:
            return messages
        logger.info(f"Compaction: truncating {len(messages)} messages to the last {self._keep_messages}")
        return messages[-self._keep_messages:]


class SmartCompactionStrategy:
    """Keeps every system entry (earlier summaries) plus the most recent turns."""

    def __init__(self, keep_messages: int = DEFAULT_KEEP_MESSAGES):
        self._keep_messages = max(1, keep_messages)

    async def maybe_compact(self, messages: list[Message]) -> list[Message]:
        if len(messages) <= self._keep_messages:
            return messages
        older = messages[: -self._keep_messages]
        kept_system = [m for m in older if m.role == "system"]
        logger.info(
            f"Compaction: dropping {len(older) - len(kept_system)} messages,"
            f" keeping {len(kept_system)} system entries"
        )
        return kept_system + messages[-self._keep_messages:]


class SummarizeCompactionStrategy:
    def __init__(
        self,
        runner: ProcessRunner,
        model: str,
        keep_messages: int = DEFAULT_KEEP_MESSAGES,
        timeout_seconds: float = STANDARD_REQUEST_SECONDS,
    ):
        self._runner = runner
        self._model = model
        self._keep_messages = max(1, keep_messages)
        self._timeout_seconds = timeout_seconds

    async def maybe_compact(self, messages: list[Message]) -> list[Message]:
        if len(messages) <= self._keep_messages:
            return messages

        compactable = messages[: -self._keep_messages]
        tail = messages[-self._keep_messages:]

        logger.info(f"Compaction: summarizing {len(compactable)} messages, keeping {len(tail)}")

        try:
            summary = await self._summarize(compactable)
        except Exception as ex:
            logger.warning(f"Compaction failed: {ex}. Falling back to a placeholder summary.")
            summary = None

        if summary:
            content = f"[CONTEXT SUMMARY]\n{summary}\n[END CONTEXT SUMMARY]"
        else:
            content = f"[Previous {len(compactable)} messages summarized]"

        return [Message(role="system", content=content, timestamp=utc_now()), *tail]

    async def _summarize(self, messages: list[Message]) -> str:
        formatted = format_for_summarization(messages)
        if len(formatted) > 100_000:
            half = 50_000
            formatted = (
                formatted[:half]
                + "\n\n[...middle of conversation omitted for brevity...]\n\n"
                + formatted[-half:]
            )

        logger.debug(f"Compaction request: model={self._model}, input_chars={len(formatted):,}")
        result = await self._runner.run(
            _SUMMARIZE_PROMPT + formatted,
            model=self._model,
            timeout_seconds=self._timeout_seconds,
        )
        if not result.ok:
            raise result.error
        return sanitize(result.value.stdout)


def format_for_summarization(messages: list[Message]) -> str:
    return "\n\n".join(f"[{m.role}]: {m.content}" for m in messages)


_SUMMARIZE_PROMPT = """\
Summarize the following conversation history between a user and an AI assistant.
Preserve these details precisely:
- The original user request and any specific criteria or instructions
- All decisions made and their reasoning
- Key data points, file paths, and identifiers that may be needed later
- Current task status and next steps

Format as a concise narrative summary.

---
CONVERSATION HISTORY:

"""


def create_compaction_strategy(
    name: str,
    *,
    runner: ProcessRunner | None = None,
    model: str = "",
    keep_messages: int = DEFAULT_KEEP_MESSAGES,
    timeout_seconds: float = STANDARD_REQUEST_SECONDS,
) -> CompactionStrategy:
    normalized = (name or "none").strip().lower()
    if normalized == "none":
        return NoneCompactionStrategy()
    if normalized == "truncate":
        return TruncateCompactionStrategy(keep_messages)
    if normalized == "smart":
        return SmartCompactionStrategy(keep_messages)
    if normalized == "summarize":
        if runner is None:
            raise ValueError("The summarize compaction strategy needs a process runner")
        return SummarizeCompactionStrategy(runner, model, keep_messages, timeout_seconds)
    raise ValueError(f"Unknown compaction strategy: {name!r}")
