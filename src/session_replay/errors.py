from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class SessionReplayError(Exception):
    """Base class for every expected failure carried inside a :class:`Result`."""


class NotFoundError(SessionReplayError):
    pass


class SessionExistsError(SessionReplayError):
    pass


class SessionInactiveError(SessionReplayError):
    pass


class SpawnFailureError(SessionReplayError):
    pass


class NonZeroExitError(SessionReplayError):
    def __init__(self, exit_code: int, stderr: str, command: list[str], *, outcome: Any = None):
        self.exit_code = exit_code
        self.stderr = stderr
        self.command = list(command)
        self.outcome = outcome
        super().__init__(f"CLI exited with code {exit_code}: {stderr}")


class ProcessTimeoutError(SessionReplayError):
    def __init__(self, timeout_seconds: float, *, outcome: Any = None):
        self.timeout_seconds = timeout_seconds
        self.outcome = outcome
        super().__init__(f"Request timed out after {timeout_seconds:g}s")


class MalformedToolUseError(SessionReplayError):
    """Raised while parsing a tool block; always recovered by the scanner."""


class ExecutionError(SessionReplayError):
    """Wraps an unexpected exception caught at the execution boundary."""


@dataclass(frozen=True)
class Result(Generic[T]):
    value: T | None = None
    error: SessionReplayError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> Result[T]:
        return cls(value=value)

    @classmethod
    def fail(cls, error: SessionReplayError) -> Result[T]:
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
