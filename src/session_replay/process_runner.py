from __future__ import annotations

import asyncio
import enum
import os
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from session_replay.errors import NonZeroExitError, ProcessTimeoutError, Result, SpawnFailureError
from session_replay.logging_config import session_logger
from session_replay.memory.events import EventEmitter, utc_now
from session_replay.timeouts import KILL_GRACE_SECONDS, STANDARD_REQUEST_SECONDS
from session_replay.tool_policy import ToolPolicy

_NO_STDERR = "No error output captured"
_READ_CHUNK = 64 * 1024
_IS_WINDOWS = sys.platform == "win32"


class RunState(enum.Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"


@dataclass
class ProcessOutcome:
    state: RunState
    argv: list[str]
    stdout: str
    stderr: str
    returncode: int | None
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    timeout_seconds: float
    signals_sent: list[str] = field(default_factory=list)


def _is_transient_spawn_error(ex: BaseException) -> bool:
    return isinstance(ex, OSError) and not isinstance(ex, (FileNotFoundError, PermissionError))


def _on_spawn_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"Spawn failed ({reason}). Retrying in {wait:.0f}s (attempt {attempt})...")


class _Escalation:
    """Cancellable delayed actions against the CLI's process group.

    SIGTERM at the deadline, SIGKILL after the grace period, and after one
    more grace period the output readers are abandoned. The CLI runs in its
    own session, so the signals also reach any tool processes it started
    that still hold the output pipes.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        readers: list[asyncio.Future],
        *,
        timeout_seconds: float,
        grace_seconds: float,
        log=logger,
    ):
        self._proc = proc
        self._readers = readers
        self._log = log
        self._timeout_seconds = timeout_seconds
        self._grace_seconds = grace_seconds
        self._loop = asyncio.get_running_loop()
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._grace_handle: asyncio.TimerHandle | None = None
        self._abandon_handle: asyncio.TimerHandle | None = None
        self.timed_out = False
        self.abandoned = False
        self.signals_sent: list[str] = []

    def arm(self) -> None:
        if self._timeout_seconds > 0:
            self._timeout_handle = self._loop.call_later(self._timeout_seconds, self._on_timeout)

    def cancel(self) -> None:
        for handle in (self._timeout_handle, self._grace_handle, self._abandon_handle):
            if handle is not None:
                handle.cancel()
        self._timeout_handle = None
        self._grace_handle = None
        self._abandon_handle = None

    def kill(self) -> None:
        self._signal("SIGKILL")

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if self._proc.returncode is not None and all(r.done() for r in self._readers):
            return
        self.timed_out = True
        self._log.warning(
            f"Request timed out after {self._timeout_seconds:g}s; terminating process group {self._proc.pid}"
        )
        self._signal("SIGTERM")
        self._grace_handle = self._loop.call_later(self._grace_seconds, self._on_grace_expired)

    def _on_grace_expired(self) -> None:
        self._grace_handle = None
        self._log.warning(f"Process group {self._proc.pid} outlived SIGTERM by {self._grace_seconds:g}s; killing")
        self._signal("SIGKILL")
        self._abandon_handle = self._loop.call_later(self._grace_seconds, self._abandon_readers)

    def _abandon_readers(self) -> None:
        self._abandon_handle = None
        pending = [r for r in self._readers if not r.done()]
        if not pending:
            return
        # Something outside the process group still holds the pipes open.
        self._log.warning(f"Abandoning output pipes of pid {self._proc.pid} still held open after SIGKILL")
        self.abandoned = True
        for reader in pending:
            reader.cancel()

    def _signal(self, name: str) -> bool:
        try:
            if _IS_WINDOWS:
                if name == "SIGKILL":
                    self._proc.kill()
                else:
                    self._proc.terminate()
            else:
                os.killpg(self._proc.pid, getattr(signal, name))
        except (ProcessLookupError, PermissionError):
            return False
        self.signals_sent.append(name)
        return True


async def _collect(stream: asyncio.StreamReader, sink: bytearray) -> None:
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        sink.extend(chunk)


async def _feed(stdin: asyncio.StreamWriter, data: bytes, log=logger) -> None:
    try:
        stdin.write(data)
        await stdin.drain()
    except (BrokenPipeError, ConnectionResetError) as ex:
        log.debug(f"CLI closed stdin before reading the whole payload: {ex}")
    finally:
        stdin.close()


class ProcessRunner:
    """Runs one non-interactive CLI invocation per call.

    The payload goes to stdin, which is then closed; stdout and stderr are
    collected in full. The CLI leads its own process group; a timeout
    escalates from SIGTERM to SIGKILL against the whole group, so a run
    ends within the timeout plus twice the grace period even when a child
    of the CLI keeps stdout open.
    """

    def __init__(
        self,
        command: Sequence[str] = ("claude",),
        *,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
        spawn_attempts: int = 3,
        working_directory: str | None = None,
        env: dict[str, str] | None = None,
        events: EventEmitter | None = None,
    ):
        if not command:
            raise ValueError("command must name an executable")
        self._command = list(command)
        self._kill_grace_seconds = max(0.0, kill_grace_seconds)
        self._spawn_attempts = max(1, spawn_attempts)
        self._working_directory = working_directory
        self._env = dict(env or {})
        self._events = events

    @property
    def command(self) -> list[str]:
        return list(self._command)

    def build_args(self, model: str, policy: ToolPolicy | None = None) -> list[str]:
        args = [*self._command, "-p", "--model", model]
        if policy is not None:
            args.extend(policy.cli_flags())
        return args

    async def run(
        self,
        payload: str,
        *,
        model: str,
        policy: ToolPolicy | None = None,
        timeout_seconds: float = STANDARD_REQUEST_SECONDS,
        session_id: str = "",
    ) -> Result[ProcessOutcome]:
        log = session_logger(session_id)
        argv = self.build_args(model, policy)
        started_at = utc_now()
        started = time.monotonic()
        state = RunState.SPAWNING

        try:
            proc = await self._spawn(argv)
        except OSError as ex:
            log.error(f"Failed to spawn {argv[0]}: {ex}")
            return Result.fail(SpawnFailureError(f"Failed to spawn {argv[0]}: {ex}"))

        state = RunState.RUNNING
        log.debug(f"Spawned pid {proc.pid} ({state.value}), timeout={timeout_seconds:g}s")
        self._emit(session_id, "process.spawned", {"pid": proc.pid, "command": argv[0], "args": argv[1:]})

        stdout_bytes, stderr_bytes = bytearray(), bytearray()
        readers = [
            asyncio.ensure_future(_collect(proc.stdout, stdout_bytes)),
            asyncio.ensure_future(_collect(proc.stderr, stderr_bytes)),
        ]
        escalation = _Escalation(
            proc,
            readers,
            timeout_seconds=timeout_seconds,
            grace_seconds=self._kill_grace_seconds,
            log=log,
        )
        escalation.arm()
        try:
            await _feed(proc.stdin, payload.encode("utf-8"), log=log)
            # Both pipes reach EOF only once every holder of their write ends is gone.
            await asyncio.wait(readers)
            if proc.returncode is None and not escalation.abandoned:
                await proc.wait()
        except BaseException:
            escalation.kill()
            raise
        finally:
            escalation.cancel()
            for reader in readers:
                reader.cancel()

        if escalation.timed_out:
            state = RunState.TIMED_OUT
        elif proc.returncode != 0:
            state = RunState.ERRORED
        else:
            state = RunState.COMPLETED

        outcome = ProcessOutcome(
            state=state,
            argv=argv,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            returncode=proc.returncode,
            started_at=started_at,
            ended_at=utc_now(),
            duration_seconds=time.monotonic() - started,
            timeout_seconds=timeout_seconds,
            signals_sent=list(escalation.signals_sent),
        )
        self._emit(
            session_id,
            "process.exited",
            {"pid": proc.pid, "exit_code": proc.returncode, "state": state.value},
        )

        if state is RunState.TIMED_OUT:
            return Result.fail(ProcessTimeoutError(timeout_seconds, outcome=outcome))

        if state is RunState.ERRORED:
            stderr_text = outcome.stderr.strip() or _NO_STDERR
            log.error(f"CLI exited with code {proc.returncode}: {stderr_text}")
            log.error(f"Command was: {' '.join(argv)}")
            return Result.fail(NonZeroExitError(proc.returncode or -1, stderr_text, argv, outcome=outcome))

        if outcome.stderr.strip():
            log.warning(f"CLI stderr: {outcome.stderr.strip()}")
        return Result.success(outcome)

    async def _spawn(self, argv: list[str]) -> asyncio.subprocess.Process:
        env = {**os.environ, **self._env}
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient_spawn_error),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            stop=stop_after_attempt(self._spawn_attempts),
            before_sleep=_on_spawn_retry,
            reraise=True,
        ):
            with attempt:
                return await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self._working_directory,
                    env=env,
                    start_new_session=not _IS_WINDOWS,
                )
        raise OSError(f"Failed to spawn {argv[0]}")

    def _emit(self, session_id: str, event_type: str, payload: dict) -> None:
        if self._events is not None:
            self._events.emit(session_id, event_type, payload)
