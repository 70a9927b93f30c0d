import asyncio
import sys
import unittest
from pathlib import Path

from session_replay.compaction import TruncateCompactionStrategy
from session_replay.errors import (
    ExecutionError,
    NonZeroExitError,
    NotFoundError,
    Result,
    SessionInactiveError,
)
from session_replay.executor import ExecuteOptions, SessionExecutor
from session_replay.executor_config import ExecutorConfig
from session_replay.memory import ConversationStore, EventEmitter, Message, utc_now
from session_replay.process_runner import ProcessOutcome, ProcessRunner, RunState
from session_replay.tool_policy import ToolPolicy

FAKE_CLI = Path(__file__).resolve().parent / "fixtures" / "fake_cli.py"


def _ok(stdout: str) -> Result:
    now = utc_now()
    return Result.success(
        ProcessOutcome(
            state=RunState.COMPLETED,
            argv=["claude"],
            stdout=stdout,
            stderr="",
            returncode=0,
            started_at=now,
            ended_at=now,
            duration_seconds=0.0,
            timeout_seconds=0.0,
        )
    )


class _ScriptedRunner:
    """Returns queued results in order; the last one repeats."""

    def __init__(self, *results, delay: float = 0.0) -> None:
        self._results = list(results) or [_ok("ok")]
        self._delay = delay
        self.calls: list[dict] = []
        self.active: dict[str, int] = {}
        self.max_active_per_session = 0
        self.max_active_total = 0

    async def run(self, payload, *, model, policy=None, timeout_seconds=120.0, session_id=""):
        self.calls.append(
            {"payload": payload, "model": model, "policy": policy, "timeout_seconds": timeout_seconds}
        )
        self.active[session_id] = self.active.get(session_id, 0) + 1
        self.max_active_per_session = max(self.max_active_per_session, self.active[session_id])
        self.max_active_total = max(self.max_active_total, sum(self.active.values()))
        try:
            await asyncio.sleep(self._delay)
        finally:
            self.active[session_id] -= 1
        item = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(item, Exception):
            raise item
        return item


class SessionExecutorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._events = EventEmitter()
        self._store = ConversationStore(self._events)

    def _executor(self, runner, config: ExecutorConfig | None = None, **kwargs) -> SessionExecutor:
        return SessionExecutor(
            config or ExecutorConfig(model="test-model"),
            store=self._store,
            runner=runner,
            events=self._events,
            **kwargs,
        )


class ReplayEndToEndTests(SessionExecutorTestCase):
    def test_second_turn_replays_first_exchange(self) -> None:
        capture = Path(__file__).resolve().parent / f".capture-{id(self)}.txt"
        runner = ProcessRunner((sys.executable, str(FAKE_CLI)), env={"FAKE_CLI_CAPTURE": str(capture)})
        executor = self._executor(runner, ExecutorConfig(model="echo", system_prompt="You are Bob"))

        async def scenario():
            sid = executor.create_session().unwrap()
            first = await executor.execute(sid, "What is your name?")
            second = await executor.execute(sid, "What did I just ask?")
            return sid, first, second

        try:
            sid, first, second = asyncio.run(scenario())
            payloads = capture.read_text(encoding="utf-8").split("\n<<<END>>>\n")
        finally:
            capture.unlink(missing_ok=True)

        self.assertEqual("You said: What is your name?", first.unwrap().output)
        self.assertEqual("You said: What did I just ask?", second.unwrap().output)
        self.assertEqual(
            "System: You are Bob\n"
            "\n"
            "Human: What is your name?\n"
            "\n"
            "Assistant: You said: What is your name?\n"
            "\n"
            "Human: What did I just ask?\n"
            "\n"
            "Assistant:",
            payloads[1],
        )
        records = self._store.get_conversation_history(sid).unwrap().messages
        self.assertEqual(["user", "assistant", "user", "assistant"], [r.role for r in records])


class ExecuteTests(SessionExecutorTestCase):
    def test_result_carries_ids_and_metadata(self) -> None:
        executor = self._executor(_ScriptedRunner(_ok("Assistant: Hello!")))
        sid = executor.create_session("s1").unwrap()
        result = asyncio.run(executor.execute(sid, "Hi", ExecuteOptions(operation_type="quick"))).unwrap()

        self.assertEqual("Hello!", result.output)
        self.assertEqual("test-model", result.metadata.model)
        self.assertEqual(30.0, result.metadata.timeout_seconds)
        self.assertFalse(result.metadata.cached)
        self.assertEqual("Hi", self._store.get_message(result.user_message_id).unwrap().content)
        self.assertEqual("Hello!", self._store.get_message(result.assistant_message_id).unwrap().content)
        self.assertEqual(1, len(self._events.events(session_id=sid, event_type="output.received")))

    def test_transcript_continuation_is_not_committed(self) -> None:
        executor = self._executor(_ScriptedRunner(_ok("I am Bob.\n\nHuman: Are you sure?\n\nAssistant: Yes.")))
        sid = executor.create_session().unwrap()
        result = asyncio.run(executor.execute(sid, "Who are you?")).unwrap()

        self.assertEqual("I am Bob.", result.output)
        self.assertTrue(result.truncated)
        history = self._store.get_context(sid).unwrap().history
        self.assertEqual(["Who are you?", "I am Bob."], [m.content for m in history])

    def test_tool_uses_are_extracted(self) -> None:
        raw = (
            "Let me check.<tool_use><tool_name>read_file</tool_name>"
            '<parameters>{"path": "notes.txt"}</parameters></tool_use> Done.'
        )
        executor = self._executor(_ScriptedRunner(_ok(raw)))
        sid = executor.create_session().unwrap()
        result = asyncio.run(executor.execute(sid, "check notes")).unwrap()

        self.assertEqual("Let me check. Done.", result.output)
        self.assertEqual([("read_file", {"path": "notes.txt"})], [(u.tool_name, u.parameters) for u in result.tool_uses])

    def test_unknown_session_is_not_found(self) -> None:
        runner = _ScriptedRunner()
        executor = self._executor(runner)
        result = asyncio.run(executor.execute("ghost", "hi"))
        self.assertIsInstance(result.error, NotFoundError)
        self.assertEqual([], runner.calls)
        self.assertNotIn("ghost", executor._locks)

    def test_destroyed_session_rejects_execute(self) -> None:
        runner = _ScriptedRunner()
        executor = self._executor(runner)
        sid = executor.create_session().unwrap()
        executor.destroy(sid).unwrap()

        result = asyncio.run(executor.execute(sid, "hi"))
        self.assertIsInstance(result.error, SessionInactiveError)
        self.assertEqual([], runner.calls)
        self.assertEqual(1, len(self._events.events(session_id=sid, event_type="session.destroyed")))

    def test_failure_marks_error_and_commits_nothing(self) -> None:
        failure = Result.fail(NonZeroExitError(3, "boom", ["claude"]))
        executor = self._executor(_ScriptedRunner(failure, _ok("recovered")))
        sid = executor.create_session().unwrap()

        failed = asyncio.run(executor.execute(sid, "first"))
        self.assertIsInstance(failed.error, NonZeroExitError)
        self.assertEqual("error", self._store.get_session(sid).status)
        self.assertEqual([], self._store.get_context(sid).unwrap().history)

        recovered = asyncio.run(executor.execute(sid, "second"))
        self.assertEqual("recovered", recovered.unwrap().output)
        self.assertEqual("active", self._store.get_session(sid).status)

    def test_unexpected_exception_becomes_execution_error(self) -> None:
        executor = self._executor(_ScriptedRunner(RuntimeError("kaboom")))
        sid = executor.create_session().unwrap()
        result = asyncio.run(executor.execute(sid, "hi"))

        self.assertIsInstance(result.error, ExecutionError)
        self.assertIn("kaboom", str(result.error))
        self.assertEqual("error", self._store.get_session(sid).status)

    def test_unknown_operation_type_raises(self) -> None:
        executor = self._executor(_ScriptedRunner())
        sid = executor.create_session().unwrap()
        with self.assertRaises(ValueError):
            asyncio.run(executor.execute(sid, "hi", ExecuteOptions(operation_type="epic")))

    def test_tools_option_narrows_policy(self) -> None:
        policy = ToolPolicy()
        policy.deny("bash")
        runner = _ScriptedRunner()
        executor = self._executor(runner, policy=policy)
        sid = executor.create_session().unwrap()
        asyncio.run(executor.execute(sid, "hi", ExecuteOptions(tools=("read_file", "bash"))))

        self.assertEqual(
            ["--disallowedTools", "bash", "--allowedTools", "read_file"],
            runner.calls[0]["policy"].cli_flags(),
        )
        self.assertEqual(["--disallowedTools", "bash"], policy.cli_flags())

    def test_keyword_timeout_is_used(self) -> None:
        runner = _ScriptedRunner()
        executor = self._executor(runner, ExecutorConfig(model="m", default_timeout_seconds=45))
        sid = executor.create_session().unwrap()

        asyncio.run(executor.execute(sid, "Run the build"))
        asyncio.run(executor.execute(sid, "Hello there"))
        self.assertEqual([600.0, 45.0], [c["timeout_seconds"] for c in runner.calls])


class CacheTests(SessionExecutorTestCase):
    def test_identical_payload_is_served_from_cache(self) -> None:
        runner = _ScriptedRunner(_ok("fresh answer"))
        executor = self._executor(runner, ExecutorConfig(model="m", response_cache_enabled=True))
        sid = executor.create_session().unwrap()

        first = asyncio.run(executor.execute(sid, "hi")).unwrap()
        self._store.replace_history(sid, []).unwrap()
        second = asyncio.run(executor.execute(sid, "hi")).unwrap()

        self.assertEqual(1, len(runner.calls))
        self.assertFalse(first.metadata.cached)
        self.assertTrue(second.metadata.cached)
        self.assertEqual("fresh answer", second.output)
        self.assertTrue(self._store.get_message(second.assistant_message_id).unwrap().metadata.cached)

    def test_cache_can_be_bypassed_per_call(self) -> None:
        runner = _ScriptedRunner(_ok("answer"))
        executor = self._executor(runner, ExecutorConfig(model="m", response_cache_enabled=True))
        sid = executor.create_session().unwrap()

        asyncio.run(executor.execute(sid, "hi"))
        self._store.replace_history(sid, []).unwrap()
        asyncio.run(executor.execute(sid, "hi", ExecuteOptions(use_cache=False)))
        self.assertEqual(2, len(runner.calls))

    def test_destroy_drops_cached_responses(self) -> None:
        config = ExecutorConfig(model="m", response_cache_enabled=True)
        executor = self._executor(_ScriptedRunner(_ok("answer")), config)
        sid = executor.create_session().unwrap()
        other = executor.create_session().unwrap()
        asyncio.run(executor.execute(sid, "hi"))
        asyncio.run(executor.execute(other, "hi"))

        executor.destroy(sid).unwrap()

        self.assertEqual(0, self._store.drop_cache(sid))
        self.assertEqual(1, self._store.drop_cache(other))


class ConcurrencyTests(SessionExecutorTestCase):
    def test_same_session_calls_are_serialized(self) -> None:
        runner = _ScriptedRunner(delay=0.05)
        executor = self._executor(runner)
        sid = executor.create_session().unwrap()

        async def scenario():
            return await asyncio.gather(*(executor.execute(sid, f"q{i}") for i in range(3)))

        results = asyncio.run(scenario())
        self.assertTrue(all(r.ok for r in results))
        self.assertEqual(1, runner.max_active_per_session)
        self.assertEqual(6, len(self._store.get_context(sid).unwrap().history))

    def test_different_sessions_run_in_parallel(self) -> None:
        runner = _ScriptedRunner(delay=0.1)
        executor = self._executor(runner)
        first = executor.create_session().unwrap()
        second = executor.create_session().unwrap()

        async def scenario():
            await asyncio.gather(executor.execute(first, "a"), executor.execute(second, "b"))

        asyncio.run(scenario())
        self.assertEqual(2, runner.max_active_total)


class LifecycleTests(SessionExecutorTestCase):
    def _seeded(self, executor: SessionExecutor, count: int) -> str:
        history = [
            Message(role="user" if i % 2 == 0 else "assistant", content=f"m{i}", timestamp=utc_now())
            for i in range(count)
        ]
        return executor.create_session(history=history).unwrap()

    def test_compact_replaces_replay_history_only(self) -> None:
        executor = self._executor(_ScriptedRunner())
        sid = self._seeded(executor, 12)

        removed = asyncio.run(executor.compact(sid, TruncateCompactionStrategy(4))).unwrap()

        self.assertEqual(8, removed)
        history = self._store.get_conversation_history(sid).unwrap()
        self.assertEqual(["m8", "m9", "m10", "m11"], [m.content for m in history.context.history])
        self.assertEqual(12, len(history.messages))

    def test_compact_unknown_session(self) -> None:
        executor = self._executor(_ScriptedRunner())
        self.assertIsInstance(asyncio.run(executor.compact("ghost")).error, NotFoundError)
        self.assertNotIn("ghost", executor._locks)

    def test_auto_compaction_before_replay(self) -> None:
        runner = _ScriptedRunner()
        config = ExecutorConfig(model="m", auto_compact=True, compact_threshold_messages=6)
        executor = self._executor(runner, config, compaction=TruncateCompactionStrategy(2))
        sid = self._seeded(executor, 8)

        asyncio.run(executor.execute(sid, "next"))

        self.assertEqual("Human: m6\n\nAssistant: m7\n\nHuman: next\n\nAssistant:", runner.calls[0]["payload"])

    def test_fork_and_checkpoint_delegate_to_store(self) -> None:
        executor = self._executor(_ScriptedRunner())
        sid = self._seeded(executor, 4)

        fork = executor.fork(sid).unwrap()
        checkpoint_id = executor.checkpoint(sid, "cp").unwrap()

        self.assertEqual(4, len(fork.context.history))
        self.assertEqual(sid, self._store.get_session_lineage(fork.new_session_id).unwrap().parent_id)
        self.assertEqual("cp", self._store.restore_checkpoint(checkpoint_id).unwrap().name)
        self.assertEqual(4, len(executor.history(sid).unwrap().messages))

    def test_destroy_unknown_session(self) -> None:
        executor = self._executor(_ScriptedRunner())
        self.assertIsInstance(executor.destroy("ghost").error, NotFoundError)


if __name__ == "__main__":
    unittest.main()
