from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from session_replay.app_config import AppConfig, RuntimeEnv, resolve_runtime_env
from session_replay.compaction import create_compaction_strategy
from session_replay.executor import SessionExecutor
from session_replay.executor_config import ExecutorConfig
from session_replay.logging_config import setup_logging
from session_replay.memory import ConversationStore, EventEmitter
from session_replay.process_runner import ProcessRunner
from session_replay.tool_policy import ToolPolicy


@dataclass
class AppRuntime:
    executor: SessionExecutor
    store: ConversationStore
    runner: ProcessRunner
    policy: ToolPolicy
    events: EventEmitter
    log_descriptions: list[str]


def build_runtime(app: AppConfig, env: RuntimeEnv | None = None) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)
    env = env or resolve_runtime_env()

    command = list(app.cli_command)
    if env.cli_path:
        command[0] = env.cli_path

    child_env = dict(app.env)
    if env.anthropic_api_key:
        child_env.setdefault("ANTHROPIC_API_KEY", env.anthropic_api_key)

    events = EventEmitter()
    store = ConversationStore(events, strict_parents=app.strict_parents)

    policy = ToolPolicy()
    if app.disallowed_tools:
        policy.deny(*app.disallowed_tools)
    if app.allowed_tools:
        policy.allow(*app.allowed_tools)

    runner = ProcessRunner(
        command,
        kill_grace_seconds=app.kill_grace_seconds,
        spawn_attempts=app.spawn_attempts,
        working_directory=app.working_directory,
        env=child_env,
        events=events,
    )

    compaction = create_compaction_strategy(
        app.compaction_strategy_name,
        runner=runner,
        model=app.model,
        keep_messages=app.compaction_keep_messages,
        timeout_seconds=app.default_timeout_seconds,
    )

    executor = SessionExecutor(
        ExecutorConfig(
            model=app.model,
            system_prompt=app.system_prompt,
            working_directory=app.working_directory,
            default_timeout_seconds=app.default_timeout_seconds,
            response_cache_enabled=app.response_cache_enabled,
            response_cache_ttl_seconds=app.response_cache_ttl_seconds,
            auto_compact=app.auto_compact,
            compact_threshold_messages=app.compact_threshold_messages,
        ),
        store=store,
        runner=runner,
        policy=policy,
        compaction=compaction,
        events=events,
    )

    logger.info(f"Session runtime ready: command={command[0]}, model={app.model}")
    return AppRuntime(
        executor=executor,
        store=store,
        runner=runner,
        policy=policy,
        events=events,
        log_descriptions=log_descriptions,
    )
