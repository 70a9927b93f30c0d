from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


@dataclass
class RuntimeEnv:
    cli_path: str | None
    anthropic_api_key: str | None


@dataclass
class AppConfig:
    cli_command: list[str]
    model: str
    system_prompt: str | None
    default_timeout_seconds: float
    kill_grace_seconds: float
    spawn_attempts: int
    working_directory: str | None
    response_cache_enabled: bool
    response_cache_ttl_seconds: float
    allowed_tools: list[str]
    disallowed_tools: list[str]
    compaction_strategy_name: str
    compaction_keep_messages: int
    auto_compact: bool
    compact_threshold_messages: int
    strict_parents: bool
    log_level: str
    log_consumers: list | None
    env: dict[str, str] = field(default_factory=dict)


def load_json_config(config_path: Path | None = None) -> dict:
    config_path = config_path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _to_name_list(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(v) for v in value]
    return [item.strip() for item in items if item.strip()]


def _to_command(value: object) -> list[str]:
    if isinstance(value, (list, tuple)):
        command = [str(v) for v in value]
    else:
        command = shlex.split(str(value or ""))
    return command or ["claude"]


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        cli_command=_to_command(config.get("CliCommand", "claude")),
        model=config.get("Model", "claude-sonnet-4-5-20250929"),
        system_prompt=config.get("SystemPrompt") or None,
        default_timeout_seconds=float(config.get("DefaultTimeoutSeconds", 120)),
        kill_grace_seconds=float(config.get("KillGraceSeconds", 5)),
        spawn_attempts=int(config.get("SpawnAttempts", 3)),
        working_directory=config.get("WorkingDirectory"),
        response_cache_enabled=_to_bool(config.get("ResponseCacheEnabled", False), default=False),
        response_cache_ttl_seconds=float(config.get("ResponseCacheTtlSeconds", 3600)),
        allowed_tools=_to_name_list(config.get("AllowedTools")),
        disallowed_tools=_to_name_list(config.get("DisallowedTools")),
        compaction_strategy_name=str(config.get("CompactionStrategy", "none")).strip().lower(),
        compaction_keep_messages=int(config.get("CompactionKeepMessages", 10)),
        auto_compact=_to_bool(config.get("AutoCompact", False), default=False),
        compact_threshold_messages=int(config.get("CompactThresholdMessages", 40)),
        strict_parents=_to_bool(config.get("StrictParents", True), default=True),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
        env={str(k): str(v) for k, v in (config.get("Env") or {}).items()},
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        cli_path=os.environ.get("CLAUDE_CLI_PATH") or None,
        anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY") or None,
    )


def load_app_config(config_path: Path | None = None) -> tuple[AppConfig, RuntimeEnv]:
    load_dotenv()
    return parse_app_config(load_json_config(config_path)), resolve_runtime_env()
