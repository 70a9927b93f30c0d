from dataclasses import dataclass

from session_replay.memory.store import DEFAULT_CACHE_TTL_SECONDS
from session_replay.timeouts import STANDARD_REQUEST_SECONDS


@dataclass
class ExecutorConfig:
    model: str = "claude-sonnet-4-5-20250929"
    system_prompt: str | None = None
    working_directory: str | None = None
    default_timeout_seconds: float = STANDARD_REQUEST_SECONDS
    response_cache_enabled: bool = False
    response_cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    auto_compact: bool = False
    compact_threshold_messages: int = 40
