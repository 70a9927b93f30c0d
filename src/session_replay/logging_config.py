import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

DEFAULT_LOG_PATH = "session_replay.log"

# Records logged outside a session (or via an unbound logger) show "-".
_DEFAULT_EXTRA = {"session_id": "-"}

_STREAMS = {
    "stderr": sys.stderr,
    "stdout": sys.stdout,
}


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def __init__(self, stream: str = "stderr", show_session: bool = True):
        if stream not in _STREAMS:
            raise ValueError(f"Unknown console stream: {stream!r}")
        self._stream = stream
        self._show_session = show_session

    def register(self, level: str) -> None:
        session = "<magenta>{extra[session_id]}</magenta> | " if self._show_session else ""
        logger.add(
            _STREAMS[self._stream],
            level=level,
            format="<level>{level:<8}</level> | " + session + "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        )

    def describe(self, level: str) -> str:
        return f"console ({self._stream}, {level})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = DEFAULT_LOG_PATH,
        rotation: str = "10 MB",
        retention: int = 3,
        serialize: bool = False,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[session_id]} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
        )

    def describe(self, level: str) -> str:
        kind = "json" if self._serialize else "text"
        return f"file ({self._path}, {kind}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console"},
    {"type": "file", "path": DEFAULT_LOG_PATH},
]


def session_logger(session_id: str):
    """Logger whose records carry ``session_id`` for the sink formats above."""
    return logger.bind(session_id=session_id or "-")


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's sinks with the configured consumers. Returns a description of each."""
    logger.remove()
    logger.configure(extra=dict(_DEFAULT_EXTRA))

    if consumers is None:
        consumers = _DEFAULT_CONSUMERS

    descriptions: list[str] = []

    for config in consumers:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = config.get("level", level)

        consumer = cls(**kwargs)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
