from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator

from loguru import logger

from session_replay.errors import MalformedToolUseError
from session_replay.memory.events import utc_now

_TOOL_BLOCK = re.compile(r"<tool_use>(.*?)</tool_use>", re.DOTALL)
_TOOL_OPEN = "<tool_use>"
_TOOL_NAME = re.compile(r"<tool_name>(.*?)</tool_name>", re.DOTALL)
_TOOL_PARAMETERS = re.compile(r"<parameters>(.*?)</parameters>", re.DOTALL)

_TURN_MARKERS = (
    re.compile(r"\n\n?(?:Human|Assistant|H|A):"),
    re.compile(r"\n\n(?:[ha]|Q|Question|q):"),
)
_LEADING_ROLE = re.compile(r"(?:assistant|human|a|h):", re.IGNORECASE)


@dataclass(frozen=True)
class ToolUse:
    tool_name: str
    parameters: Any
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ToolUseMatch:
    start: int
    end: int
    raw: str
    tool_name: str | None = None
    parameters: Any = None
    error: MalformedToolUseError | None = None

    @property
    def is_valid(self) -> bool:
        return self.error is None


class ToolUseScanner:
    """Restartable, lazy sequence of tool blocks found in ``text``.

    Every ``iter()`` rescans from the start. Malformed blocks are yielded with
    ``error`` set instead of raising.
    """

    def __init__(self, text: str):
        self._text = text

    def __iter__(self) -> Iterator[ToolUseMatch]:
        for match in _TOOL_BLOCK.finditer(self._text):
            yield _parse_block(match)

    def tool_uses(self) -> Iterator[ToolUse]:
        for item in self:
            if item.is_valid:
                yield ToolUse(tool_name=item.tool_name or "", parameters=item.parameters)
            else:
                logger.debug(f"Discarding malformed tool block at {item.start}: {item.error}")


def _parse_block(match: re.Match[str]) -> ToolUseMatch:
    body = match.group(1)
    try:
        name_match = _TOOL_NAME.search(body)
        parameters_match = _TOOL_PARAMETERS.search(body)
        if name_match is None or not name_match.group(1).strip():
            raise MalformedToolUseError("tool block has no tool name")
        if parameters_match is None:
            raise MalformedToolUseError("tool block has no parameters")
        try:
            parameters = json.loads(parameters_match.group(1).strip())
        except json.JSONDecodeError as ex:
            raise MalformedToolUseError(f"tool parameters are not valid JSON: {ex}") from ex
    except MalformedToolUseError as ex:
        return ToolUseMatch(start=match.start(), end=match.end(), raw=match.group(0), error=ex)

    return ToolUseMatch(
        start=match.start(),
        end=match.end(),
        raw=match.group(0),
        tool_name=name_match.group(1).strip(),
        parameters=parameters,
    )


def strip_tool_blocks(text: str) -> str:
    # Removing one block can splice a new one together, so repeat until stable.
    while True:
        stripped = _TOOL_BLOCK.sub("", text)
        if stripped == text:
            break
        text = stripped
    dangling = text.find(_TOOL_OPEN)
    if dangling != -1:
        text = text[:dangling]
    return text


def find_turn_boundary(text: str) -> int | None:
    earliest: int | None = None
    for pattern in _TURN_MARKERS:
        for match in pattern.finditer(text):
            if match.start() > 0:
                if earliest is None or match.start() < earliest:
                    earliest = match.start()
                break
    return earliest


def strip_leading_role(text: str) -> str:
    text = text.strip()
    while True:
        match = _LEADING_ROLE.match(text)
        if match is None:
            return text
        text = text[match.end():].strip()


def sanitize(text: str) -> str:
    """Reduce raw CLI output to a single clean assistant turn. Idempotent."""
    cleaned = strip_tool_blocks(text)
    boundary = find_turn_boundary(cleaned)
    if boundary is not None:
        cleaned = cleaned[:boundary]
    return strip_leading_role(cleaned)


@dataclass(frozen=True)
class SanitizedOutput:
    text: str
    tool_uses: list[ToolUse]
    truncated: bool


class OutputSanitizer:
    def clean(self, raw: str) -> SanitizedOutput:
        tool_uses = list(ToolUseScanner(raw).tool_uses())
        without_tools = strip_tool_blocks(raw)
        boundary = find_turn_boundary(without_tools)
        if boundary is not None:
            logger.warning(
                f"Output contained a continued transcript; truncated from "
                f"{len(without_tools)} to {boundary} chars"
            )
            without_tools = without_tools[:boundary]
        return SanitizedOutput(
            text=strip_leading_role(without_tools),
            tool_uses=tool_uses,
            truncated=boundary is not None,
        )

    def sanitize(self, raw: str) -> str:
        return sanitize(raw)
