from __future__ import annotations

import re
from typing import Literal

OperationType = Literal["quick", "text", "code", "file", "system"]

STANDARD_REQUEST_SECONDS = 120.0
QUICK_REQUEST_SECONDS = 30.0
COMPLEX_REQUEST_SECONDS = 300.0
TOOL_HEAVY_REQUEST_SECONDS = 600.0
KILL_GRACE_SECONDS = 5.0

OPERATION_TIMEOUTS: dict[str, float] = {
    "quick": QUICK_REQUEST_SECONDS,
    "text": STANDARD_REQUEST_SECONDS,
    "code": COMPLEX_REQUEST_SECONDS,
    "file": COMPLEX_REQUEST_SECONDS,
    "system": TOOL_HEAVY_REQUEST_SECONDS,
}

# Checked in order; the first matching group wins.
_KEYWORD_HINTS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("quick", re.compile(r"\b(?:yes or no|true or false|one word)\b", re.IGNORECASE)),
    ("system", re.compile(r"\b(?:run|bash|shell|execute|command)\b", re.IGNORECASE)),
    ("file", re.compile(r"\b(?:(?:read|write|edit) (?:the |a )?file|files?)\b", re.IGNORECASE)),
    ("code", re.compile(r"\b(?:implement|function|code|class|refactor)\b", re.IGNORECASE)),
)


def infer_operation_type(prompt: str) -> str | None:
    for operation_type, pattern in _KEYWORD_HINTS:
        if pattern.search(prompt):
            return operation_type
    return None


def resolve_timeout(
    prompt: str,
    *,
    explicit: float | None = None,
    operation_type: str | None = None,
    session_default: float = STANDARD_REQUEST_SECONDS,
) -> float:
    """Pick the timeout for one invocation; ``0`` means no timeout.

    Precedence: explicit value, operation type, keyword hints in the prompt,
    then the session default.
    """
    if explicit is not None:
        return max(0.0, float(explicit))
    if operation_type is not None:
        if operation_type not in OPERATION_TIMEOUTS:
            raise ValueError(f"Unknown operation type: {operation_type!r}")
        return OPERATION_TIMEOUTS[operation_type]
    inferred = infer_operation_type(prompt)
    if inferred is not None:
        return OPERATION_TIMEOUTS[inferred]
    return max(0.0, float(session_default))
