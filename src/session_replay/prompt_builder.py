from __future__ import annotations

from session_replay.memory.models import Message, SessionContext

_ROLE_LABELS = {
    "user": "Human",
    "assistant": "Assistant",
}


class PromptBuilder:
    """Serializes a session's replay history and a new input into one payload.

    The external CLI keeps no state between invocations, so every call replays
    the stored turns verbatim, in order, ending with an empty ``Assistant:``
    cue that asks for exactly one continuation.
    """

    def __init__(self, *, system_label: str = "System"):
        self._system_label = system_label

    def build(self, context: SessionContext, user_input: str) -> str:
        parts: list[str] = []

        if context.system_prompt:
            parts.append(f"{self._system_label}: {context.system_prompt}")
            parts.append("")

        for message in context.history:
            line = self.render_turn(message)
            if line is None:
                continue
            parts.append(line)
            parts.append("")

        parts.append(f"{_ROLE_LABELS['user']}: {user_input}")
        parts.append("")
        parts.append(f"{_ROLE_LABELS['assistant']}:")
        return "\n".join(parts)

    def render_turn(self, message: Message) -> str | None:
        # System entries (e.g. compaction summaries) are kept in history but not replayed.
        label = _ROLE_LABELS.get(message.role)
        if label is None:
            return None
        return f"{label}: {message.content}"
