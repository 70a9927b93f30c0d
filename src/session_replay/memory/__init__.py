from session_replay.memory.cache import ResponseCache
from session_replay.memory.checkpoints import CheckpointManager
from session_replay.memory.events import Event, EventEmitter, utc_now
from session_replay.memory.models import (
    CachedResponse,
    ConversationHistory,
    ForkPoint,
    ForkResult,
    Message,
    MessageRecord,
    SessionContext,
    SessionLineage,
    Snapshot,
)
from session_replay.memory.store import ConversationStore

__all__ = [
    "CachedResponse",
    "CheckpointManager",
    "ConversationHistory",
    "ConversationStore",
    "Event",
    "EventEmitter",
    "ForkPoint",
    "ForkResult",
    "Message",
    "MessageRecord",
    "ResponseCache",
    "SessionContext",
    "SessionLineage",
    "Snapshot",
    "utc_now",
]
