from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

Role = Literal["user", "assistant", "system"]
SessionStatus = Literal["active", "terminated", "error"]


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    timestamp: datetime


@dataclass
class MessageMetadata:
    generated_at: datetime
    cached: bool = False
    tokens_used: int | None = None


@dataclass
class MessageRecord:
    id: str
    session_id: str
    message: Message
    metadata: MessageMetadata
    parent_message_id: str | None = None
    child_message_ids: list[str] = field(default_factory=list)
    is_fork_point: bool = False

    @property
    def role(self) -> Role:
        return self.message.role

    @property
    def content(self) -> str:
        return self.message.content


@dataclass
class SessionContext:
    system_prompt: str | None = None
    history: list[Message] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    working_directory: str | None = None


@dataclass
class Session:
    id: str
    created_at: datetime
    last_accessed_at: datetime
    context: SessionContext
    parent_id: str | None = None
    child_ids: list[str] = field(default_factory=list)
    status: SessionStatus = "active"
    message_ids: list[str] = field(default_factory=list)
    fork_point_ids: list[str] = field(default_factory=list)
    checkpoint_ids: list[str] = field(default_factory=list)


@dataclass
class ForkPoint:
    message_id: str
    original_session_id: str
    forked_session_ids: list[str]
    timestamp: datetime


@dataclass(frozen=True)
class ForkResult:
    new_session_id: str
    context: SessionContext


@dataclass(frozen=True)
class CachedResponse:
    prompt: str
    response: str
    message_id: str
    timestamp: datetime
    ttl: float

    def is_valid(self, now: datetime) -> bool:
        return now - self.timestamp < timedelta(seconds=self.ttl)


@dataclass(frozen=True)
class Snapshot:
    id: str
    name: str | None
    session_id: str
    context: SessionContext
    messages: tuple[MessageRecord, ...]
    created_at: datetime


@dataclass(frozen=True)
class SessionLineage:
    session_id: str
    parent_id: str | None
    child_ids: tuple[str, ...]
    created_at: datetime
    message_count: int
    fork_count: int
    last_accessed_at: datetime


@dataclass(frozen=True)
class ConversationHistory:
    session_id: str
    messages: list[MessageRecord]
    fork_points: list[ForkPoint]
    lineage: SessionLineage
    context: SessionContext
