"""Conversation and message models."""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Conversations created while the remote store is unreachable carry this prefix
LOCAL_ID_PREFIX = "local_"

DEFAULT_TITLE = "New conversation"

AGENT_TYPES = (
    "seo",
    "copywriting",
    "ads",
    "creative",
    "email",
    "analytics",
    "social",
    "strategy",
)
DEFAULT_AGENT_TYPE = "copywriting"
UNKNOWN_AGENT_TYPE = "unknown"

Role = Literal["user", "assistant", "system", "function"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    return uuid.uuid4().hex


def generate_local_id() -> str:
    """Return a conversation id from the local-only id space."""
    return f"{LOCAL_ID_PREFIX}{generate_id()}"


def is_local_id(conversation_id: str) -> bool:
    return conversation_id.startswith(LOCAL_ID_PREFIX)


def derive_title(message: str) -> str:
    """Build a title from the first five words of a message."""
    title = " ".join(message.split()[:5])
    if len(title) > 50:
        title = title[:47] + "..."
    return title or DEFAULT_TITLE


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Message(_CamelModel):
    """A single message in a conversation."""

    id: str = Field(default_factory=generate_id, description="Unique message ID")
    role: Role = Field(..., description="Message role")
    content: str = Field(..., description="Message content")
    timestamp: datetime = Field(default_factory=utc_now, description="Creation timestamp")
    metadata: dict[str, Any] | None = Field(None, description="Bounded key/value annotations")


class Conversation(_CamelModel):
    """A conversation thread owned by one user under one agent namespace."""

    id: str = Field(..., description="Store-assigned ID, or a local_ ID when created offline")
    agent_id: str = Field(..., description="Namespace the conversation lives under")
    agent_type: str = Field(DEFAULT_AGENT_TYPE, description="Agent category")
    user_id: str = Field(..., description="Owner")
    title: str = Field(DEFAULT_TITLE, description="Conversation title")
    messages: list[Message] = Field(default_factory=list, description="Append-only message log")
    created_at: datetime = Field(default_factory=utc_now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utc_now, description="Last update timestamp")
    metadata: dict[str, Any] | None = Field(None, description="Free-form annotations")
    version: int = Field(0, description="Optimistic concurrency token")

    @property
    def is_local(self) -> bool:
        return is_local_id(self.id)

    def owned_by(self, user_id: str) -> bool:
        return self.user_id == user_id

    def append(self, message: Message) -> Message:
        """Append a message, keeping timestamps ordered.

        The message timestamp never goes backwards relative to the previous
        message and updated_at strictly advances.
        """
        if self.messages and message.timestamp < self.messages[-1].timestamp:
            message = message.model_copy(update={"timestamp": self.messages[-1].timestamp})

        if (
            not self.messages
            and message.role == "user"
            and self.title == DEFAULT_TITLE
        ):
            self.title = derive_title(message.content)

        self.messages.append(message)
        self.touch(message.timestamp)
        return message

    def touch(self, now: datetime | None = None) -> None:
        now = now or utc_now()
        if now <= self.updated_at:
            now = self.updated_at + timedelta(microseconds=1)
        self.updated_at = now

    def to_document(self) -> dict[str, Any]:
        """Serialize to the stored document shape (id is the document key)."""
        return self.model_dump(by_alias=True, exclude={"id"})

    @classmethod
    def from_document(cls, conversation_id: str, agent_id: str, data: dict[str, Any]) -> "Conversation":
        payload = dict(data)
        payload["id"] = conversation_id
        payload.setdefault("agentId", agent_id)
        payload["title"] = payload.get("title") or DEFAULT_TITLE
        payload["messages"] = [
            {**msg, "id": msg.get("id") or generate_id()}
            for msg in payload.get("messages") or []
        ]
        return cls.model_validate(payload)


class LastMessage(_CamelModel):
    content: str
    role: Role


class ConversationListItem(_CamelModel):
    """Summary row for conversation lists."""

    id: str
    title: str
    agent_id: str
    agent_type: str
    updated_at: datetime
    last_message: LastMessage | None = None
    is_local: bool = False

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationListItem":
        last = conversation.messages[-1] if conversation.messages else None
        return cls(
            id=conversation.id,
            title=conversation.title,
            agent_id=conversation.agent_id,
            agent_type=conversation.agent_type,
            updated_at=conversation.updated_at,
            last_message=LastMessage(content=last.content, role=last.role) if last else None,
            is_local=conversation.is_local,
        )


class CreateConversationParams(_CamelModel):
    """Caller-supplied creation input.

    Fields are loosely typed: values may be malformed and are cleaned
    by the sanitizer before being written.
    """

    title: Any = None
    agent_id: Any = None
    agent_type: Any = None
    user_id: Any = None
    initial_message: Any = None
    metadata: Any = None


class AddMessageParams(_CamelModel):
    """Input for appending a message to an existing conversation."""

    conversation_id: str
    role: Role
    content: str
    metadata: dict[str, Any] | None = None


class SyncState(str, Enum):
    """Reconciliation progress of a locally cached conversation."""

    NOT_STARTED = "not-started"
    SHELL_CREATED = "shell-created"
    COMPLETE = "complete"


class SyncProgress(_CamelModel):
    state: SyncState = SyncState.NOT_STARTED
    remote_id: str | None = None
    remote_agent_id: str | None = None
    synced_messages: int = 0
    pending: bool = Field(False, description="Buffered messages for a remote conversation")
