"""API-specific request and response models."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models import ConversationListItem, Message, Role


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateConversationRequest(_ApiModel):
    """Request model for creating a conversation (owner comes from the header)."""

    title: Any = None
    agent_id: Any = None
    agent_type: Any = None
    initial_message: Any = None
    metadata: Any = None


class AddMessageRequest(_ApiModel):
    """Request model for appending a message."""

    role: Role = Field("user", description="Message role")
    content: str = Field(..., description="Message content")
    metadata: dict[str, Any] | None = None


class UpdateConversationRequest(_ApiModel):
    """Request model for renaming or annotating a conversation."""

    title: str | None = None
    metadata: dict[str, Any] | None = None


class MessageResponse(_ApiModel):
    conversation_id: str
    message: Message


class ConversationListResponse(_ApiModel):
    """Response model for list of conversations."""

    conversations: list[ConversationListItem]
    total: int


class SyncResponse(_ApiModel):
    """Outcome of a reconciliation run."""

    skipped: bool = False
    migrated: dict[str, str] = Field(default_factory=dict)
    drained: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
