"""Shared Pydantic models for convosync."""

from models.conversation import (
    AGENT_TYPES,
    DEFAULT_AGENT_TYPE,
    DEFAULT_TITLE,
    LOCAL_ID_PREFIX,
    UNKNOWN_AGENT_TYPE,
    AddMessageParams,
    Conversation,
    ConversationListItem,
    CreateConversationParams,
    LastMessage,
    Message,
    Role,
    SyncProgress,
    SyncState,
    derive_title,
    generate_id,
    generate_local_id,
    is_local_id,
    utc_now,
)

__all__ = [
    # Constants
    "AGENT_TYPES",
    "DEFAULT_AGENT_TYPE",
    "DEFAULT_TITLE",
    "LOCAL_ID_PREFIX",
    "UNKNOWN_AGENT_TYPE",
    # Models
    "AddMessageParams",
    "Conversation",
    "ConversationListItem",
    "CreateConversationParams",
    "LastMessage",
    "Message",
    "Role",
    "SyncProgress",
    "SyncState",
    # Helpers
    "derive_title",
    "generate_id",
    "generate_local_id",
    "is_local_id",
    "utc_now",
]
