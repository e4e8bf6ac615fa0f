"""Error taxonomy for conversation persistence.

Store adapters translate backend-specific failures into these classes so the
retry controller and the service facade can classify them uniformly:

- InvalidArgument: the payload was rejected; recoverable by sanitizing.
- PermissionDenied / OwnershipError: terminal, never retried.
- ConversationNotFound: terminal for reads and appends.
- StoreUnavailable / ConcurrentModification: transient, retried.
"""


class ConversationStoreError(Exception):
    """Base class for conversation persistence failures."""


class InvalidArgument(ConversationStoreError):
    """The store rejected the payload (oversized, malformed or disallowed values)."""


class PermissionDenied(ConversationStoreError):
    """The caller may not perform this operation."""


class OwnershipError(PermissionDenied):
    """The conversation exists but belongs to another user."""

    def __init__(self, conversation_id: str, user_id: str):
        super().__init__(f"Conversation {conversation_id} does not belong to user {user_id}")
        self.conversation_id = conversation_id
        self.user_id = user_id


class ConversationNotFound(ConversationStoreError):
    """No conversation exists at the requested address."""

    def __init__(self, conversation_id: str, agent_id: str | None = None):
        where = f" under agent {agent_id}" if agent_id else ""
        super().__init__(f"Conversation not found: {conversation_id}{where}")
        self.conversation_id = conversation_id
        self.agent_id = agent_id


class StoreUnavailable(ConversationStoreError):
    """Transient network or service failure."""


class ConcurrentModification(StoreUnavailable):
    """The document changed between read and write."""


class RetriesExhausted(ConversationStoreError):
    """Every attempt allowed by the retry policy failed."""

    def __init__(self, description: str, attempts: int, last_error: Exception):
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
