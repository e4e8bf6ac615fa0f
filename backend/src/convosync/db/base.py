"""Remote conversation store contract."""

from typing import Any, Protocol

from models import Conversation, Message


class ConversationStore(Protocol):
    """CRUD and query operations against a per-agent namespaced store.

    Documents live at {namespace}/{agent_id}/{subcollection}/{conversation_id};
    both levels are required to address a conversation. The store does not
    know about users beyond the stored userId field: get() performs no
    ownership check, while the mutating operations re-verify ownership
    before writing.
    """

    async def create(self, agent_id: str, conversation: Conversation) -> Conversation:
        """Write a new document and return it with the store-assigned id."""
        ...

    async def get(self, agent_id: str, conversation_id: str) -> Conversation | None:
        ...

    async def append_message(
        self,
        agent_id: str,
        conversation_id: str,
        message: Message,
        user_id: str,
    ) -> Conversation:
        """Append to the full message list and return the updated conversation."""
        ...

    async def update(
        self,
        agent_id: str,
        conversation_id: str,
        user_id: str,
        *,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        ...

    async def list_by_user(self, agent_id: str, user_id: str, limit: int = 50) -> list[Conversation]:
        """Conversations owned by user_id, most recently updated first."""
        ...

    async def list_namespaces(self) -> list[str]:
        ...

    async def is_available(self) -> bool:
        """Lightweight reachability check. Never raises."""
        ...
