"""Locate a conversation when only its id is known."""

import logging

from models import Conversation
from convosync.db import ConversationStore

logger = logging.getLogger(__name__)


class ConversationResolver:
    """Find the agent namespace that owns a conversation id.

    Known addresses are kept in a conversationId -> agentId index fed by every
    create, get and list, so most lookups are a single read. A miss falls
    back to probing every namespace in turn.
    """

    def __init__(self, store: ConversationStore):
        self.store = store
        self._index: dict[str, str] = {}

    def remember(self, conversation: Conversation) -> None:
        if not conversation.is_local:
            self._index[conversation.id] = conversation.agent_id

    def forget(self, conversation_id: str) -> None:
        self._index.pop(conversation_id, None)

    def agent_for(self, conversation_id: str) -> str | None:
        return self._index.get(conversation_id)

    async def find(self, user_id: str, conversation_id: str) -> Conversation | None:
        """Return the user's conversation with this id, or None."""
        agent_id = self._index.get(conversation_id)
        if agent_id is not None:
            conversation = await self.store.get(agent_id, conversation_id)
            if conversation is not None:
                if conversation.owned_by(user_id):
                    return conversation
                logger.warning(f"User {user_id} requested conversation {conversation_id} of another user")
                return None
            # Stale index entry
            self.forget(conversation_id)

        namespaces = await self.store.list_namespaces()
        for namespace in namespaces:
            conversation = await self.store.get(namespace, conversation_id)
            if conversation is None:
                continue
            if not conversation.owned_by(user_id):
                continue
            self.remember(conversation)
            return conversation

        logger.info(f"Conversation {conversation_id} not found in {len(namespaces)} namespaces")
        return None
