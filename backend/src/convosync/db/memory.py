"""In-memory conversation store for local development and tests.

Mirrors the Firestore document layout and behaviour closely enough that the
service layer cannot tell the two apart: ids are assigned on create, payloads
go through the same document sanitizer, path-breaking identifiers are
rejected as invalid arguments and writes are version-checked.
"""

import asyncio
import copy
import logging
from typing import Any

from models import Conversation, Message, generate_id
from convosync.errors import (
    ConcurrentModification,
    ConversationNotFound,
    InvalidArgument,
    OwnershipError,
)
from convosync.sanitizer import sanitize_document

logger = logging.getLogger(__name__)


class MemoryConversationStore:
    """Dictionary-backed store keyed by agent id, then conversation id.

    Call reset() between tests to clear state.
    """

    def __init__(self, conflict_retries: int = 5):
        self.conflict_retries = conflict_retries
        self.reset()

    def reset(self):
        """Reset all stored documents."""
        self._documents: dict[str, dict[str, dict[str, Any]]] = {}
        self.available = True
        logger.info("Memory conversation store reset")

    @staticmethod
    def _validate_path(agent_id: Any, conversation_id: Any = "") -> None:
        for part in (agent_id, conversation_id):
            if not isinstance(part, str) or "/" in part:
                raise InvalidArgument(f"Invalid document path segment: {part!r}")
        if not agent_id:
            raise InvalidArgument("Agent id must not be empty")

    async def create(self, agent_id: str, conversation: Conversation) -> Conversation:
        self._validate_path(agent_id)
        if not isinstance(conversation.user_id, str) or not conversation.user_id:
            raise InvalidArgument("userId must be a non-empty string")

        data = sanitize_document(conversation.to_document())
        data["agentId"] = agent_id
        data["version"] = 1
        conversation_id = generate_id()
        self._documents.setdefault(agent_id, {})[conversation_id] = data
        return Conversation.from_document(conversation_id, agent_id, copy.deepcopy(data))

    async def get(self, agent_id: str, conversation_id: str) -> Conversation | None:
        self._validate_path(agent_id, conversation_id)
        data = self._documents.get(agent_id, {}).get(conversation_id)
        if data is None:
            return None
        return Conversation.from_document(conversation_id, agent_id, copy.deepcopy(data))

    async def append_message(
        self,
        agent_id: str,
        conversation_id: str,
        message: Message,
        user_id: str,
    ) -> Conversation:
        def mutate(conversation: Conversation, data: dict[str, Any]) -> bool:
            if any(existing.id == message.id for existing in conversation.messages):
                # Already stored by an attempt whose reply was lost
                return False
            stored = conversation.append(message)
            data["messages"] = list(data.get("messages") or []) + [
                sanitize_document(stored.model_dump(by_alias=True))
            ]
            data["title"] = conversation.title
            data["updatedAt"] = conversation.updated_at
            return True

        return await self._conditional_write(agent_id, conversation_id, user_id, mutate)

    async def update(
        self,
        agent_id: str,
        conversation_id: str,
        user_id: str,
        *,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        def mutate(conversation: Conversation, data: dict[str, Any]) -> bool:
            if title is not None:
                conversation.title = title
                data["title"] = sanitize_document(title)
            if metadata is not None:
                conversation.metadata = sanitize_document({**(conversation.metadata or {}), **metadata})
                data["metadata"] = conversation.metadata
            conversation.touch()
            data["updatedAt"] = conversation.updated_at
            return True

        return await self._conditional_write(agent_id, conversation_id, user_id, mutate)

    async def _conditional_write(self, agent_id, conversation_id, user_id, mutate) -> Conversation:
        self._validate_path(agent_id, conversation_id)
        for _ in range(self.conflict_retries):
            current = self._documents.get(agent_id, {}).get(conversation_id)
            if current is None:
                raise ConversationNotFound(conversation_id, agent_id)
            data = copy.deepcopy(current)
            conversation = Conversation.from_document(conversation_id, agent_id, copy.deepcopy(data))
            if not conversation.owned_by(user_id):
                raise OwnershipError(conversation_id, user_id)

            if not mutate(conversation, data):
                return conversation
            conversation.version += 1
            data["version"] = conversation.version

            # Yield between read and write, as a network round trip would
            await asyncio.sleep(0)
            if self._documents[agent_id][conversation_id].get("version") != current.get("version"):
                continue
            self._documents[agent_id][conversation_id] = data
            return conversation

        raise ConcurrentModification(f"Conversation {conversation_id} still conflicting")

    async def list_by_user(self, agent_id: str, user_id: str, limit: int = 50) -> list[Conversation]:
        conversations = [
            Conversation.from_document(conversation_id, agent_id, copy.deepcopy(data))
            for conversation_id, data in self._documents.get(agent_id, {}).items()
            if data.get("userId") == user_id
        ]
        conversations.sort(key=lambda c: c.updated_at, reverse=True)
        return conversations[:limit]

    async def list_namespaces(self) -> list[str]:
        return list(self._documents)

    async def is_available(self) -> bool:
        return self.available
