"""Conversation service: the public entry point for conversation persistence.

Writes go through the retry controller to the remote store and degrade to
the local cache when the remote store cannot take them. Reads check
ownership and fall back to cached copies when the remote store is down.
Callers (API routes, chat views) use only this module.
"""

import logging
from typing import Any

from models import (
    AddMessageParams,
    Conversation,
    ConversationListItem,
    CreateConversationParams,
    Message,
    SyncProgress,
    UNKNOWN_AGENT_TYPE,
    generate_local_id,
    is_local_id,
)
from convosync.config import settings
from convosync.db import ConversationStore, create_store
from convosync.errors import (
    ConversationNotFound,
    InvalidArgument,
    OwnershipError,
    PermissionDenied,
    RetriesExhausted,
    StoreUnavailable,
)
from convosync.sanitizer import (
    SanitizeLevel,
    build_conversation,
    sanitize_message_metadata,
    sanitize_params,
)
from convosync.services.local_cache import LocalConversationCache
from convosync.services.reconciler import SyncReconciler, SyncReport
from convosync.services.resolver import ConversationResolver
from convosync.services.retry import RetryController

logger = logging.getLogger(__name__)


class ConversationService:
    """Create, append, read and reconcile conversations with local fallback."""

    def __init__(
        self,
        store: ConversationStore | None = None,
        cache: LocalConversationCache | None = None,
        retry: RetryController | None = None,
        list_limit: int | None = None,
    ):
        self.store = store or create_store()
        self.cache = cache or LocalConversationCache()
        self.retry = retry or RetryController()
        self.list_limit = list_limit or settings.list_limit
        self.resolver = ConversationResolver(self.store)
        self.reconciler = SyncReconciler(self.store, self.cache, self.retry)

    # ============= Writes =============

    async def create_conversation_with_fallback(self, params: CreateConversationParams) -> Conversation:
        """Create a conversation remotely, or locally if the store keeps failing."""

        async def attempt(level: SanitizeLevel) -> Conversation:
            cleaned = sanitize_params(params, level)
            conversation = build_conversation(cleaned)
            return await self.store.create(conversation.agent_id, conversation)

        try:
            conversation = await self.retry.run(attempt, "create conversation")
        except OwnershipError:
            raise
        except (RetriesExhausted, PermissionDenied) as e:
            logger.warning(f"Remote create failed, using local cache instead: {e}")
            return await self._create_local(params, e)

        self.resolver.remember(conversation)
        return conversation

    async def _create_local(self, params: CreateConversationParams, cause: Exception) -> Conversation:
        local_id = generate_local_id()
        try:
            conversation = build_conversation(params, local_id)
        except InvalidArgument:
            conversation = build_conversation(sanitize_params(params, SanitizeLevel.STANDARD), local_id)

        try:
            await self.cache.put(conversation, SyncProgress())
        except OSError as local_error:
            logger.error(f"Local cache write failed after remote failure: {local_error}")
            raise local_error from cause
        return conversation

    async def add_message_with_fallback(self, user_id: str, agent_id: str, params: AddMessageParams) -> Message:
        """Append a message remotely, buffering it locally if the store keeps failing."""
        conversation_id = params.conversation_id
        message = Message(
            role=params.role,
            content=params.content,
            metadata=sanitize_message_metadata(params.metadata),
        )

        if is_local_id(conversation_id):
            conversation = await self.cache.append_message(user_id, agent_id, conversation_id, message)
            if conversation is not None:
                return conversation.messages[-1]
            agent_id, conversation_id = await self._migrated_address(user_id, agent_id, conversation_id)

        async def attempt(level: SanitizeLevel) -> Conversation:
            return await self.store.append_message(agent_id, conversation_id, message, user_id)

        try:
            conversation = await self.retry.run(attempt, f"append message to {conversation_id}")
        except OwnershipError:
            raise
        except (RetriesExhausted, PermissionDenied) as e:
            logger.warning(f"Remote append to {conversation_id} failed, buffering locally: {e}")
            return await self._buffer_message(user_id, agent_id, conversation_id, message, e)

        self.resolver.remember(conversation)
        return next(stored for stored in reversed(conversation.messages) if stored.id == message.id)

    async def _migrated_address(self, user_id: str, agent_id: str | None, conversation_id: str) -> tuple[str, str]:
        """Remote (agent id, conversation id) of a local conversation that has been synced."""
        target = await self.cache.redirect(user_id, conversation_id)
        if target is None:
            raise ConversationNotFound(conversation_id, agent_id)
        logger.info(f"Local conversation {conversation_id} was synced as {target.conversation_id}")
        return target.agent_id, target.conversation_id

    async def _buffer_message(
        self,
        user_id: str,
        agent_id: str,
        conversation_id: str,
        message: Message,
        cause: Exception,
    ) -> Message:
        try:
            conversation = await self.cache.append_message(user_id, agent_id, conversation_id, message)
            if conversation is not None:
                return conversation.messages[-1]

            stub = Conversation(
                id=conversation_id,
                agent_id=agent_id,
                agent_type=UNKNOWN_AGENT_TYPE,
                user_id=user_id,
                created_at=message.timestamp,
                updated_at=message.timestamp,
            )
            stored = stub.append(message)
            await self.cache.put(stub, SyncProgress(pending=True))
            return stored
        except OSError as local_error:
            logger.error(f"Local cache write failed after remote failure: {local_error}")
            raise local_error from cause

    async def add_message_to_conversation(self, user_id: str, params: AddMessageParams) -> Message:
        """Append a message when only the conversation id is known."""
        conversation = await self.find_conversation_by_id(user_id, params.conversation_id)
        return await self.add_message_with_fallback(user_id, conversation.agent_id, params)

    async def rename_conversation(self, user_id: str, agent_id: str, conversation_id: str, title: str) -> Conversation:
        return await self._update(user_id, agent_id, conversation_id, title=title)

    async def annotate_conversation(
        self,
        user_id: str,
        agent_id: str,
        conversation_id: str,
        metadata: dict[str, Any],
    ) -> Conversation:
        return await self._update(user_id, agent_id, conversation_id, metadata=metadata)

    async def _update(
        self,
        user_id: str,
        agent_id: str,
        conversation_id: str,
        *,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        if title is not None and not title.strip():
            raise InvalidArgument("Title must not be empty")
        if metadata is not None:
            metadata = sanitize_message_metadata(metadata) or {}

        if is_local_id(conversation_id):
            record = await self.cache.get(user_id, agent_id, conversation_id)
            if record is not None:
                conversation = record.conversation
                if title is not None:
                    conversation.title = title.strip()
                if metadata is not None:
                    conversation.metadata = {**(conversation.metadata or {}), **metadata}
                conversation.touch()
                await self.cache.put(conversation)
                return conversation
            agent_id, conversation_id = await self._migrated_address(user_id, agent_id, conversation_id)

        async def attempt(level: SanitizeLevel) -> Conversation:
            return await self.store.update(
                agent_id,
                conversation_id,
                user_id,
                title=title.strip() if title is not None else None,
                metadata=metadata,
            )

        return await self.retry.run(attempt, f"update conversation {conversation_id}")

    # ============= Reads =============

    async def get_conversation(self, user_id: str, agent_id: str, conversation_id: str) -> Conversation:
        """Get a conversation the user owns; raises ConversationNotFound otherwise."""
        if is_local_id(conversation_id):
            record = await self.cache.get(user_id, agent_id, conversation_id)
            if record is not None:
                return record.conversation
            agent_id, conversation_id = await self._migrated_address(user_id, agent_id, conversation_id)

        try:
            conversation = await self.store.get(agent_id, conversation_id)
        except StoreUnavailable as e:
            record = await self.cache.get(user_id, agent_id, conversation_id)
            if record is None:
                raise
            logger.warning(f"Remote read of {conversation_id} failed, serving cached copy: {e}")
            return record.conversation

        if conversation is None:
            raise ConversationNotFound(conversation_id, agent_id)
        if not conversation.owned_by(user_id):
            logger.warning(f"User {user_id} requested conversation {conversation_id} of another user")
            raise ConversationNotFound(conversation_id, agent_id)

        self.resolver.remember(conversation)
        return await self._with_buffered(user_id, conversation)

    async def find_conversation_by_id(self, user_id: str, conversation_id: str) -> Conversation:
        """Find a conversation without knowing its agent namespace."""
        if is_local_id(conversation_id):
            record = await self.cache.find(user_id, conversation_id)
            if record is not None:
                return record.conversation
            agent_id, remote_id = await self._migrated_address(user_id, None, conversation_id)
            return await self.get_conversation(user_id, agent_id, remote_id)

        try:
            conversation = await self.resolver.find(user_id, conversation_id)
        except StoreUnavailable as e:
            record = await self.cache.find(user_id, conversation_id)
            if record is None:
                raise
            logger.warning(f"Remote lookup of {conversation_id} failed, serving cached copy: {e}")
            return record.conversation

        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return await self._with_buffered(user_id, conversation)

    async def _with_buffered(self, user_id: str, conversation: Conversation) -> Conversation:
        """Overlay messages still buffered locally onto a remote conversation."""
        record = await self.cache.get(user_id, conversation.agent_id, conversation.id)
        if record is None or not record.sync.pending:
            return conversation

        known = {message.id for message in conversation.messages}
        for message in record.conversation.messages:
            if message.id not in known:
                conversation.append(message)
        return conversation

    async def list_conversations(self, user_id: str, agent_type: str | None = None) -> list[ConversationListItem]:
        """List the user's conversations across all agents, remote and local."""
        items: dict[str, ConversationListItem] = {}

        try:
            for agent_id in await self.store.list_namespaces():
                for conversation in await self.store.list_by_user(agent_id, user_id, self.list_limit):
                    self.resolver.remember(conversation)
                    items[conversation.id] = ConversationListItem.from_conversation(conversation)
        except StoreUnavailable as e:
            logger.warning(f"Remote listing failed for user {user_id}, showing cached conversations only: {e}")

        for conversation in await self.cache.list_all(user_id):
            local_item = ConversationListItem.from_conversation(conversation)
            remote_item = items.get(conversation.id)
            if remote_item is None:
                items[conversation.id] = local_item
            elif local_item.updated_at > remote_item.updated_at:
                # Buffered messages are newer than the remote copy
                items[conversation.id] = remote_item.model_copy(
                    update={"updated_at": local_item.updated_at, "last_message": local_item.last_message}
                )

        result = [item for item in items.values() if agent_type is None or item.agent_type == agent_type]
        return sorted(result, key=lambda item: item.updated_at, reverse=True)

    # ============= Reconciliation =============

    async def is_remote_available(self) -> bool:
        return await self.store.is_available()

    async def sync_local_conversations(self, user_id: str) -> SyncReport:
        """Push local-only conversations and buffered messages to the remote store."""
        return await self.reconciler.sync_user(user_id)


# Global service instance (initialized on first use)
_service: ConversationService | None = None


def get_conversation_service() -> ConversationService:
    """Get the global ConversationService instance."""
    global _service
    if _service is None:
        _service = ConversationService()
    return _service
