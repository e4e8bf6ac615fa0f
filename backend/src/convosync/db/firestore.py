"""Firestore client for conversation persistence.

Conversations are stored hierarchically under the agent they belong to:
agents/{agent_id}/chats/{conversation_id}. Appends rewrite the whole message
list, conditioned on the document's last update time so concurrent writers
cannot silently overwrite each other.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from google.api_core import exceptions as gexc
from google.auth import exceptions as auth_exceptions
from google.cloud import firestore

from models import Conversation, Message
from convosync.config import settings
from convosync.errors import (
    ConcurrentModification,
    ConversationNotFound,
    ConversationStoreError,
    InvalidArgument,
    OwnershipError,
    PermissionDenied,
    StoreUnavailable,
)
from convosync.sanitizer import sanitize_document

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.ResourceExhausted,
    gexc.GatewayTimeout,
    gexc.RetryError,
    auth_exceptions.TransportError,
    auth_exceptions.DefaultCredentialsError,
    ConnectionError,
    TimeoutError,
)


@contextmanager
def translate_errors(description: str, conversation_id: str | None = None) -> Iterator[None]:
    """Map Google API failures onto the conversation store taxonomy."""
    try:
        yield
    except gexc.InvalidArgument as e:
        raise InvalidArgument(f"{description}: {e.message}") from e
    except (gexc.PermissionDenied, gexc.Unauthenticated) as e:
        raise PermissionDenied(f"{description}: {e.message}") from e
    except gexc.NotFound as e:
        if conversation_id is None:
            raise StoreUnavailable(f"{description}: {e.message}") from e
        raise ConversationNotFound(conversation_id) from e
    except (gexc.FailedPrecondition, gexc.Aborted, gexc.Conflict) as e:
        raise ConcurrentModification(f"{description}: {e.message}") from e
    except _TRANSIENT_ERRORS as e:
        raise StoreUnavailable(f"{description}: {e}") from e


def check_document_id(value: Any, kind: str = "document id") -> str:
    """Reject ids Firestore cannot use as a single path segment."""
    if (
        not isinstance(value, str)
        or not value
        or "/" in value
        or value in (".", "..")
        or (value.startswith("__") and value.endswith("__"))
        or len(value.encode("utf-8")) > 1500
    ):
        raise InvalidArgument(f"Invalid {kind}: {value!r}")
    return value


class FirestoreConversationStore:
    """Client for managing conversations in Firestore."""

    def __init__(
        self,
        client: firestore.AsyncClient | None = None,
        *,
        namespace_collection: str | None = None,
        conversation_subcollection: str | None = None,
        probe_collection: str | None = None,
        conflict_retries: int | None = None,
    ):
        self._client = client
        self.namespace_collection = namespace_collection or settings.namespace_collection
        self.conversation_subcollection = conversation_subcollection or settings.conversation_subcollection
        self.probe_collection = probe_collection or settings.probe_collection
        self.conflict_retries = conflict_retries or settings.append_conflict_retries

    @property
    def client(self) -> firestore.AsyncClient:
        """Firestore client, created on first use so credentials are resolved lazily."""
        if self._client is None:
            with translate_errors("connect to Firestore"):
                self._client = firestore.AsyncClient(
                    project=settings.google_cloud_project or None,
                    database=settings.firestore_database,
                )
        return self._client

    def _chats(self, agent_id: str):
        agent_id = check_document_id(agent_id, "agent id")
        return (
            self.client.collection(self.namespace_collection)
            .document(agent_id)
            .collection(self.conversation_subcollection)
        )

    def _document(self, agent_id: str, conversation_id: str):
        return self._chats(agent_id).document(check_document_id(conversation_id, "conversation id"))

    async def create(self, agent_id: str, conversation: Conversation) -> Conversation:
        """Create a new conversation document; Firestore assigns the id."""
        data = sanitize_document(conversation.to_document())
        data["agentId"] = agent_id
        data["version"] = 1

        with translate_errors(f"create conversation under agent {agent_id}"):
            _, ref = await self._chats(agent_id).add(data)

        logger.info(f"Created conversation {ref.id} under agent {agent_id}")
        return Conversation.from_document(ref.id, agent_id, data)

    async def get(self, agent_id: str, conversation_id: str) -> Conversation | None:
        """Get a conversation by its full address."""
        with translate_errors(f"get conversation {conversation_id}"):
            snapshot = await self._document(agent_id, conversation_id).get()
        if not snapshot.exists:
            return None
        return Conversation.from_document(snapshot.id, agent_id, snapshot.to_dict() or {})

    async def append_message(
        self,
        agent_id: str,
        conversation_id: str,
        message: Message,
        user_id: str,
    ) -> Conversation:
        """Append a message with a read-modify-write of the message list."""

        def mutate(conversation: Conversation, data: dict[str, Any]) -> dict[str, Any] | None:
            if any(existing.id == message.id for existing in conversation.messages):
                # Already stored by an attempt whose reply was lost
                return None
            title = conversation.title
            stored = conversation.append(message)
            payload: dict[str, Any] = {
                "messages": list(data.get("messages") or [])
                + [sanitize_document(stored.model_dump(by_alias=True))],
                "updatedAt": conversation.updated_at,
            }
            if conversation.title != title:
                payload["title"] = conversation.title
            return payload

        return await self._conditional_write(agent_id, conversation_id, user_id, mutate, "append message to")

    async def update(
        self,
        agent_id: str,
        conversation_id: str,
        user_id: str,
        *,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        """Retitle or annotate a conversation (metadata is merged)."""

        def mutate(conversation: Conversation, data: dict[str, Any]) -> dict[str, Any]:
            payload: dict[str, Any] = {}
            if title is not None:
                conversation.title = title
                payload["title"] = sanitize_document(title)
            if metadata is not None:
                merged = {**(conversation.metadata or {}), **metadata}
                conversation.metadata = sanitize_document(merged)
                payload["metadata"] = conversation.metadata
            conversation.touch()
            payload["updatedAt"] = conversation.updated_at
            return payload

        return await self._conditional_write(agent_id, conversation_id, user_id, mutate, "update")

    async def _conditional_write(self, agent_id, conversation_id, user_id, mutate, verb) -> Conversation:
        ref = self._document(agent_id, conversation_id)
        description = f"{verb} conversation {conversation_id}"

        for attempt in range(1, self.conflict_retries + 1):
            with translate_errors(description):
                snapshot = await ref.get()
            if not snapshot.exists:
                raise ConversationNotFound(conversation_id, agent_id)

            data = snapshot.to_dict() or {}
            conversation = Conversation.from_document(snapshot.id, agent_id, data)
            if not conversation.owned_by(user_id):
                logger.warning(f"User {user_id} attempted to modify conversation {conversation_id} of another user")
                raise OwnershipError(conversation_id, user_id)

            payload = mutate(conversation, data)
            if payload is None:
                return conversation
            conversation.version += 1
            payload["version"] = conversation.version

            try:
                with translate_errors(description, conversation_id):
                    await ref.update(
                        payload,
                        option=self.client.write_option(last_update_time=snapshot.update_time),
                    )
            except ConcurrentModification:
                logger.info(f"Conversation {conversation_id} changed concurrently (attempt {attempt}), re-reading")
                continue
            return conversation

        raise ConcurrentModification(f"{description}: still conflicting after {self.conflict_retries} attempts")

    async def list_by_user(self, agent_id: str, user_id: str, limit: int = 50) -> list[Conversation]:
        """List conversations for a user under one agent."""
        query = (
            self._chats(agent_id)
            .where(filter=firestore.FieldFilter("userId", "==", user_id))
            .order_by("updatedAt", direction=firestore.Query.DESCENDING)
            .limit(limit)
        )
        with translate_errors(f"list conversations of agent {agent_id}"):
            return [
                Conversation.from_document(snapshot.id, agent_id, snapshot.to_dict() or {})
                async for snapshot in query.stream()
            ]

    async def list_namespaces(self) -> list[str]:
        """List agent ids that hold conversations."""
        with translate_errors("list agent namespaces"):
            return [ref.id async for ref in self.client.collection(self.namespace_collection).list_documents()]

    async def is_available(self) -> bool:
        """Check that Firestore answers a trivial query."""
        try:
            with translate_errors("check Firestore availability"):
                await self.client.collection(self.probe_collection).limit(1).get()
        except PermissionDenied:
            logger.warning("Firestore reachable but access is denied")
            return False
        except (ConversationStoreError, gexc.GoogleAPICallError) as e:
            logger.warning(f"Firestore unavailable: {e}")
            return False
        return True
