"""Tests for the Firestore adapter using a mocked client."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from google.api_core import exceptions as gexc

from models import CreateConversationParams, Message
from convosync.db.firestore import FirestoreConversationStore, check_document_id, translate_errors
from convosync.errors import (
    ConcurrentModification,
    ConversationNotFound,
    InvalidArgument,
    OwnershipError,
    PermissionDenied,
    StoreUnavailable,
)
from convosync.services.conversations import ConversationService

CREATED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def conversation_document(user_id: str = "user-1") -> dict:
    return {
        "agentId": "agent-a",
        "agentType": "copywriting",
        "userId": user_id,
        "title": "Launch email",
        "messages": [
            {"id": "m1", "role": "user", "content": "Draft a launch email", "timestamp": CREATED},
        ],
        "createdAt": CREATED,
        "updatedAt": CREATED,
        "version": 1,
    }


def snapshot(data: dict | None, conversation_id: str = "conv-1"):
    snap = MagicMock()
    snap.id = conversation_id
    snap.exists = data is not None
    snap.to_dict.return_value = data
    snap.update_time = CREATED
    return snap


def store_with_document(data: dict | None, update_side_effect=None):
    client = MagicMock()
    ref = MagicMock()
    ref.get = AsyncMock(return_value=snapshot(data))
    ref.update = AsyncMock(side_effect=update_side_effect)
    client.collection.return_value.document.return_value.collection.return_value.document.return_value = ref
    return FirestoreConversationStore(client=client, conflict_retries=3), client, ref


class TestTranslateErrors:
    """Test mapping of Google API errors onto the store taxonomy."""

    @pytest.mark.parametrize(
        "raised, expected",
        [
            (gexc.InvalidArgument("bad field"), InvalidArgument),
            (gexc.PermissionDenied("rules"), PermissionDenied),
            (gexc.Unauthenticated("no token"), PermissionDenied),
            (gexc.FailedPrecondition("stale"), ConcurrentModification),
            (gexc.Aborted("contention"), ConcurrentModification),
            (gexc.ServiceUnavailable("down"), StoreUnavailable),
            (gexc.DeadlineExceeded("slow"), StoreUnavailable),
            (ConnectionError("reset"), StoreUnavailable),
        ],
    )
    def test_mapping(self, raised, expected):
        with pytest.raises(expected):
            with translate_errors("write conversation"):
                raise raised

    def test_not_found_depends_on_target(self):
        with pytest.raises(ConversationNotFound):
            with translate_errors("update conversation", "conv-1"):
                raise gexc.NotFound("missing")

        with pytest.raises(StoreUnavailable):
            with translate_errors("list namespaces"):
                raise gexc.NotFound("no database")

    def test_other_errors_pass_through(self):
        with pytest.raises(KeyError):
            with translate_errors("write conversation"):
                raise KeyError("bug")


class TestFirestoreConversationStore:
    """Test reads and conditional writes against a mocked client."""

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self):
        store, _, _ = store_with_document(None)

        assert await store.get("agent-a", "conv-1") is None

    @pytest.mark.asyncio
    async def test_get_parses_document(self):
        store, client, _ = store_with_document(conversation_document())

        conversation = await store.get("agent-a", "conv-1")

        assert conversation.id == "conv-1"
        assert conversation.user_id == "user-1"
        assert [m.id for m in conversation.messages] == ["m1"]
        client.collection.assert_called_with("agents")

    @pytest.mark.asyncio
    async def test_append_writes_with_precondition(self):
        store, client, ref = store_with_document(conversation_document())

        conversation = await store.append_message(
            "agent-a", "conv-1", Message(role="assistant", content="Here it is"), "user-1"
        )

        assert [m.content for m in conversation.messages] == ["Draft a launch email", "Here it is"]
        assert conversation.version == 2
        payload = ref.update.await_args.args[0]
        assert len(payload["messages"]) == 2
        assert payload["version"] == 2
        client.write_option.assert_called_with(last_update_time=CREATED)

    @pytest.mark.asyncio
    async def test_append_rereads_after_conflict(self):
        store, _, ref = store_with_document(
            conversation_document(), update_side_effect=[gexc.FailedPrecondition("stale"), None]
        )

        await store.append_message("agent-a", "conv-1", Message(role="assistant", content="hi"), "user-1")

        assert ref.get.await_count == 2
        assert ref.update.await_count == 2

    @pytest.mark.asyncio
    async def test_append_gives_up_after_repeated_conflicts(self):
        store, _, ref = store_with_document(
            conversation_document(), update_side_effect=gexc.FailedPrecondition("stale")
        )

        with pytest.raises(ConcurrentModification):
            await store.append_message("agent-a", "conv-1", Message(role="assistant", content="hi"), "user-1")

        assert ref.update.await_count == 3

    @pytest.mark.asyncio
    async def test_append_rejects_other_user(self):
        store, _, ref = store_with_document(conversation_document(user_id="user-2"))

        with pytest.raises(OwnershipError):
            await store.append_message("agent-a", "conv-1", Message(role="user", content="hi"), "user-1")

        ref.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_append_to_missing_conversation(self):
        store, _, _ = store_with_document(None)

        with pytest.raises(ConversationNotFound):
            await store.append_message("agent-a", "conv-1", Message(role="user", content="hi"), "user-1")

    @pytest.mark.asyncio
    async def test_is_available(self):
        client = MagicMock()
        check = client.collection.return_value.limit.return_value
        check.get = AsyncMock(return_value=[])
        store = FirestoreConversationStore(client=client)

        assert await store.is_available() is True
        client.collection.assert_called_with("_firestore_probe")

        check.get = AsyncMock(side_effect=gexc.ServiceUnavailable("down"))
        assert await store.is_available() is False

        check.get = AsyncMock(side_effect=gexc.PermissionDenied("rules"))
        assert await store.is_available() is False

    @pytest.mark.asyncio
    async def test_append_of_stored_message_is_not_rewritten(self):
        store, _, ref = store_with_document(conversation_document())

        conversation = await store.append_message(
            "agent-a", "conv-1", Message(id="m1", role="user", content="Draft a launch email"), "user-1"
        )

        assert [m.id for m in conversation.messages] == ["m1"]
        assert conversation.version == 1
        ref.update.assert_not_awaited()


class TestDocumentIds:
    """Test rejection of ids that are not a single Firestore path segment."""

    @pytest.mark.parametrize("value", ["team/seo", "", ".", "..", "__reserved__", "x" * 1501, None, 42])
    def test_invalid_ids(self, value):
        with pytest.raises(InvalidArgument):
            check_document_id(value)

    @pytest.mark.parametrize("value", ["agent-a", "team_seo", "local_123", "__partial", "é" * 100])
    def test_valid_ids(self, value):
        assert check_document_id(value) == value

    @pytest.mark.asyncio
    async def test_create_with_slash_in_agent_id(self, make_conversation):
        client = MagicMock()
        store = FirestoreConversationStore(client=client)

        with pytest.raises(InvalidArgument):
            await store.create("team/seo", make_conversation(agent_id="team/seo"))

        client.collection.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_with_slash_in_conversation_id(self):
        store, _, ref = store_with_document(conversation_document())

        with pytest.raises(InvalidArgument):
            await store.get("agent-a", "conv/1")

        ref.get.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_service_sanitizes_slash_in_agent_id(self, cache, retry, sleep):
        client = MagicMock()
        chats = client.collection.return_value.document.return_value.collection.return_value
        chats.add = AsyncMock(return_value=(None, MagicMock(id="new-id")))
        service = ConversationService(store=FirestoreConversationStore(client=client), cache=cache, retry=retry)

        conversation = await service.create_conversation_with_fallback(
            CreateConversationParams(agent_id="team/seo", agent_type="seo", user_id="user-1", title="Audit")
        )

        assert conversation.id == "new-id"
        assert conversation.agent_id == "team_seo"
        client.collection.return_value.document.assert_called_once_with("team_seo")
        assert sleep.delays == [1.0]
        assert await cache.list_records("user-1") == []
