"""Unit tests for conversation lookup by id alone."""

import pytest
import pytest_asyncio

from convosync.services.resolver import ConversationResolver

NAMESPACES = ["agent-a", "agent-b", "agent-c", "agent-d", "agent-e"]


@pytest_asyncio.fixture
async def populated(memory_store, make_conversation):
    """One conversation per namespace for user-1; returns them by agent id."""
    created = {}
    for agent_id in NAMESPACES:
        created[agent_id] = await memory_store.create(agent_id, make_conversation(agent_id=agent_id, messages=("hi",)))
    return created


class TestConversationResolver:
    """Test namespace resolution."""

    @pytest.mark.asyncio
    async def test_finds_conversation_in_any_namespace(self, memory_store, flaky_store, populated):
        target = populated["agent-b"]
        resolver = ConversationResolver(flaky_store)

        found = await resolver.find("user-1", target.id)

        assert found is not None
        assert found.agent_id == "agent-b"
        assert resolver.agent_for(target.id) == "agent-b"

    @pytest.mark.asyncio
    async def test_found_regardless_of_namespace_order(self, memory_store, populated):
        target = populated["agent-b"]
        memory_store._documents = dict(reversed(list(memory_store._documents.items())))
        resolver = ConversationResolver(memory_store)

        found = await resolver.find("user-1", target.id)

        assert found is not None
        assert found.id == target.id

    @pytest.mark.asyncio
    async def test_not_found_after_scanning_all_namespaces(self, flaky_store, populated):
        resolver = ConversationResolver(flaky_store)

        assert await resolver.find("user-1", "does-not-exist") is None
        assert flaky_store.calls["get"] == len(NAMESPACES)

    @pytest.mark.asyncio
    async def test_index_avoids_scan(self, flaky_store, populated):
        target = populated["agent-d"]
        resolver = ConversationResolver(flaky_store)
        resolver.remember(target)

        found = await resolver.find("user-1", target.id)

        assert found.id == target.id
        assert flaky_store.calls["get"] == 1
        assert flaky_store.calls["list_namespaces"] == 0

    @pytest.mark.asyncio
    async def test_stale_index_entry_falls_back_to_scan(self, flaky_store, populated):
        target = populated["agent-c"]
        resolver = ConversationResolver(flaky_store)
        resolver._index[target.id] = "agent-a"

        found = await resolver.find("user-1", target.id)

        assert found.agent_id == "agent-c"
        assert resolver.agent_for(target.id) == "agent-c"

    @pytest.mark.asyncio
    async def test_other_users_conversation_not_returned(self, flaky_store, populated):
        target = populated["agent-e"]
        resolver = ConversationResolver(flaky_store)

        assert await resolver.find("user-2", target.id) is None

        resolver.remember(target)
        assert await resolver.find("user-2", target.id) is None

    @pytest.mark.asyncio
    async def test_local_ids_not_indexed(self, make_conversation):
        resolver = ConversationResolver(store=None)
        resolver.remember(make_conversation("local_abc"))

        assert resolver.agent_for("local_abc") is None
