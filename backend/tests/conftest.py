"""Shared fixtures for conversation persistence tests."""

from collections import defaultdict

import pytest

from models import Conversation, Message
from convosync.db import MemoryConversationStore
from convosync.services.conversations import ConversationService
from convosync.services.local_cache import LocalConversationCache
from convosync.services.retry import RetryController


class RecordingSleep:
    """Stands in for asyncio.sleep and records the requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyStore:
    """Wraps a store and injects failures into selected operations.

    fail() queues errors raised by the next calls of an operation;
    fail_always() raises on every call until clear() is called.
    """

    def __init__(self, inner: MemoryConversationStore):
        self.inner = inner
        self.available = True
        self.calls: dict[str, int] = defaultdict(int)
        self._queued: dict[str, list[Exception]] = defaultdict(list)
        self._always: dict[str, Exception] = {}

    def fail(self, operation: str, error: Exception, times: int = 1) -> None:
        self._queued[operation].extend([error] * times)

    def fail_always(self, operation: str, error: Exception) -> None:
        self._always[operation] = error

    def clear(self) -> None:
        self._queued.clear()
        self._always.clear()

    async def _call(self, operation: str, *args, **kwargs):
        self.calls[operation] += 1
        if operation in self._always:
            raise self._always[operation]
        if self._queued[operation]:
            raise self._queued[operation].pop(0)
        return await getattr(self.inner, operation)(*args, **kwargs)

    async def create(self, agent_id, conversation):
        return await self._call("create", agent_id, conversation)

    async def get(self, agent_id, conversation_id):
        return await self._call("get", agent_id, conversation_id)

    async def append_message(self, agent_id, conversation_id, message, user_id):
        return await self._call("append_message", agent_id, conversation_id, message, user_id)

    async def update(self, agent_id, conversation_id, user_id, *, title=None, metadata=None):
        return await self._call("update", agent_id, conversation_id, user_id, title=title, metadata=metadata)

    async def list_by_user(self, agent_id, user_id, limit=50):
        return await self._call("list_by_user", agent_id, user_id, limit)

    async def list_namespaces(self):
        return await self._call("list_namespaces")

    async def is_available(self):
        self.calls["is_available"] += 1
        return self.available


@pytest.fixture
def memory_store():
    return MemoryConversationStore()


@pytest.fixture
def flaky_store(memory_store):
    return FlakyStore(memory_store)


@pytest.fixture
def cache(tmp_path):
    return LocalConversationCache(tmp_path / "cache")


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def retry(sleep):
    return RetryController(max_retries=3, base_delay=1.0, max_delay=10.0, sleep=sleep)


@pytest.fixture
def service(flaky_store, cache, retry):
    return ConversationService(store=flaky_store, cache=cache, retry=retry)


@pytest.fixture
def make_conversation():
    """Factory for conversations with a few messages."""

    def _make(
        conversation_id: str = "",
        user_id: str = "user-1",
        agent_id: str = "agent-a",
        agent_type: str = "copywriting",
        messages: tuple[str, ...] = (),
        **kwargs,
    ) -> Conversation:
        conversation = Conversation(
            id=conversation_id,
            agent_id=agent_id,
            agent_type=agent_type,
            user_id=user_id,
            **kwargs,
        )
        for index, content in enumerate(messages):
            role = "user" if index % 2 == 0 else "assistant"
            conversation.append(Message(role=role, content=content))
        return conversation

    return _make
