"""Remote conversation store backends."""

from convosync.config import settings
from convosync.db.base import ConversationStore
from convosync.db.firestore import FirestoreConversationStore
from convosync.db.memory import MemoryConversationStore


def create_store() -> ConversationStore:
    """Build the store selected by settings.store_backend."""
    if settings.store_backend == "memory":
        return MemoryConversationStore(conflict_retries=settings.append_conflict_retries)
    return FirestoreConversationStore()


__all__ = [
    "ConversationStore",
    "FirestoreConversationStore",
    "MemoryConversationStore",
    "create_store",
]
