"""Local fallback cache for conversations the remote store could not take.

Layout (one keyed file per conversation, never a single per-user blob):

    root/
      local_conversations_<user>/
        <agent>/
          <conversation>.json   # {"conversation": {...}, "sync": {...}}
        ~redirects.json         # migrated local id -> remote address

Writes are atomic (temp file + rename). Blocking filesystem work runs in a
worker thread so the event loop is never blocked.
"""

import asyncio
import hashlib
import logging
import os
import re
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from models import Conversation, Message, SyncProgress
from convosync.config import settings

logger = logging.getLogger(__name__)


def _safe_name(name: str) -> str:
    # Keep it readable but filesystem-safe. Rewritten names get a digest
    # suffix ("~" never survives cleaning) so distinct ids never share a path.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    if s == name and len(s) <= 128 and s not in (".", ".."):
        return s
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    return f"{s[:119]}~{digest}"


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


class LocalRecord(BaseModel):
    """A cached conversation plus its reconciliation progress."""

    conversation: Conversation
    sync: SyncProgress = Field(default_factory=SyncProgress)


class MigrationRedirect(BaseModel):
    """Remote address a migrated local conversation now lives at."""

    agent_id: str
    conversation_id: str


_REDIRECTS = TypeAdapter(dict[str, MigrationRedirect])


class LocalConversationCache:
    """Per-user, per-agent, per-conversation keyed store on local disk."""

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root or settings.local_cache_path)
        self._lock = asyncio.Lock()

    # --------- paths ----------
    def _user_dir(self, user_id: str) -> Path:
        return self.root / f"local_conversations_{_safe_name(user_id)}"

    def _record_path(self, user_id: str, agent_id: str, conversation_id: str) -> Path:
        return self._user_dir(user_id) / _safe_name(agent_id) / f"{_safe_name(conversation_id)}.json"

    # --------- sync helpers (run in a thread) ----------
    def _read(self, path: Path) -> LocalRecord | None:
        if not path.exists():
            return None
        try:
            return LocalRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as e:
            # Corruption fallback: keep a backup and skip the record.
            logger.error(f"Unreadable local conversation {path}: {e}")
            try:
                path.rename(path.with_suffix(".corrupt"))
            except OSError:
                logger.exception(f"Could not move aside corrupt file {path}")
            return None

    def _write(self, record: LocalRecord) -> None:
        conversation = record.conversation
        path = self._record_path(conversation.user_id, conversation.agent_id, conversation.id)
        _atomic_write_text(path, record.model_dump_json(by_alias=True, indent=2))

    def _redirects_path(self, user_id: str) -> Path:
        # Not a directory, so _scan skips it. No agent id maps to a leading "~"
        return self._user_dir(user_id) / "~redirects.json"

    def _read_redirects(self, user_id: str) -> dict[str, MigrationRedirect]:
        path = self._redirects_path(user_id)
        if not path.exists():
            return {}
        try:
            return _REDIRECTS.validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"Unreadable redirect table {path}: {e}")
            return {}

    def _add_redirect(self, user_id: str, conversation_id: str, target: MigrationRedirect) -> None:
        redirects = self._read_redirects(user_id)
        redirects[conversation_id] = target
        _atomic_write_text(self._redirects_path(user_id), _REDIRECTS.dump_json(redirects, indent=2).decode("utf-8"))

    def _scan(self, user_id: str) -> list[LocalRecord]:
        user_dir = self._user_dir(user_id)
        if not user_dir.exists():
            return []
        records = []
        for path in sorted(user_dir.glob("*/*.json")):
            record = self._read(path)
            if record is not None:
                records.append(record)
        return records

    # --------- public API ----------
    async def put(self, conversation: Conversation, sync: SyncProgress | None = None) -> LocalRecord:
        """Store (or replace) a conversation, keeping existing sync progress unless given."""
        async with self._lock:
            path = self._record_path(conversation.user_id, conversation.agent_id, conversation.id)
            if sync is None:
                existing = await asyncio.to_thread(self._read, path)
                sync = existing.sync if existing else SyncProgress()
            record = LocalRecord(conversation=conversation, sync=sync)
            await asyncio.to_thread(self._write, record)
        logger.info(f"Cached conversation {conversation.id} locally for user {conversation.user_id}")
        return record

    async def get(self, user_id: str, agent_id: str, conversation_id: str) -> LocalRecord | None:
        record = await asyncio.to_thread(self._read, self._record_path(user_id, agent_id, conversation_id))
        if record and not record.conversation.owned_by(user_id):
            return None
        return record

    async def find(self, user_id: str, conversation_id: str) -> LocalRecord | None:
        """Locate a cached conversation without knowing its agent."""
        for record in await self.list_records(user_id):
            if record.conversation.id == conversation_id:
                return record
        return None

    async def append_message(
        self,
        user_id: str,
        agent_id: str,
        conversation_id: str,
        message: Message,
    ) -> Conversation | None:
        """Append to a cached conversation; None if it is not cached."""
        async with self._lock:
            path = self._record_path(user_id, agent_id, conversation_id)
            record = await asyncio.to_thread(self._read, path)
            if record is None or not record.conversation.owned_by(user_id):
                return None
            record.conversation.append(message)
            await asyncio.to_thread(self._write, record)
        return record.conversation

    async def update_sync(self, user_id: str, agent_id: str, conversation_id: str, sync: SyncProgress) -> None:
        async with self._lock:
            path = self._record_path(user_id, agent_id, conversation_id)
            record = await asyncio.to_thread(self._read, path)
            if record is None:
                return
            record.sync = sync
            await asyncio.to_thread(self._write, record)

    async def finish_sync(
        self,
        user_id: str,
        agent_id: str,
        conversation_id: str,
        sync: SyncProgress,
    ) -> LocalRecord | None:
        """Remove a record once all of its messages have reached the remote store.

        The check and the delete happen under the cache lock. If messages were
        appended after sync.synced_messages was counted, the current record is
        returned and nothing is deleted. When sync carries a remote id, the
        local id is redirected to it.
        """
        async with self._lock:
            path = self._record_path(user_id, agent_id, conversation_id)
            record = await asyncio.to_thread(self._read, path)
            if record is None:
                return None
            if len(record.conversation.messages) > sync.synced_messages:
                return record

            if sync.remote_id:
                target = MigrationRedirect(agent_id=sync.remote_agent_id or agent_id, conversation_id=sync.remote_id)
                await asyncio.to_thread(self._add_redirect, user_id, conversation_id, target)
            await asyncio.to_thread(path.unlink, missing_ok=True)
        logger.info(f"Removed local copy of conversation {conversation_id}")
        return None

    async def redirect(self, user_id: str, conversation_id: str) -> MigrationRedirect | None:
        """Remote address of a local conversation that has been migrated."""
        redirects = await asyncio.to_thread(self._read_redirects, user_id)
        return redirects.get(conversation_id)

    async def delete(self, user_id: str, agent_id: str, conversation_id: str) -> bool:
        path = self._record_path(user_id, agent_id, conversation_id)

        def _unlink() -> bool:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            return True

        async with self._lock:
            deleted = await asyncio.to_thread(_unlink)
        if deleted:
            logger.info(f"Removed local copy of conversation {conversation_id}")
        return deleted

    async def list_records(self, user_id: str) -> list[LocalRecord]:
        records = await asyncio.to_thread(self._scan, user_id)
        return [r for r in records if r.conversation.owned_by(user_id)]

    async def list_all(self, user_id: str) -> list[Conversation]:
        """All cached conversations of a user, most recently updated first."""
        conversations = [record.conversation for record in await self.list_records(user_id)]
        return sorted(conversations, key=lambda c: c.updated_at, reverse=True)
