"""Reconcile locally cached conversations with the remote store.

Local-only conversations are migrated in three persisted steps so an
interrupted run resumes instead of starting over:

    not-started -> shell-created (remote id recorded) -> complete

Messages are replayed one at a time in their original order and the number
already replayed is persisted after each append. Buffered messages for
conversations that already exist remotely are drained by appending only the
messages whose ids the remote copy does not hold yet.
"""

import logging
from dataclasses import dataclass, field

from models import CreateConversationParams, SyncProgress, SyncState
from convosync.db import ConversationStore
from convosync.errors import ConversationNotFound, ConversationStoreError, OwnershipError
from convosync.sanitizer import build_conversation, sanitize_params
from convosync.services.local_cache import LocalConversationCache, LocalRecord
from convosync.services.retry import RetryController

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """Outcome of one reconciliation run for a user."""

    user_id: str
    skipped: bool = False
    migrated: dict[str, str] = field(default_factory=dict)  # local id -> remote id
    drained: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)  # conversation id -> error


class SyncReconciler:
    """Moves local-cache records back into the remote store."""

    def __init__(self, store: ConversationStore, cache: LocalConversationCache, retry: RetryController):
        self.store = store
        self.cache = cache
        self.retry = retry

    async def sync_user(self, user_id: str) -> SyncReport:
        report = SyncReport(user_id=user_id)

        if not await self.store.is_available():
            logger.info(f"Remote store unavailable, skipping sync for user {user_id}")
            report.skipped = True
            return report

        records = await self.cache.list_records(user_id)
        if not records:
            return report

        logger.info(f"Syncing {len(records)} local conversations for user {user_id}")
        for record in records:
            conversation = record.conversation
            try:
                if conversation.is_local:
                    report.migrated[conversation.id] = await self._migrate(record)
                elif record.sync.pending:
                    await self._drain(record)
                    report.drained.append(conversation.id)
            except ConversationStoreError as e:
                logger.error(f"Failed to sync conversation {conversation.id}: {e}")
                report.failed[conversation.id] = str(e)

        logger.info(
            f"Sync finished for user {user_id}: {len(report.migrated)} migrated, "
            f"{len(report.drained)} drained, {len(report.failed)} failed"
        )
        return report

    async def _migrate(self, record: LocalRecord) -> str:
        """Create the remote shell if needed, then replay the remaining messages."""
        local = record.conversation
        sync = record.sync.model_copy()

        if sync.state == SyncState.NOT_STARTED or sync.remote_id is None:
            params = CreateConversationParams(
                title=local.title,
                agent_id=local.agent_id,
                agent_type=local.agent_type,
                user_id=local.user_id,
                metadata=local.metadata,
            )

            async def create_shell(level):
                cleaned = sanitize_params(params, level)
                return await self.store.create(cleaned.agent_id, build_conversation(cleaned))

            shell = await self.retry.run(create_shell, f"create remote copy of {local.id}")
            sync = SyncProgress(
                state=SyncState.SHELL_CREATED,
                remote_id=shell.id,
                remote_agent_id=shell.agent_id,
            )
            await self.cache.update_sync(local.user_id, local.agent_id, local.id, sync)
            logger.info(f"Created remote conversation {shell.id} for local conversation {local.id}")

        remote_agent_id = sync.remote_agent_id or local.agent_id
        while True:
            for index in range(sync.synced_messages, len(local.messages)):
                message = local.messages[index]

                async def replay(level, message=message):
                    return await self.store.append_message(remote_agent_id, sync.remote_id, message, local.user_id)

                await self.retry.run(replay, f"replay message {index + 1} of {local.id}")
                sync.synced_messages = index + 1
                await self.cache.update_sync(local.user_id, local.agent_id, local.id, sync)

            # Messages appended while replaying come back here instead of being deleted
            remaining = await self.cache.finish_sync(
                local.user_id,
                local.agent_id,
                local.id,
                sync.model_copy(update={"state": SyncState.COMPLETE}),
            )
            if remaining is None:
                return sync.remote_id
            logger.info(f"New messages arrived in {local.id} during sync, replaying them")
            local = remaining.conversation

    async def _drain(self, record: LocalRecord) -> None:
        """Append buffered messages the remote copy does not have yet.

        The remote copy is authoritative for everything it already holds;
        title and metadata are never overwritten from the local copy.
        """
        local = record.conversation

        async def fetch(level):
            remote = await self.store.get(local.agent_id, local.id)
            if remote is None:
                raise ConversationNotFound(local.id, local.agent_id)
            return remote

        while True:
            remote = await self.retry.run(fetch, f"fetch remote copy of {local.id}")
            if not remote.owned_by(local.user_id):
                raise OwnershipError(local.id, local.user_id)

            known = {message.id for message in remote.messages}
            missing = [message for message in local.messages if message.id not in known]
            for message in missing:

                async def replay(level, message=message):
                    return await self.store.append_message(local.agent_id, local.id, message, local.user_id)

                await self.retry.run(replay, f"drain message {message.id} into {local.id}")

            logger.info(f"Drained {len(missing)} buffered messages into conversation {local.id}")
            drained = SyncProgress(pending=True, synced_messages=len(local.messages))
            remaining = await self.cache.finish_sync(local.user_id, local.agent_id, local.id, drained)
            if remaining is None:
                return
            local = remaining.conversation
