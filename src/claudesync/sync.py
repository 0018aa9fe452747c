"""Reconcile the remote conversation list with the local index and download content."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable

from .config import HUMAN_SENDER
from .errors import AuthRejected, ClaudeSyncError, CredentialMissing, NotFoundRemotely
from .gateway import TransportGateway, first_field, parse_timestamp
from .models import (
    ConversationRecord,
    CredentialBundle,
    DownloadReport,
    FullConversationRecord,
    MessageRecord,
    Role,
    SendResult,
    SyncResult,
    SyncStats,
    utcnow,
)
from .storage import ConversationStore

logger = logging.getLogger(__name__)

MESSAGE_ID_FIELDS = ("uuid", "id")
MESSAGE_TIME_FIELDS = ("created_at", "timestamp")


def should_update(local: ConversationRecord, remote: ConversationRecord, force: bool = False) -> bool:
    """Whether a remote record carries news for the local one."""
    if force:
        return True
    return (
        remote.updated_at > local.updated_at
        or remote.title != local.title
        or remote.message_count != local.message_count
    )


def merge_record(local: ConversationRecord, remote: ConversationRecord) -> ConversationRecord:
    """Remote metadata, local download state. Download state never regresses."""
    return remote.model_copy(update={"is_downloaded": local.is_downloaded})


def locate_messages(payload: Any) -> list[Any] | None:
    """Find the message list in a conversation detail payload."""
    if isinstance(payload, dict):
        for key in ("messages", "chat_messages"):
            if isinstance(payload.get(key), list):
                return payload[key]
        return None
    if isinstance(payload, list):
        return payload
    return None


def normalize_message(raw: Any, index: int, conversation_id: str) -> MessageRecord:
    raw = raw if isinstance(raw, dict) else {}
    parent = raw.get("parent_message_uuid")
    return MessageRecord(
        id=str(first_field(raw, MESSAGE_ID_FIELDS) or f"msg_{index}"),
        role=Role.HUMAN if raw.get("sender") == HUMAN_SENDER else Role.ASSISTANT,
        content=_message_text(raw),
        timestamp=parse_timestamp(first_field(raw, MESSAGE_TIME_FIELDS), utcnow()),
        conversation_id=conversation_id,
        parent_message_id=str(parent) if parent else None,
    )


def _message_text(raw: dict[str, Any]) -> str:
    text = raw.get("text")
    if isinstance(text, str) and text:
        return text
    content = raw.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Content blocks: [{"type": "text", "text": "..."}, ...]
        return "\n".join(
            block["text"]
            for block in content
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        )
    return ""


class ConversationSync:
    """Keeps the local store in step with the remote conversation list.

    Store-mutating operations of one instance run one at a time, so two
    passes never merge against the same stale index.
    """

    def __init__(
        self,
        gateway: TransportGateway,
        store: ConversationStore,
        credentials: CredentialBundle | None,
    ):
        self.gateway = gateway
        self.store = store
        self.credentials = credentials
        self._lock = asyncio.Lock()

    def _cred(self) -> CredentialBundle:
        if self.credentials is None:
            raise CredentialMissing("No authentication tokens found.")
        return self.credentials

    # -- reconciliation ----------------------------------------------------------

    async def sync(self, force: bool = False, create_placeholders: bool = True) -> SyncResult:
        """Merge the remote list into the local index."""
        async with self._lock:
            logger.info("Starting conversation sync...")
            remote = await self.gateway.list_conversations(self._cred())
            if not remote:
                logger.warning("No conversations found in the remote account")

            index = self.store.load_index()
            local_by_id = {r.id: r for r in index.conversations}
            result = SyncResult()
            merged: list[ConversationRecord] = []
            seen: set[str] = set()

            for remote_record in remote:
                if remote_record.id in seen:
                    logger.debug("Ignoring duplicate remote id %s", remote_record.id)
                    continue
                seen.add(remote_record.id)
                local = local_by_id.get(remote_record.id)

                if local is None:
                    logger.debug("New conversation found: %s", remote_record.title)
                    merged.append(remote_record)
                    result.new_count += 1
                    if create_placeholders:
                        try:
                            self.store.create_placeholder(remote_record)
                        except (OSError, ValueError) as e:
                            result.errors.append(
                                f"Failed to create placeholder for {remote_record.id}: {e}"
                            )
                elif should_update(local, remote_record, force):
                    logger.debug("Updated conversation: %s", remote_record.title)
                    merged.append(merge_record(local, remote_record))
                    result.updated_count += 1
                else:
                    merged.append(local)

            # Local records the remote list no longer mentions are kept as they are
            merged.extend(r for r in index.conversations if r.id not in seen)

            self.store.save_index(merged, synced_at=utcnow())
            result.total = len(merged)
            logger.info(
                "Sync complete: %d total, %d new, %d updated, %d errors",
                result.total,
                result.new_count,
                result.updated_count,
                len(result.errors),
            )
            return result

    async def sync_single_conversation(self, conversation_id: str) -> ConversationRecord:
        async with self._lock:
            return await self._sync_single(conversation_id)

    async def _sync_single(self, conversation_id: str) -> ConversationRecord:
        logger.info("Syncing conversation: %s", conversation_id)
        # No single-item metadata endpoint: refetch the list
        remote = await self.gateway.list_conversations(self._cred())
        found = next((r for r in remote if r.id == conversation_id), None)
        if found is None:
            raise NotFoundRemotely(f"Conversation {conversation_id} not found remotely")

        index = self.store.load_index()
        local = index.get(conversation_id)
        if local is None:
            records = [*index.conversations, found]
            record = found
        else:
            record = merge_record(local, found)
            records = [record if r.id == conversation_id else r for r in index.conversations]
        self.store.save_index(records)
        return record

    # -- download ----------------------------------------------------------------

    async def download_conversation(self, conversation_id: str) -> FullConversationRecord | None:
        """Fetch the full message history and mark the conversation downloaded.

        Returns None (without error) when the detail payload holds no
        recognizable message list.
        """
        async with self._lock:
            return await self._download(conversation_id)

    async def _download(self, conversation_id: str) -> FullConversationRecord | None:
        logger.info("Downloading full conversation: %s", conversation_id)
        metadata = self.store.get(conversation_id)
        if metadata is None:
            logger.warning("Conversation %s not found in index. Syncing first...", conversation_id)
            metadata = await self._sync_single(conversation_id)

        payload = await self.gateway.fetch_conversation_detail(self._cred(), conversation_id)
        raw_messages = locate_messages(payload)
        if raw_messages is None:
            keys = ", ".join(payload) if isinstance(payload, dict) else type(payload).__name__
            logger.warning("No messages found in conversation data. Response keys: %s", keys)
            return None

        messages = [
            normalize_message(raw, i, conversation_id) for i, raw in enumerate(raw_messages)
        ]
        record = FullConversationRecord(
            **metadata.model_dump(exclude={"is_downloaded", "message_count"}),
            message_count=len(messages),
            is_downloaded=True,
            messages=messages,
        )
        self.store.save_full_conversation(record)
        self.store.mark_downloaded(conversation_id, message_count=len(messages))
        logger.info("Saved %d messages for conversation %s", len(messages), conversation_id)
        return record

    async def download_all(self, limit: int | None = None, only_missing: bool = True) -> DownloadReport:
        """Download many conversations. One failed item does not stop the batch."""
        async with self._lock:
            records = self.store.list_conversations()
            if only_missing:
                records = [r for r in records if not r.is_downloaded]
            if limit is not None and limit > 0:
                records = records[:limit]

            report = DownloadReport()
            for position, record in enumerate(records, 1):
                logger.info("[%d/%d] Downloading: %s", position, len(records), record.title)
                try:
                    result = await self._download(record.id)
                except (AuthRejected, CredentialMissing):
                    raise
                except ClaudeSyncError as e:
                    report.errors.append(f"{record.id}: {e.message}")
                    continue
                if result is None:
                    report.skipped.append(record.id)
                else:
                    report.downloaded.append(record.id)
            return report

    # -- stats -------------------------------------------------------------------

    async def stats(self) -> SyncStats:
        connected = False
        if self.credentials is not None:
            connected = await self.gateway.test_connection(self.credentials)
        return SyncStats(connected=connected, local=self.store.stats())

    # -- conversations and messages ----------------------------------------------------

    async def start_conversation(self, title: str | None = None) -> FullConversationRecord:
        """Create a conversation remotely and record it locally with an empty history."""
        async with self._lock:
            conversation_id = await self.gateway.create_conversation(self._cred(), title)
            now = utcnow()
            record = FullConversationRecord(
                id=conversation_id,
                title=title or "New Conversation",
                created_at=now,
                updated_at=now,
                message_count=0,
                is_downloaded=True,
                organization_id=self._cred().organization_id,
            )
            self.store.save_full_conversation(record)
            index = self.store.load_index()
            self.store.save_index([*index.conversations, record.metadata()])
            return record

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        parent_message_id: str | None = None,
        on_update: Callable[[str], None] | None = None,
    ) -> SendResult:
        """Send a message; append both turns to the local record if there is one."""
        async with self._lock:
            result = await self.gateway.send_message(
                self._cred(), conversation_id, text, parent_message_id, on_update
            )
            if self.store.conversation_path(conversation_id).exists():
                self._append_turn(conversation_id, text, result.text, parent_message_id)
            else:
                logger.debug("Conversation %s not downloaded, reply not stored", conversation_id)
            return result

    def _append_turn(
        self, conversation_id: str, prompt: str, reply: str, parent_message_id: str | None
    ) -> None:
        record = self.store.load_full_conversation(conversation_id)
        now = utcnow()
        if parent_message_id is None and record.messages:
            parent_message_id = record.messages[-1].id

        human = MessageRecord(
            id=f"local_{uuid.uuid4().hex}",
            role=Role.HUMAN,
            content=prompt,
            timestamp=now,
            conversation_id=conversation_id,
            parent_message_id=parent_message_id,
        )
        assistant = MessageRecord(
            id=f"local_{uuid.uuid4().hex}",
            role=Role.ASSISTANT,
            content=reply,
            timestamp=now,
            conversation_id=conversation_id,
            parent_message_id=human.id,
        )
        messages = [*record.messages, human, assistant]
        record = record.model_copy(
            update={"messages": messages, "message_count": len(messages), "updated_at": now}
        )
        self.store.save_full_conversation(record)

        index = self.store.load_index()
        self.store.save_index(
            [record.metadata() if r.id == conversation_id else r for r in index.conversations]
        )
