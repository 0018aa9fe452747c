"""JSON file storage for the conversation index and per-conversation records.

Layout under the data directory::

    sessions.json                       the SyncIndex
    sessions/<id>.json                  a downloaded FullConversationRecord
    sessions/<id>_placeholder.json      metadata known, messages not fetched yet

Every write replaces a whole file, so a reader never sees a torn record.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from .config import INDEX_FILENAME, PLACEHOLDER_SUFFIX, SESSIONS_DIRNAME
from .errors import IndexCorrupted, NotFoundLocally
from .models import (
    ConversationRecord,
    FullConversationRecord,
    StoreStats,
    SyncIndex,
)

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]*$")


def ensure_private_dir(path: Path) -> Path:
    """Create a directory readable only by the current user."""
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    return path


def write_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` in one step, with 0600 permissions."""
    ensure_private_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class ConversationStore:
    """File-backed storage for the sync index and conversation records."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.index_path = self.root / INDEX_FILENAME
        self.sessions_dir = self.root / SESSIONS_DIRNAME

    # -- index ---------------------------------------------------------------

    def load_index(self) -> SyncIndex:
        """Load the index. A missing index is the initial, empty state."""
        if not self.index_path.exists():
            logger.debug("No index at %s, starting empty", self.index_path)
            return SyncIndex()

        try:
            index = SyncIndex.model_validate_json(self.index_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise IndexCorrupted(f"Cannot read conversation index {self.index_path}: {e}") from e

        logger.debug("Loaded %d conversations from index", len(index.conversations))
        return index

    def save_index(
        self,
        conversations: list[ConversationRecord],
        synced_at: datetime | None = None,
    ) -> SyncIndex:
        """Replace the whole index.

        ``synced_at`` becomes the new last-sync time; when omitted the
        previous one is kept.
        """
        last_sync = synced_at
        if last_sync is None and self.index_path.exists():
            last_sync = self.load_index().last_sync

        index = SyncIndex(conversations=conversations, last_sync=last_sync)
        write_atomic(self.index_path, index.to_json())
        logger.info("Saved %d conversations to index", len(conversations))
        return index

    def get(self, conversation_id: str) -> ConversationRecord | None:
        return self.load_index().get(conversation_id)

    def has_conversation(self, conversation_id: str) -> bool:
        return self.get(conversation_id) is not None

    def list_conversations(
        self, downloaded_only: bool = False, limit: int | None = None
    ) -> list[ConversationRecord]:
        """Index entries, most recently updated first."""
        records = self.load_index().conversations
        if downloaded_only:
            records = [r for r in records if r.is_downloaded]
        records = sorted(records, key=lambda r: r.updated_at, reverse=True)
        if limit is not None and limit > 0:
            records = records[:limit]
        return records

    def find(self, term: str) -> list[ConversationRecord]:
        """Records whose title or id contains ``term``, case-insensitively."""
        needle = term.lower()
        return [
            r
            for r in self.load_index().conversations
            if needle in r.title.lower() or needle in r.id.lower()
        ]

    def stats(self) -> StoreStats:
        index = self.load_index()
        return StoreStats(
            total=len(index.conversations),
            downloaded_count=sum(1 for r in index.conversations if r.is_downloaded),
            last_sync=index.last_sync,
        )

    # -- per-conversation records ----------------------------------------------

    def conversation_path(self, conversation_id: str) -> Path:
        return self.sessions_dir / f"{_checked_id(conversation_id)}.json"

    def placeholder_path(self, conversation_id: str) -> Path:
        return self.sessions_dir / f"{_checked_id(conversation_id)}{PLACEHOLDER_SUFFIX}.json"

    def load_full_conversation(self, conversation_id: str) -> FullConversationRecord:
        path = self.conversation_path(conversation_id)
        if not path.exists():
            raise NotFoundLocally(f"Conversation {conversation_id} has not been downloaded")
        try:
            return FullConversationRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise IndexCorrupted(f"Cannot read conversation file {path}: {e}") from e

    def save_full_conversation(self, record: FullConversationRecord) -> Path:
        path = self.conversation_path(record.id)
        write_atomic(path, record.to_json())
        logger.debug("Saved full conversation %s (%d messages)", record.id, len(record.messages))
        return path

    def create_placeholder(self, record: ConversationRecord) -> Path:
        """Write a placeholder artifact for a conversation not yet downloaded."""
        placeholder = FullConversationRecord(
            **record.model_dump(),
            messages=[],
            local_only=False,
            placeholder=True,
            needs_download=True,
        )
        path = self.placeholder_path(record.id)
        write_atomic(path, placeholder.to_json())
        logger.debug("Created placeholder for conversation %s", record.id)
        return path

    def has_placeholder(self, conversation_id: str) -> bool:
        return self.placeholder_path(conversation_id).exists()

    def mark_downloaded(self, conversation_id: str, message_count: int | None = None) -> None:
        """Flag the index entry as downloaded and drop its placeholder.

        ``message_count``, when given, replaces the entry's count.

        Idempotent: an already removed placeholder is fine.
        """
        index = self.load_index()
        if index.get(conversation_id) is None:
            raise NotFoundLocally(f"Conversation {conversation_id} is not in the local index")

        changes: dict = {"is_downloaded": True}
        if message_count is not None:
            changes["message_count"] = message_count
        updated = [
            r.model_copy(update=changes) if r.id == conversation_id else r
            for r in index.conversations
        ]
        self.save_index(updated, synced_at=index.last_sync)

        placeholder = self.placeholder_path(conversation_id)
        if placeholder.exists():
            placeholder.unlink(missing_ok=True)
            logger.debug("Removed placeholder for %s", conversation_id)


def is_safe_id(conversation_id: str) -> bool:
    """Conversation ids become file names: nothing path-like, and no id that
    would collide with another id's placeholder file."""
    return bool(_SAFE_ID.match(conversation_id)) and not conversation_id.endswith(PLACEHOLDER_SUFFIX)


def _checked_id(conversation_id: str) -> str:
    if not is_safe_id(conversation_id):
        raise ValueError(f"Unsafe conversation id: {conversation_id!r}")
    return conversation_id
