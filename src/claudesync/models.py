"""Data models for conversations, messages and the sync index."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic.alias_generators import to_camel

from .config import INDEX_VERSION


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Record(BaseModel):
    """Base for everything persisted: camelCase on disk, snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class Role(str, Enum):
    HUMAN = "human"
    ASSISTANT = "assistant"


class ConversationRecord(_Record):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int = Field(default=0, ge=0)
    is_downloaded: bool = False
    organization_id: str = ""


class MessageRecord(_Record):
    id: str
    role: Role
    content: str
    timestamp: datetime
    conversation_id: str
    parent_message_id: str | None = None


class FullConversationRecord(ConversationRecord):
    messages: list[MessageRecord] = []
    local_only: bool = False
    placeholder: bool = False
    needs_download: bool = False

    def metadata(self) -> ConversationRecord:
        """The index entry for this conversation."""
        return ConversationRecord.model_validate(
            self.model_dump(include=set(ConversationRecord.model_fields))
        )


class SyncIndex(_Record):
    conversations: list[ConversationRecord] = []
    last_sync: datetime | None = None
    version: str = INDEX_VERSION

    def get(self, conversation_id: str) -> ConversationRecord | None:
        for record in self.conversations:
            if record.id == conversation_id:
                return record
        return None


class CredentialBundle(_Record):
    """Authentication values obtained outside the core. Never mutated."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    session_key: SecretStr
    organization_id: str
    csrf_token: SecretStr | None = None
    extracted_at: datetime = Field(default_factory=utcnow)
    extracted_from: str = "manual"

    def to_json(self) -> str:
        # SecretStr dumps as "**********" unless unwrapped explicitly
        data = self.model_dump(mode="json", by_alias=True)
        data["sessionKey"] = self.session_key.get_secret_value()
        if self.csrf_token is not None:
            data["csrfToken"] = self.csrf_token.get_secret_value()
        return json.dumps(data, indent=2)


class SyncResult(BaseModel):
    new_count: int = 0
    updated_count: int = 0
    total: int = 0
    errors: list[str] = []


class DownloadReport(BaseModel):
    downloaded: list[str] = []
    skipped: list[str] = []
    errors: list[str] = []


class StoreStats(BaseModel):
    total: int
    downloaded_count: int
    last_sync: datetime | None = None

    @property
    def placeholder_count(self) -> int:
        return self.total - self.downloaded_count


class SyncStats(BaseModel):
    connected: bool
    local: StoreStats


class SendResult(BaseModel):
    text: str
    streamed: bool
