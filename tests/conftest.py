"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from claudesync.errors import EndpointNotFound
from claudesync.models import CredentialBundle
from claudesync.storage import ConversationStore
from claudesync.transport import TransportResponse

SESSION_KEY = "sk-ant-sid01-test-secret"


class FakeTransport:
    """In-memory transport.

    ``routes`` maps ``(method, path)`` to a JSON-able payload, a raw string
    body, or an exception to raise. Unknown routes answer 404. ``chunks`` is
    what ``stream`` yields; exceptions in it are raised at that point.
    """

    def __init__(
        self,
        name: str = "fake",
        routes: dict[tuple[str, str], Any] | None = None,
        chunks: list[Any] | None = None,
        error: Exception | None = None,
    ):
        self.name = name
        self.routes = routes or {}
        self.chunks = chunks or []
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def request(self, cred, method, path, *, params=None, json_body=None):
        self.calls.append((method, path))
        if self.error is not None:
            raise self.error
        if (method, path) not in self.routes:
            raise EndpointNotFound(f"{method} {path} returned HTTP 404")
        result = self.routes[(method, path)]
        if isinstance(result, Exception):
            raise result
        body = result if isinstance(result, str) else json.dumps(result)
        return TransportResponse(status_code=200, text=body, path=path)

    async def stream(self, cred, method, path, *, json_body=None):
        self.calls.append((method, path))
        if self.error is not None:
            raise self.error
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk


def sse(*events: dict | str) -> str:
    """Render events as event-stream lines."""
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event, ensure_ascii=False)
        lines.append(f"data: {payload}\n")
    return "".join(lines)


def delta(text: str) -> dict:
    return {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}}


def remote_item(uuid: str, name: str, updated_at: str = "2025-01-01T10:00:00Z", **extra) -> dict:
    return {
        "uuid": uuid,
        "name": name,
        "created_at": "2025-01-01T09:00:00Z",
        "updated_at": updated_at,
        **extra,
    }


@pytest.fixture
def credentials() -> CredentialBundle:
    return CredentialBundle(session_key=SESSION_KEY, organization_id="org-1")


@pytest.fixture
def store(tmp_path: Path) -> ConversationStore:
    return ConversationStore(tmp_path / "data")


@pytest.fixture
def list_path() -> str:
    return "/organizations/org-1/chat_conversations"
