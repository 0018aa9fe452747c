"""Remote calls with fallback escalation and response-shape tolerance."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence, TypeVar

from pydantic import TypeAdapter, ValidationError

from .config import (
    ALTERNATE_LIST_ENDPOINTS,
    DEFAULT_LOCALE,
    DEFAULT_TOOLS,
    LIST_PAGE_SIZE,
)
from .errors import (
    AllEndpointsExhausted,
    AuthRejected,
    EndpointNotFound,
    MalformedResponse,
    StreamAborted,
    TransportError,
    TransportUnavailable,
)
from .models import ConversationRecord, CredentialBundle, SendResult, utcnow
from .stream import StreamDecoder, StreamUpdate, decode_body
from .transport import CurlTransport, HttpxTransport, Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")

_timestamp = TypeAdapter(datetime)


# ---------------------------------------------------------------------------
# Response shapes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NotThisShape:
    reason: str


def wrapped_conversations(payload: Any) -> list[Any] | NotThisShape:
    """``{"conversations": [...]}``"""
    if isinstance(payload, dict) and isinstance(payload.get("conversations"), list):
        return payload["conversations"]
    return NotThisShape("no 'conversations' array")


def bare_array(payload: Any) -> list[Any] | NotThisShape:
    """``[...]``"""
    if isinstance(payload, list):
        return payload
    return NotThisShape("not a JSON array")


LIST_SHAPES: tuple[Callable[[Any], list[Any] | NotThisShape], ...] = (
    wrapped_conversations,
    bare_array,
)

ID_FIELDS = ("uuid", "id", "conversation_id")
TITLE_FIELDS = ("name", "title", "subject")
CREATED_FIELDS = ("created_at", "createdAt", "created")
UPDATED_FIELDS = ("updated_at", "updatedAt", "updated")
COUNT_FIELDS = ("message_count", "messageCount")
ORG_FIELDS = ("organization_uuid", "organizationId")
NEW_ID_FIELDS = ("uuid", "id", "conversation_id")


def first_field(item: dict[str, Any], names: Sequence[str]) -> Any:
    """Value of the first candidate field that is present and non-empty."""
    for name in names:
        value = item.get(name)
        if value not in (None, ""):
            return value
    return None


def parse_timestamp(value: Any, default: datetime) -> datetime:
    if value is None:
        return default
    try:
        parsed = _timestamp.validate_python(value)
    except ValidationError:
        logger.debug("Unparseable timestamp %r, using default", value)
        return default
    # Timestamps without an offset are taken as UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decode_conversation_list(payload: Any, organization_id: str) -> list[ConversationRecord] | NotThisShape:
    """Try each known list shape in order and normalize the items of the first match."""
    for shape in LIST_SHAPES:
        items = shape(payload)
        if isinstance(items, NotThisShape):
            continue
        return [
            _conversation_from_item(item if isinstance(item, dict) else {}, index, organization_id)
            for index, item in enumerate(items)
        ]
    return NotThisShape("unrecognized conversation list")


def _conversation_from_item(item: dict[str, Any], index: int, organization_id: str) -> ConversationRecord:
    now = utcnow()
    created = parse_timestamp(first_field(item, CREATED_FIELDS), now)
    updated = parse_timestamp(first_field(item, UPDATED_FIELDS), created)
    count = first_field(item, COUNT_FIELDS)
    return ConversationRecord(
        id=str(first_field(item, ID_FIELDS) or f"conv_{index}"),
        title=str(first_field(item, TITLE_FIELDS) or f"Conversation {index + 1}"),
        created_at=created,
        updated_at=updated,
        message_count=count if isinstance(count, int) and count >= 0 else 0,
        is_downloaded=False,
        organization_id=str(first_field(item, ORG_FIELDS) or organization_id),
    )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class TransportGateway:
    """Issues remote calls, escalating from the direct path to the fallback.

    Escalation is decided per call: a fallback success is not remembered.
    Authentication failures are never retried on another path.
    """

    def __init__(self, transports: Sequence[Transport] | None = None):
        self.transports: list[Transport] = list(transports or (HttpxTransport(), CurlTransport()))

    async def _escalate(self, operation: str, call: Callable[[Transport], Awaitable[T]]) -> T:
        failures: list[tuple[str, TransportError]] = []
        for transport in self.transports:
            try:
                return await call(transport)
            except AuthRejected:
                raise
            except TransportError as e:
                logger.warning("Could not %s via %s: %s", operation, transport.name, e.message)
                failures.append((transport.name, e))

        if failures and all(isinstance(e, AllEndpointsExhausted) for _, e in failures):
            raise AllEndpointsExhausted(f"Could not {operation}: no endpoint returned a recognized shape")
        raise TransportUnavailable(operation, [f"{name}: {e.message}" for name, e in failures])

    # -- list ----------------------------------------------------------------

    async def list_conversations(self, cred: CredentialBundle) -> list[ConversationRecord]:
        conversations = await self._escalate(
            "list conversations", lambda t: self._list_via(t, cred)
        )
        logger.info("Retrieved %d conversations", len(conversations))
        return conversations

    async def _list_via(self, transport: Transport, cred: CredentialBundle) -> list[ConversationRecord]:
        org = cred.organization_id
        primary = f"/organizations/{org}/chat_conversations"
        try:
            response = await transport.request(
                cred, "GET", primary, params={"limit": LIST_PAGE_SIZE, "starred": "false"}
            )
            result = decode_conversation_list(response.json(), org)
            if not isinstance(result, NotThisShape):
                return result
            logger.warning("Conversation list has an unexpected shape: %s", result.reason)
        except (EndpointNotFound, MalformedResponse):
            logger.warning("Conversations endpoint not found, trying alternative endpoints...")

        for template in ALTERNATE_LIST_ENDPOINTS:
            endpoint = template.format(org=org)
            logger.debug("Trying alternative endpoint: %s", endpoint)
            try:
                response = await transport.request(cred, "GET", endpoint)
                result = decode_conversation_list(response.json(), org)
            except AuthRejected:
                raise
            except TransportError as e:
                logger.debug("Alternative endpoint %s failed: %s", endpoint, e.message)
                continue
            if not isinstance(result, NotThisShape):
                return result
            logger.debug("Alternative endpoint %s: %s", endpoint, result.reason)

        raise AllEndpointsExhausted("All conversation endpoints failed")

    async def test_connection(self, cred: CredentialBundle) -> bool:
        try:
            await self.list_conversations(cred)
        except (AuthRejected, TransportError) as e:
            logger.error("API connection test failed: %s", e.message)
            return False
        logger.info("API connection test successful")
        return True

    # -- create / detail -----------------------------------------------------------

    async def create_conversation(self, cred: CredentialBundle, title: str | None = None) -> str:
        path = f"/organizations/{cred.organization_id}/chat_conversations"
        body = {"name": title or "New Conversation"}

        async def create(transport: Transport) -> str:
            payload = (await transport.request(cred, "POST", path, json_body=body)).json()
            new_id = first_field(payload, NEW_ID_FIELDS) if isinstance(payload, dict) else None
            if not new_id:
                raise MalformedResponse("No conversation id in create response")
            return str(new_id)

        conversation_id = await self._escalate("create conversation", create)
        logger.info("Created conversation %s", conversation_id)
        return conversation_id

    async def fetch_conversation_detail(self, cred: CredentialBundle, conversation_id: str) -> Any:
        path = f"/organizations/{cred.organization_id}/chat_conversations/{conversation_id}"
        params = {"tree": "True", "rendering_mode": "messages"}

        async def fetch(transport: Transport) -> Any:
            return (await transport.request(cred, "GET", path, params=params)).json()

        logger.info("Fetching messages for conversation %s", conversation_id)
        return await self._escalate(f"fetch conversation {conversation_id}", fetch)

    # -- send ----------------------------------------------------------------

    def _completion(
        self, cred: CredentialBundle, conversation_id: str, text: str, parent_message_id: str | None
    ) -> tuple[str, dict[str, Any]]:
        path = f"/organizations/{cred.organization_id}/chat_conversations/{conversation_id}/completion"
        body = {
            "prompt": text,
            "parent_message_uuid": parent_message_id,
            "locale": DEFAULT_LOCALE,
            "tools": [dict(tool) for tool in DEFAULT_TOOLS],
            "attachments": [],
            "files": [],
            "rendering_mode": "messages",
        }
        return path, body

    async def stream_message(
        self,
        cred: CredentialBundle,
        conversation_id: str,
        text: str,
        parent_message_id: str | None = None,
    ) -> AsyncIterator[StreamUpdate]:
        """Send a message and yield cumulative reply text as it arrives.

        The last update has ``done=True``. Falling back to another path is
        only possible before the first byte of the reply arrives; after that a
        failure is a StreamAborted carrying the partial text.
        """
        path, body = self._completion(cred, conversation_id, text, parent_message_id)
        failures: list[str] = []

        for transport in self.transports:
            decoder = StreamDecoder()
            updates = decoder.decode_stream(transport.stream(cred, "POST", path, json_body=body))
            try:
                async for update in updates:
                    yield update
                return
            except AuthRejected:
                raise
            except StreamAborted as e:
                if decoder.received:
                    raise
                logger.warning("Empty reply via %s: %s", transport.name, e.message)
                failures.append(f"{transport.name}: {e.message}")
            except TransportError as e:
                if decoder.received:
                    raise StreamAborted(
                        f"Reply stream broke off: {e.message}", partial_text=decoder.text
                    ) from e
                logger.warning("Could not send message via %s: %s", transport.name, e.message)
                failures.append(f"{transport.name}: {e.message}")
            finally:
                await updates.aclose()

        raise TransportUnavailable("send message", failures)

    async def send_message(
        self,
        cred: CredentialBundle,
        conversation_id: str,
        text: str,
        parent_message_id: str | None = None,
        on_update: Callable[[str], None] | None = None,
    ) -> SendResult:
        """Send a message and return the whole reply.

        With ``on_update`` the reply is streamed and the callback receives the
        cumulative text after every fragment.
        """
        logger.info("Sending message to conversation %s", conversation_id)
        if on_update is None:
            path, body = self._completion(cred, conversation_id, text, parent_message_id)
            response = await self._escalate(
                "send message", lambda t: t.request(cred, "POST", path, json_body=body)
            )
            return SendResult(text=decode_body(response.text), streamed=False)

        final = ""
        async for update in self.stream_message(cred, conversation_id, text, parent_message_id):
            if update.done:
                final = update.text
            else:
                on_update(update.text)
        return SendResult(text=final, streamed=True)
