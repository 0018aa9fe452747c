"""Incremental decoder for the completion event stream.

The stream is line oriented. Only lines starting with ``data: `` carry a
payload, which is a JSON event object or the ``[DONE]`` sentinel. Chunks may
split lines (and multi-byte characters) anywhere, so partial lines are
buffered until their terminator arrives.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator

from .config import DONE_SENTINEL, EVENT_PREFIX, NO_CONTENT
from .errors import AuthRejected, StreamAborted

logger = logging.getLogger(__name__)

# Recognized but carry no text
_STRUCTURAL_EVENTS = {"message_start", "content_block_start", "content_block_stop"}


@dataclass(frozen=True)
class StreamUpdate:
    """Cumulative reply text after one content delta, or the final value."""

    text: str
    delta: str = ""
    done: bool = False


class StreamDecoder:
    """Decode one logical reply stream. Use a fresh decoder per reply."""

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.text = ""
        self.done = False
        self.received = False

    def feed(self, chunk: str | bytes) -> list[StreamUpdate]:
        """Consume one chunk and return an update per content delta it completed."""
        if self.done or not chunk:
            return []
        self.received = True

        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk

        *lines, self._buffer = self._buffer.split("\n")
        updates: list[StreamUpdate] = []
        for line in lines:
            update = self._handle_line(line.rstrip("\r"))
            if update is not None:
                updates.append(update)
            if self.done:
                self._buffer = ""
                break
        return updates

    def finish(self) -> str:
        """Mark end of input. A trailing unterminated line is discarded."""
        if self._buffer:
            logger.debug("Discarding %d chars of unterminated stream data", len(self._buffer))
        self._buffer = ""
        self._utf8.reset()
        return self.text

    def _handle_line(self, line: str) -> StreamUpdate | None:
        if not line.startswith(EVENT_PREFIX):
            return None

        payload = line[len(EVENT_PREFIX):].strip()
        if not payload:
            return None
        if payload == DONE_SENTINEL:
            self.done = True
            return None

        try:
            event = json.loads(payload)
        except ValueError:
            logger.debug("Skipping invalid JSON event line")
            return None
        if not isinstance(event, dict):
            return None

        kind = event.get("type")
        if kind == "content_block_delta":
            fragment = _delta_text(event)
            if fragment:
                self.text += fragment
                return StreamUpdate(text=self.text, delta=fragment)
        elif kind == "message_stop":
            self.done = True
        elif kind == "error":
            raise AuthRejected(f"Service rejected the request: {_error_message(event)}")
        elif kind not in _STRUCTURAL_EVENTS:
            logger.debug("Ignoring stream event of type %r", kind)
        return None

    async def decode_stream(
        self, chunks: AsyncIterable[str | bytes]
    ) -> AsyncIterator[StreamUpdate]:
        """Yield cumulative updates in arrival order, then a final ``done`` update.

        Raises StreamAborted when the source ends before a terminal event.
        """
        source = aiter(chunks)
        try:
            async for chunk in source:
                for update in self.feed(chunk):
                    yield update
                if self.done:
                    break
        finally:
            # Closing the source closes the underlying connection
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

        self.finish()
        if not self.done:
            raise StreamAborted(
                "Reply stream ended before the message was complete",
                partial_text=self.text,
            )
        yield StreamUpdate(text=self.text, done=True)


def decode_body(body: str | bytes) -> str:
    """Decode a whole response body at once and return the final text.

    Returns the "no content" sentinel when nothing was recovered.
    """
    decoder = StreamDecoder()
    decoder.feed(body)
    text = decoder.finish()
    return text or NO_CONTENT


def _delta_text(event: dict[str, Any]) -> str:
    delta = event.get("delta")
    if isinstance(delta, dict):
        text = delta.get("text")
        if isinstance(text, str):
            return text
    return ""


def _error_message(event: dict[str, Any]) -> str:
    error = event.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or "unknown error")
    return "unknown error"

