"""Tests for claudesync.stream."""

from __future__ import annotations

import pytest

from claudesync.config import NO_CONTENT
from claudesync.errors import AuthRejected, StreamAborted
from claudesync.stream import StreamDecoder, decode_body

from .conftest import delta, sse


async def _chunks(*items):
    for item in items:
        yield item


async def _collect(decoder: StreamDecoder, *chunks):
    return [update async for update in decoder.decode_stream(_chunks(*chunks))]


class TestFeed:

    def test_cumulative_text_per_delta(self):
        decoder = StreamDecoder()
        first = decoder.feed('data: {"type":"content_block_delta","delta":{"text":"He"}}\n')
        second = decoder.feed('data: {"type":"content_block_delta","delta":{"text":"llo"}}\n')
        assert [u.text for u in first] == ["He"]
        assert [u.text for u in second] == ["Hello"]
        assert second[0].delta == "llo"

        assert decoder.feed('data: {"type":"message_stop"}\n') == []
        assert decoder.done
        assert decoder.text == "Hello"

    def test_invalid_json_line_is_skipped(self):
        decoder = StreamDecoder()
        decoder.feed(sse(delta("a")))
        assert decoder.feed("data: not-json\n") == []
        updates = decoder.feed(sse(delta("b")))
        assert [u.text for u in updates] == ["ab"]
        assert not decoder.done

    def test_line_split_across_chunks_is_buffered(self):
        line = sse(delta("split"))
        decoder = StreamDecoder()
        assert decoder.feed(line[:17]) == []
        assert decoder.feed(line[17:30]) == []
        updates = decoder.feed(line[30:])
        assert [u.text for u in updates] == ["split"]

    def test_multibyte_character_split_across_byte_chunks(self):
        raw = sse(delta("héllo ✓")).encode("utf-8")
        cut = raw.index("✓".encode("utf-8")) + 1
        decoder = StreamDecoder()
        assert decoder.feed(raw[:cut]) == []
        updates = decoder.feed(raw[cut:])
        assert updates[-1].text == "héllo ✓"

    def test_structural_events_produce_no_updates(self):
        decoder = StreamDecoder()
        updates = decoder.feed(
            sse(
                {"type": "message_start", "message": {"id": "m1"}},
                {"type": "content_block_start", "index": 0},
                {"type": "content_block_stop", "index": 0},
                {"type": "ping"},
            )
        )
        assert updates == []
        assert decoder.text == ""

    def test_non_data_lines_ignored(self):
        decoder = StreamDecoder()
        updates = decoder.feed("event: completion\n: keepalive\n\n" + sse(delta("x")))
        assert [u.text for u in updates] == ["x"]

    def test_done_sentinel_ends_stream(self):
        decoder = StreamDecoder()
        decoder.feed(sse(delta("x"), "[DONE]", delta("ignored")))
        assert decoder.done
        assert decoder.text == "x"
        assert decoder.feed(sse(delta("more"))) == []

    def test_error_event_raises_auth_rejected(self):
        decoder = StreamDecoder()
        with pytest.raises(AuthRejected, match="Invalid authorization"):
            decoder.feed(
                sse({"type": "error", "error": {"type": "permission_error", "message": "Invalid authorization"}})
            )

    def test_trailing_partial_line_discarded(self):
        decoder = StreamDecoder()
        decoder.feed(sse(delta("kept")) + 'data: {"type":"content_block_delta","delta":{"text":"lost"}}')
        assert decoder.finish() == "kept"


class TestDecodeStream:

    @pytest.mark.asyncio
    async def test_updates_then_terminal(self):
        updates = await _collect(
            StreamDecoder(),
            'data: {"type":"content_block_delta","delta":{"text":"He"}}\n',
            'data: {"type":"content_block_delta","delta":{"text":"llo"}}\n',
            'data: {"type":"message_stop"}\n',
        )
        assert [(u.text, u.done) for u in updates] == [
            ("He", False),
            ("Hello", False),
            ("Hello", True),
        ]

    @pytest.mark.asyncio
    async def test_end_without_stop_is_aborted(self):
        decoder = StreamDecoder()
        seen = []
        with pytest.raises(StreamAborted) as info:
            async for update in decoder.decode_stream(_chunks(sse(delta("par")), sse(delta("tial")))):
                seen.append(update.text)
        assert seen == ["par", "partial"]
        assert info.value.partial_text == "partial"

    @pytest.mark.asyncio
    async def test_stops_reading_after_message_stop(self):
        consumed = []

        async def source():
            for chunk in (sse(delta("a")), sse({"type": "message_stop"}), sse(delta("b"))):
                consumed.append(chunk)
                yield chunk

        updates = [u async for u in StreamDecoder().decode_stream(source())]
        assert updates[-1].text == "a"
        assert updates[-1].done
        assert len(consumed) == 2


class TestDecodeBody:

    def test_whole_body(self):
        body = sse(
            {"type": "message_start"},
            delta("Hi "),
            "not-json",
            delta("there"),
            {"type": "message_stop"},
        )
        assert decode_body(body) == "Hi there"

    def test_no_content_sentinel(self):
        assert decode_body(sse({"type": "message_start"}, {"type": "message_stop"})) == NO_CONTENT
        assert decode_body("") == NO_CONTENT

    def test_bytes_body(self):
        assert decode_body(sse(delta("ok")).encode()) == "ok"
