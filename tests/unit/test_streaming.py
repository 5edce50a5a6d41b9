"""Unit tests for streaming primitives."""

import pytest

from parley.errors import ProtocolError
from parley.events import ToolCallComplete
from parley.streaming import (
    ServerSentEvent,
    ToolCall,
    ToolCallAccumulator,
    ToolCallFragment,
    iter_ndjson,
    iter_sse,
    parse_arguments,
)


async def _lines(*lines):
    for line in lines:
        yield line


async def _drain(gen):
    return [item async for item in gen]


class TestToolCallAccumulator:
    def test_feed_returns_call_in_progress(self):
        acc = ToolCallAccumulator()
        call = acc.feed(ToolCallFragment(index=0, call_id="c1", name="calc", arguments_delta='{"ex'))

        assert call == ToolCall(id="c1", name="calc", arguments='{"ex')
        assert acc

    def test_arguments_accumulated_across_fragments(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=0, call_id="c1", name="calculator", arguments_delta='{"expre'))
        acc.feed(ToolCallFragment(index=0, arguments_delta='ssion": "2+2"}'))
        result = acc.finalize()

        assert result == [ToolCallComplete(id="c1", name="calculator", arguments={"expression": "2+2"})]

    def test_multiple_interleaved_tool_calls(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=0, call_id="c1", name="foo", arguments_delta='{"a":'))
        acc.feed(ToolCallFragment(index=1, call_id="c2", name="bar", arguments_delta='{"b":'))
        acc.feed(ToolCallFragment(index=0, arguments_delta=' 1}'))
        acc.feed(ToolCallFragment(index=1, arguments_delta=' 2}'))
        result = acc.finalize()

        assert [(c.id, c.arguments) for c in result] == [("c1", {"a": 1}), ("c2", {"b": 2})]

    def test_finalize_returns_index_order_and_resets(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=2, call_id="c3", name="c"))
        acc.feed(ToolCallFragment(index=0, call_id="c1", name="a"))
        acc.feed(ToolCallFragment(index=1, call_id="c2", name="b"))

        assert [tc.name for tc in acc.finalize()] == ["a", "b", "c"]
        assert not acc
        assert acc.finalize() == []

    def test_empty_arguments_become_empty_object(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=0, call_id="c1", name="uuid"))

        assert acc.finalize()[0].arguments == {}

    def test_malformed_arguments_raise(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=0, call_id="c1", name="calc", arguments_delta='{"oops'))

        with pytest.raises(ProtocolError, match="calc"):
            acc.finalize()


class TestParseArguments:
    def test_non_object_rejected(self):
        with pytest.raises(ProtocolError, match="JSON object"):
            parse_arguments("calc", "[1, 2]")

    def test_whitespace_is_empty(self):
        assert parse_arguments("calc", "   ") == {}


# ---------------------------------------------------------------------------
# Line decoders
# ---------------------------------------------------------------------------

class TestIterSSE:
    @pytest.mark.asyncio
    async def test_groups_event_and_data(self):
        events = await _drain(iter_sse(_lines(
            "event: message_start",
            'data: {"type": "message_start"}',
            "",
            'data: {"x": 1}',
            "",
        )))

        assert events == [
            ServerSentEvent(event="message_start", data='{"type": "message_start"}'),
            ServerSentEvent(event="message", data='{"x": 1}'),
        ]

    @pytest.mark.asyncio
    async def test_comments_skipped_and_data_joined(self):
        events = await _drain(iter_sse(_lines(
            ": ping",
            "data: line one",
            "data: line two",
            "",
        )))

        assert events == [ServerSentEvent(event="message", data="line one\nline two")]

    @pytest.mark.asyncio
    async def test_trailing_event_without_blank_line(self):
        events = await _drain(iter_sse(_lines("data: last\r")))

        assert events == [ServerSentEvent(event="message", data="last")]


class TestIterNDJSON:
    @pytest.mark.asyncio
    async def test_decodes_lines(self):
        chunks = await _drain(iter_ndjson(_lines('{"a": 1}', "", '{"b": 2}')))

        assert chunks == [{"a": 1}, {"b": 2}]

    @pytest.mark.asyncio
    async def test_malformed_line_raises(self):
        with pytest.raises(ProtocolError, match="Malformed"):
            await _drain(iter_ndjson(_lines("{nope")))

    @pytest.mark.asyncio
    async def test_non_object_raises(self):
        with pytest.raises(ProtocolError, match="Unexpected"):
            await _drain(iter_ndjson(_lines("[1]")))
