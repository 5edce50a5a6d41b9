"""Streaming primitives shared by the provider adapters.

The :class:`ToolCallAccumulator` reassembles tool calls whose arguments
arrive in fragments across multiple chunks. :func:`iter_sse` and
:func:`iter_ndjson` decode the two line-oriented wire formats spoken by
the HTTP providers.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass

from parley.errors import ProtocolError
from parley.events import ToolCallComplete


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class ToolCall:
    """A tool call being assembled."""

    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments."""

    def __init__(self) -> None:
        self._pending: dict[int, ToolCall] = {}

    def feed(self, fragment: ToolCallFragment) -> ToolCall:
        if fragment.index not in self._pending:
            self._pending[fragment.index] = ToolCall()
        tc = self._pending[fragment.index]
        if fragment.call_id is not None:
            tc.id = fragment.call_id
        if fragment.name is not None:
            tc.name += fragment.name
        if fragment.arguments_delta is not None:
            tc.arguments += fragment.arguments_delta
        return tc

    def finalize(self) -> list[ToolCallComplete]:
        """Return completed tool calls in index order and reset.

        Raises:
            ProtocolError: A call's accumulated arguments are not a JSON
                object.
        """
        calls = [self._pending[i] for i in sorted(self._pending)]
        self._pending.clear()
        return [
            ToolCallComplete(id=tc.id, name=tc.name, arguments=parse_arguments(tc.name, tc.arguments))
            for tc in calls
        ]


def parse_arguments(name: str, raw: str) -> dict:
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON arguments for tool '{name}': {e}") from e
    if not isinstance(parsed, dict):
        raise ProtocolError(f"Arguments for tool '{name}' must be a JSON object")
    return parsed


@dataclass
class ServerSentEvent:
    event: str
    data: str


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Group ``event:``/``data:`` lines into events.

    A blank line terminates an event. Comment lines (``:``) are skipped
    and multiple ``data:`` lines are joined with newlines.
    """
    event = ""
    data: list[str] = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data:
                yield ServerSentEvent(event=event or "message", data="\n".join(data))
            event, data = "", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
    if data:
        yield ServerSentEvent(event=event or "message", data="\n".join(data))


async def iter_ndjson(lines: AsyncIterator[str]) -> AsyncIterator[dict]:
    """Decode one JSON object per non-empty line."""
    async for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Malformed NDJSON chunk: {line[:200]}") from e
        if not isinstance(payload, dict):
            raise ProtocolError(f"Unexpected NDJSON chunk: {line[:200]}")
        yield payload
