"""Events produced while a session streams.

Providers yield the canonical events (:class:`TextDelta` through
:class:`ErrorEvent`). The coordinator forwards them and adds the
session-level :class:`StatusEvent`, :class:`ToolResultEvent` and
:class:`SessionCompleteEvent`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from parley.errors import ErrorKind

if TYPE_CHECKING:
    from parley.coordinator import SessionResult, SessionStatus
    from parley.message import ToolCallRecord


@dataclass
class StreamEvent:
    """Base for all streaming events."""


@dataclass
class TextDelta(StreamEvent):
    text: str = ""


@dataclass
class ToolCallDelta(StreamEvent):
    """A partial tool call: a name fragment, an arguments fragment or both."""

    id: str = ""
    name_fragment: str | None = None
    args_fragment: str | None = None


@dataclass
class ToolCallComplete(StreamEvent):
    id: str = ""
    name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class UsageEvent(StreamEvent):
    tokens: int = 0


@dataclass
class DoneEvent(StreamEvent):
    stop_reason: str | None = None


@dataclass
class ErrorEvent(StreamEvent):
    kind: ErrorKind = ErrorKind.PROTOCOL
    message: str = ""


@dataclass
class StatusEvent(StreamEvent):
    """The session moved to a new state."""

    status: SessionStatus | None = None
    round_count: int = 0


@dataclass
class ToolResultEvent(StreamEvent):
    record: ToolCallRecord | None = None


@dataclass
class SessionCompleteEvent(StreamEvent):
    """Final event, always the last one yielded by a session."""

    result: SessionResult | None = None
