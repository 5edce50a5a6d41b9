import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer

ERROR_MARKER = "❌ Error:"


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class Thumbs(Enum):
    UP = "up"
    DOWN = "down"
    NONE = "none"


class MessageStatus(Enum):
    COMPLETE = "complete"
    STREAMING = "streaming"
    STOPPED = "stopped"
    ERROR = "error"


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """Reference to an image, either a URL or a ``data:`` URL."""

    type: Literal["image_url"] = "image_url"
    url: str


ContentPart = Union[TextPart, ImagePart]
Content = Union[str, list[ContentPart]]


def content_text(content: Content) -> str:
    """Flatten message content to its text, dropping image parts."""
    if isinstance(content, str):
        return content
    return "\n".join(p.text for p in content if isinstance(p, TextPart))


def has_images(content: Content) -> bool:
    return not isinstance(content, str) and any(
        isinstance(p, ImagePart) for p in content
    )


class ToolCallRecord(BaseModel):
    """A tool call made during a session, with its result.

    Attached to the assistant message that produced it and frozen once
    the tool round completes.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: Any = None


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    role: MessageRole
    content: Content = ""
    timestamp: datetime = Field(default_factory=utcnow)
    thumbs: Thumbs = Thumbs.NONE
    reactions: list[str] = Field(default_factory=list)
    starred: bool = False
    status: MessageStatus = MessageStatus.COMPLETE
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)

    @field_serializer("role", "thumbs", "status")
    def serialize_enum(self, value: Enum, _info) -> str:
        return value.value

    @property
    def text(self) -> str:
        return content_text(self.content)


def is_error_message(message: Message) -> bool:
    """True when the message records a failed session."""
    if message.status == MessageStatus.ERROR:
        return True
    return ERROR_MARKER in message.text


# ---------------------------------------------------------------------------
# Request context: what gets sent to a provider for one round
# ---------------------------------------------------------------------------

class ContextMessage(BaseModel):
    role: MessageRole
    content: Content = ""

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @classmethod
    def from_message(cls, message: Message) -> "ContextMessage":
        return cls(role=message.role, content=message.content)


class ToolCallRequestMessage(ContextMessage):
    """The assistant turn that asked for one or more tools."""

    tool_calls: list[ToolCallRecord]


class ToolCallResultMessage(ContextMessage):
    tool_call_id: str
    name: str = ""
