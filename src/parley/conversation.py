from datetime import datetime

from pydantic import BaseModel, Field

from parley.message import Message, new_id, utcnow

DEFAULT_TITLE = "New Conversation"


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str = DEFAULT_TITLE
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    provider_id: str | None = None
    model_id: str | None = None
    system_prompt: str | None = None

    def index_of(self, message_id: str) -> int:
        """Position of *message_id* in the conversation, or -1."""
        for i, m in enumerate(self.messages):
            if m.id == message_id:
                return i
        return -1

    def touch(self) -> None:
        self.updated_at = utcnow()
