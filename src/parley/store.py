"""The conversation store.

:class:`ConversationStore` owns every conversation and is the only place
they are mutated. Subscribers are told about each change; every change
except a streaming delta is written through the persistence collaborator.

A streaming session locks the assistant message it writes. While the lock
is held, only the holder may change that message's content, and
operations that would remove it are rejected with
:class:`~parley.errors.MessageLockedError`. Thumbs, reactions and stars
are always allowed.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from parley.conversation import DEFAULT_TITLE, Conversation
from parley.errors import ConversationNotFoundError, MessageLockedError
from parley.message import (
    Content,
    Message,
    MessageRole,
    MessageStatus,
    Thumbs,
    ToolCallRecord,
    content_text,
    utcnow,
)
from parley.persistence import Persistence

logger = logging.getLogger(__name__)

TITLE_LENGTH = 60


@dataclass(frozen=True)
class StoreChange:
    kind: str
    conversation_id: str | None = None
    message_id: str | None = None


Listener = Callable[[StoreChange], None]


class ConversationStore:

    def __init__(self, persistence: Persistence | None = None):
        self._persistence = persistence
        self._conversations: list[Conversation] = []
        self._active_id: str | None = None
        self._locks: dict[tuple[str, str], str] = {}
        self._listeners: list[Listener] = []
        self._usage: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Persistence and notification
    # ------------------------------------------------------------------

    def load(self) -> None:
        if self._persistence is None:
            return
        self._conversations = self._persistence.load()
        self._active_id = self._conversations[0].id if self._conversations else None
        logger.info(f"Loaded {len(self._conversations)} conversations")
        self._notify(StoreChange("loaded"))

    def save(self) -> None:
        if self._persistence is not None:
            self._persistence.save(self._conversations)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            listener(change)

    def _commit(self, change: StoreChange) -> None:
        self.save()
        self._notify(change)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def conversations(self) -> list[Conversation]:
        """Conversations, most recently created first."""
        return list(self._conversations)

    def get(self, conversation_id: str) -> Conversation:
        for c in self._conversations:
            if c.id == conversation_id:
                return c
        raise ConversationNotFoundError(conversation_id)

    def __contains__(self, conversation_id: object) -> bool:
        return any(c.id == conversation_id for c in self._conversations)

    def get_message(self, conversation_id: str, message_id: str) -> Message:
        """The live message object. Read it, don't mutate it."""
        conv = self.get(conversation_id)
        idx = conv.index_of(message_id)
        if idx < 0:
            raise KeyError(f"Message '{message_id}' not in conversation '{conversation_id}'")
        return conv.messages[idx]

    @property
    def active_conversation(self) -> Conversation | None:
        if self._active_id is None:
            return None
        return self.get(self._active_id)

    def set_active_conversation(self, conversation_id: str | None) -> None:
        if conversation_id is not None:
            self.get(conversation_id)
        self._active_id = conversation_id
        self._commit(StoreChange("active", conversation_id))

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(
            self,
            provider_id: str | None = None,
            model_id: str | None = None,
            system_prompt: str | None = None,
    ) -> str:
        conv = Conversation(provider_id=provider_id, model_id=model_id, system_prompt=system_prompt)
        self._conversations.insert(0, conv)
        self._active_id = conv.id
        self._commit(StoreChange("created", conv.id))
        return conv.id

    def delete_conversation(self, conversation_id: str) -> None:
        conv = self.get(conversation_id)
        self._check_unlocked(conversation_id, conv.messages)
        self._conversations.remove(conv)
        if self._active_id == conversation_id:
            self._active_id = self._conversations[0].id if self._conversations else None
        self._commit(StoreChange("deleted", conversation_id))

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        conv = self.get(conversation_id)
        conv.title = title
        self._commit(StoreChange("title", conversation_id))

    def clear_conversation_messages(self, conversation_id: str) -> None:
        conv = self.get(conversation_id)
        self._check_unlocked(conversation_id, conv.messages)
        conv.messages = []
        conv.touch()
        self._commit(StoreChange("cleared", conversation_id))

    def fork_conversation(self, conversation_id: str, at_message_id: str) -> str:
        """Copy the prefix up to and including *at_message_id* into a new
        conversation. An unknown message id copies every message.
        """
        source = self.get(conversation_id)
        idx = source.index_of(at_message_id)
        prefix = source.messages[: idx + 1] if idx >= 0 else source.messages
        fork = Conversation(
            title=f"Fork: {source.title}",
            messages=[m.model_copy(deep=True) for m in prefix],
            provider_id=source.provider_id,
            model_id=source.model_id,
            system_prompt=source.system_prompt,
        )
        self._conversations.insert(0, fork)
        self._active_id = fork.id
        logger.info(f"Forked {conversation_id} at {at_message_id} into {fork.id}")
        self._commit(StoreChange("created", fork.id))
        return fork.id

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(
            self,
            conversation_id: str,
            role: MessageRole,
            content: Content,
            status: MessageStatus = MessageStatus.COMPLETE,
    ) -> str | None:
        """Append a message; returns its id, or None for an unknown
        conversation.
        """
        try:
            conv = self.get(conversation_id)
        except ConversationNotFoundError:
            logger.warning(f"add_message: unknown conversation {conversation_id}")
            return None
        if not conv.messages and role == MessageRole.USER and conv.title == DEFAULT_TITLE:
            title = content_text(content).strip()
            if title:
                conv.title = title[:TITLE_LENGTH]
        message = Message(role=role, content=content, status=status)
        conv.messages.append(message)
        conv.touch()
        self._commit(StoreChange("message_added", conversation_id, message.id))
        return message.id

    def update_message(self, conversation_id: str, message_id: str, content: Content) -> None:
        message = self.get_message(conversation_id, message_id)
        self._check_unlocked(conversation_id, [message])
        message.content = content
        message.timestamp = utcnow()
        self.get(conversation_id).touch()
        self._commit(StoreChange("message_updated", conversation_id, message_id))

    def delete_message(self, conversation_id: str, message_id: str) -> None:
        conv = self.get(conversation_id)
        message = self.get_message(conversation_id, message_id)
        self._check_unlocked(conversation_id, [message])
        conv.messages.remove(message)
        conv.touch()
        self._commit(StoreChange("message_deleted", conversation_id, message_id))

    def delete_messages_after(self, conversation_id: str, message_id: str) -> None:
        """Truncate every message strictly after *message_id*."""
        conv = self.get(conversation_id)
        idx = conv.index_of(message_id)
        if idx < 0:
            raise KeyError(f"Message '{message_id}' not in conversation '{conversation_id}'")
        self._check_unlocked(conversation_id, conv.messages[idx + 1:])
        del conv.messages[idx + 1:]
        conv.touch()
        self._commit(StoreChange("truncated", conversation_id, message_id))

    def set_thumbs_rating(self, conversation_id: str, message_id: str, thumbs: Thumbs) -> None:
        message = self.get_message(conversation_id, message_id)
        message.thumbs = Thumbs(thumbs)
        self._commit(StoreChange("message_meta", conversation_id, message_id))

    def toggle_reaction(self, conversation_id: str, message_id: str, emoji: str) -> None:
        message = self.get_message(conversation_id, message_id)
        if emoji in message.reactions:
            message.reactions.remove(emoji)
        else:
            message.reactions.append(emoji)
        self._commit(StoreChange("message_meta", conversation_id, message_id))

    def star_message(self, conversation_id: str, message_id: str) -> None:
        self._set_starred(conversation_id, message_id, True)

    def unstar_message(self, conversation_id: str, message_id: str) -> None:
        self._set_starred(conversation_id, message_id, False)

    def _set_starred(self, conversation_id: str, message_id: str, starred: bool) -> None:
        message = self.get_message(conversation_id, message_id)
        message.starred = starred
        self._commit(StoreChange("message_meta", conversation_id, message_id))

    def starred_messages(self) -> list[tuple[str, Message]]:
        return [(c.id, m) for c in self._conversations for m in c.messages if m.starred]

    def last_user_index(self, conversation_id: str) -> int:
        messages = self.get(conversation_id).messages
        for i in range(len(messages) - 1, -1, -1):
            if messages[i].role == MessageRole.USER:
                return i
        return -1

    def regenerate_context(self, conversation_id: str) -> list[Message]:
        """Copies of ``messages[0..last_user]`` inclusive; empty when the
        conversation has no user message.
        """
        idx = self.last_user_index(conversation_id)
        messages = self.get(conversation_id).messages
        return [m.model_copy(deep=True) for m in messages[: idx + 1]]

    # ------------------------------------------------------------------
    # Streaming writer
    # ------------------------------------------------------------------

    def is_locked(self, conversation_id: str, message_id: str) -> bool:
        return (conversation_id, message_id) in self._locks

    def lock_message(self, conversation_id: str, message_id: str) -> str:
        """Give the caller exclusive write access to the message content."""
        message = self.get_message(conversation_id, message_id)
        self._check_unlocked(conversation_id, [message])
        lock = uuid.uuid4().hex
        self._locks[(conversation_id, message_id)] = lock
        message.status = MessageStatus.STREAMING
        self._notify(StoreChange("message_locked", conversation_id, message_id))
        return lock

    def _check_lock(self, conversation_id: str, message_id: str, lock: str) -> None:
        if self._locks.get((conversation_id, message_id)) != lock:
            raise MessageLockedError(f"Message '{message_id}' is not held by this writer")

    def append_to_message(self, conversation_id: str, message_id: str, text: str, lock: str) -> None:
        message = self.get_message(conversation_id, message_id)
        self._check_lock(conversation_id, message_id, lock)
        message.content = content_text(message.content) + text
        self._notify(StoreChange("message_delta", conversation_id, message_id))

    def finalize_message(
            self,
            conversation_id: str,
            message_id: str,
            lock: str,
            status: MessageStatus = MessageStatus.COMPLETE,
            content: Content | None = None,
            tool_calls: list[ToolCallRecord] | None = None,
    ) -> None:
        """Write the final state of a streamed message and release its lock."""
        message = self.get_message(conversation_id, message_id)
        self._check_lock(conversation_id, message_id, lock)
        if content is not None:
            message.content = content
        if tool_calls is not None:
            message.tool_calls = list(tool_calls)
        message.status = status
        message.timestamp = utcnow()
        del self._locks[(conversation_id, message_id)]
        self.get(conversation_id).touch()
        self._commit(StoreChange("message_finalized", conversation_id, message_id))

    def _check_unlocked(self, conversation_id: str, messages: list[Message]) -> None:
        for m in messages:
            if (conversation_id, m.id) in self._locks:
                raise MessageLockedError(f"Message '{m.id}' is being written by an active session")

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def add_usage(self, provider_id: str, tokens: int) -> None:
        provider_id = getattr(provider_id, "value", provider_id)
        self._usage[provider_id] = self._usage.get(provider_id, 0) + tokens
        self._notify(StoreChange("usage"))

    def session_usage(self, provider_id: str | None = None) -> int | dict[str, int]:
        if provider_id is None:
            return dict(self._usage)
        return self._usage.get(getattr(provider_id, "value", provider_id), 0)
