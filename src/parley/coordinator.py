"""Streaming sessions.

A :class:`StreamCoordinator` runs at most one :class:`StreamSession` per
conversation. A session moves through::

    IDLE -> REQUESTING -> STREAMING -> (TOOL_PENDING -> REQUESTING)*
         -> COMPLETED | CANCELLED | FAILED

Text deltas are appended to the live assistant message as they arrive.
Completed tool calls are handed to the :class:`ToolExecutionEngine` and
their results start a new round. Provider failures never propagate to
the caller: they end the session FAILED and are recorded in the message
and in the :class:`SessionResult`.

``run()`` drains ``iter()``. ``iter()`` is the streaming entry point and
returns a :class:`SessionStream`. Errors raised while a session runs end
it FAILED as well. Only closing the stream or cancelling ends it STOPPED.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum

from parley.artifact import DEFAULT_RULES, Artifact, SniffRules, classify
from parley.builtin_tools import builtin_registry
from parley.cancellation import CancellationToken, OperationCancelled
from parley.capability import Capability
from parley.config import PlaygroundSettings
from parley.errors import ErrorKind, ProviderError, SessionActiveError, ToolLoopExceededError
from parley.events import (
    DoneEvent,
    ErrorEvent,
    SessionCompleteEvent,
    StatusEvent,
    StreamEvent,
    TextDelta,
    ToolCallComplete,
    ToolCallDelta,
    ToolResultEvent,
    UsageEvent,
)
from parley.instrumentation import (
    completion_span,
    record_error,
    record_status,
    record_usage,
    session_span,
)
from parley.message import (
    ERROR_MARKER,
    Content,
    ContextMessage,
    Message,
    MessageRole,
    MessageStatus,
    ToolCallRecord,
    is_error_message,
)
from parley.persistence import KeyStore
from parley.provider import CompletionRequest, ModelProvider, build_provider
from parley.slash import run_slash_command
from parley.store import ConversationStore
from parley.tool_engine import ToolExecutionEngine
from parley.tools import ToolRegistry

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str, "str | None"], ModelProvider]

_END = object()


class SessionStatus(Enum):
    IDLE = "idle"  # reserved, stream not started yet
    REQUESTING = "requesting"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


ACTIVE_STATES = frozenset({
    SessionStatus.REQUESTING,
    SessionStatus.STREAMING,
    SessionStatus.TOOL_PENDING,
})


@dataclass
class StreamSession:
    conversation_id: str
    provider_id: str
    model_id: str
    status: SessionStatus = SessionStatus.IDLE
    accumulated_text: str = ""
    pending_tool_calls: list[ToolCallComplete] = field(default_factory=list)
    round_count: int = 0
    cancellation_token: CancellationToken = field(default_factory=CancellationToken)
    message_id: str | None = None
    usage_tokens: int = 0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATES


@dataclass
class SessionResult:
    conversation_id: str
    message_id: str | None
    status: SessionStatus
    text: str = ""
    round_count: int = 0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    artifact: Artifact | None = None
    usage_tokens: int = 0
    error_kind: ErrorKind | None = None
    error_message: str | None = None


def build_context(messages: list[Message]) -> list[ContextMessage]:
    """Request context for a stored message list.

    Assistant turns are sent as text only, and failed turns are left out.
    """
    context = []
    for m in messages:
        if m.role == MessageRole.TOOL:
            continue
        if m.role == MessageRole.ASSISTANT:
            if is_error_message(m) or not m.text:
                continue
            context.append(ContextMessage(role=m.role, content=m.text))
        else:
            context.append(ContextMessage.from_message(m))
    return context


async def _next_event(events: AsyncIterator[StreamEvent]):
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return _END


class SessionStream:
    """Event stream of one session.

    The conversation is reserved until the stream is exhausted or closed.
    Closing it before the first event releases the reservation without
    adding a message.
    """

    def __init__(self, coordinator: "StreamCoordinator", session: StreamSession, events: AsyncIterator[StreamEvent]):
        self._coordinator = coordinator
        self.session = session
        self._events = events

    def __aiter__(self) -> "SessionStream":
        return self

    async def __anext__(self) -> StreamEvent:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        try:
            await self._events.aclose()
        finally:
            self._coordinator._release(self.session)


class StreamCoordinator:
    """Owns every streaming session.

    Args:
        store: Where conversations and the live assistant message live.
        registry: Tools offered to the model. Defaults to the builtin
            tools without ``ask_human``.
        settings: Default provider, model, sampling parameters, enabled
            tools, round cap and stall timeout.
        keys: API keys by provider id.
        provider_factory: ``(provider_id, api_key) -> ModelProvider``.
        sniff_rules: Passed to :func:`~parley.artifact.classify`.
    """

    def __init__(
        self,
        store: ConversationStore,
        registry: ToolRegistry | None = None,
        settings: PlaygroundSettings | None = None,
        keys: KeyStore | None = None,
        provider_factory: ProviderFactory = build_provider,
        sniff_rules: SniffRules = DEFAULT_RULES,
    ):
        self.store = store
        self.registry = registry if registry is not None else builtin_registry()
        self.settings = settings or PlaygroundSettings()
        self.keys = keys or KeyStore()
        self.provider_factory = provider_factory
        self.sniff_rules = sniff_rules
        self._sessions: dict[str, StreamSession] = {}
        self._providers: dict[tuple[str, str | None], ModelProvider] = {}

    # ------------------------------------------------------------------
    # Session bookkeeping
    # ------------------------------------------------------------------

    def is_active(self, conversation_id: str) -> bool:
        """True from the moment a stream is handed out until it ends."""
        return conversation_id in self._sessions

    def session(self, conversation_id: str) -> StreamSession | None:
        return self._sessions.get(conversation_id)

    def cancel(self, conversation_id: str) -> bool:
        """Stop the conversation's session; False when none is running.

        A reserved session whose stream was never started is dropped on
        the spot.
        """
        session = self._sessions.get(conversation_id)
        if session is None:
            return False
        if session.status == SessionStatus.IDLE and session.message_id is None:
            logger.info(f"Dropping unstarted session for {conversation_id}")
            session.cancellation_token.cancel()
            session.status = SessionStatus.CANCELLED
            self._release(session)
            return True
        if not session.active and session.status != SessionStatus.IDLE:
            return False
        logger.info(f"Cancelling session for {conversation_id}")
        session.cancellation_token.cancel()
        return True

    def _release(self, session: StreamSession) -> None:
        if self._sessions.get(session.conversation_id) is session:
            del self._sessions[session.conversation_id]

    def _check_idle(self, conversation_id: str) -> None:
        self.store.get(conversation_id)
        if self.is_active(conversation_id):
            raise SessionActiveError(f"Conversation {conversation_id} already has an active session")

    def _provider(self, provider_id: str) -> ModelProvider:
        key = self.keys.get_key(provider_id)
        cache_key = (provider_id, key)
        if cache_key not in self._providers:
            self._providers[cache_key] = self.provider_factory(provider_id, key)
        return self._providers[cache_key]

    def _tools(self, provider: ModelProvider) -> ToolRegistry:
        if not self.settings.tools_enabled or Capability.TOOL_CALLING not in provider.capabilities:
            return ToolRegistry()
        return self.registry.subset(self.settings.enabled_tools)

    def _request(self, session: StreamSession, context: list[ContextMessage], tools: ToolRegistry) -> CompletionRequest:
        conv = self.store.get(session.conversation_id)
        return CompletionRequest.build(
            session.model_id,
            context,
            self.settings.params,
            system_prompt=conv.system_prompt or self.settings.system_prompt,
            tools=tools.schemas(),
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _prepare(self, conversation_id: str, messages: list[Message]) -> tuple:
        """Session, provider, context and tools for answering *messages*.

        Raises ConfigurationError before anything is stored or reserved.
        """
        conv = self.store.get(conversation_id)
        session = StreamSession(
            conversation_id=conversation_id,
            provider_id=conv.provider_id or self.settings.provider_id,
            model_id=conv.model_id or self.settings.model_id,
        )
        context = build_context(messages)
        provider = self._provider(session.provider_id)
        tools = self._tools(provider)
        provider.validate(self._request(session, context, tools))
        return session, provider, context, tools

    def _start(self, prepared: tuple) -> SessionStream:
        session = prepared[0]
        self._sessions[session.conversation_id] = session
        return SessionStream(self, session, self._run_session(*prepared))

    def iter(self, conversation_id: str) -> SessionStream:
        """Start a session answering the conversation as it stands.

        The session is reserved immediately and stays reserved until the
        returned stream is iterated to the end or closed. The last event is
        always a :class:`~parley.events.SessionCompleteEvent`.

        Raises:
            SessionActiveError: The conversation is already streaming.
            ConfigurationError: The request is illegal for the provider.
        """
        self._check_idle(conversation_id)
        return self._start(self._prepare(conversation_id, self.store.get(conversation_id).messages))

    async def run(self, conversation_id: str) -> SessionResult:
        return await self._drain(self.iter(conversation_id))

    def stream_send(self, conversation_id: str, content: Content) -> AsyncIterator[StreamEvent]:
        """Append a user message and stream the reply.

        Recognized slash commands are answered locally with no provider
        call.
        """
        self._check_idle(conversation_id)
        if isinstance(content, str):
            reply = run_slash_command(content)
            if reply is not None:
                return self._local_reply(conversation_id, content, reply)
        self.store.add_message(conversation_id, MessageRole.USER, content)
        return self.iter(conversation_id)

    async def send(self, conversation_id: str, content: Content) -> SessionResult:
        return await self._drain(self.stream_send(conversation_id, content))

    def stream_regenerate(self, conversation_id: str) -> SessionStream:
        """Drop everything after the last user message and stream a new
        reply to ``messages[0..last_user]``.

        Nothing is dropped when the request fails validation.

        Raises:
            ValueError: The conversation has no user message.
        """
        self._check_idle(conversation_id)
        prefix = self.store.regenerate_context(conversation_id)
        if not prefix:
            raise ValueError(f"Conversation {conversation_id} has no user message to regenerate from")
        prepared = self._prepare(conversation_id, prefix)
        self.store.delete_messages_after(conversation_id, prefix[-1].id)
        return self._start(prepared)

    async def regenerate(self, conversation_id: str) -> SessionResult:
        return await self._drain(self.stream_regenerate(conversation_id))

    def stream_edit_and_rerun(self, conversation_id: str, message_id: str, content: Content) -> SessionStream:
        """Replace a message's content, truncate after it and stream a reply.

        The conversation is left untouched when the edited request fails
        validation.
        """
        self._check_idle(conversation_id)
        conv = self.store.get(conversation_id)
        idx = conv.index_of(message_id)
        if idx < 0:
            raise KeyError(f"Message '{message_id}' not in conversation '{conversation_id}'")
        edited = conv.messages[idx].model_copy(update={"content": content})
        prepared = self._prepare(conversation_id, conv.messages[:idx] + [edited])
        self.store.update_message(conversation_id, message_id, content)
        self.store.delete_messages_after(conversation_id, message_id)
        return self._start(prepared)

    async def edit_and_rerun(self, conversation_id: str, message_id: str, content: Content) -> SessionResult:
        return await self._drain(self.stream_edit_and_rerun(conversation_id, message_id, content))

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
        self._providers.clear()

    @staticmethod
    async def _drain(events: AsyncIterator[StreamEvent]) -> SessionResult:
        result: SessionResult | None = None
        async for event in events:
            if isinstance(event, SessionCompleteEvent):
                result = event.result
        if result is None:
            raise RuntimeError("Session ended without emitting SessionCompleteEvent")
        return result

    async def _local_reply(self, conversation_id: str, command: str, reply: str) -> AsyncIterator[StreamEvent]:
        self.store.add_message(conversation_id, MessageRole.USER, command)
        message_id = self.store.add_message(conversation_id, MessageRole.ASSISTANT, reply)
        logger.info(f"Answered {command.split()[0]} locally")
        yield TextDelta(text=reply)
        yield SessionCompleteEvent(result=SessionResult(
            conversation_id=conversation_id,
            message_id=message_id,
            status=SessionStatus.COMPLETED,
            text=reply,
        ))

    # ------------------------------------------------------------------
    # Session driver
    # ------------------------------------------------------------------

    def _transition(self, session: StreamSession, status: SessionStatus) -> StatusEvent:
        logger.debug(f"{session.conversation_id}: {session.status.value} -> {status.value}")
        session.status = status
        return StatusEvent(status=status, round_count=session.round_count)

    def _fail(self, session: StreamSession, kind: ErrorKind, message: str) -> None:
        logger.error(f"Session for {session.conversation_id} failed ({kind.value}): {message}")
        session.status = SessionStatus.FAILED
        session.error_kind = kind
        session.error_message = message

    async def _run_session(self, session, provider, context, tools) -> AsyncIterator[StreamEvent]:
        cid = session.conversation_id
        if self._sessions.get(cid) is not session:
            yield StatusEvent(status=session.status, round_count=0)
            yield SessionCompleteEvent(result=SessionResult(
                conversation_id=cid, message_id=None, status=session.status,
            ))
            return
        try:
            async with aclosing(self._drive(session, provider, context, tools)) as events:
                async for event in events:
                    yield event
        finally:
            self._release(session)

    async def _drive(self, session, provider, context, tools) -> AsyncIterator[StreamEvent]:
        cid = session.conversation_id
        message_id = self.store.add_message(cid, MessageRole.ASSISTANT, "", status=MessageStatus.STREAMING)
        session.message_id = message_id
        lock = self.store.lock_message(cid, message_id)
        finished = False
        try:
            async with session_span(cid, session.provider_id, session.model_id) as span:
                if provider.spec.requires_key and not provider.api_key:
                    self._fail(session, ErrorKind.AUTH, f"No API key for {provider.spec.name}")
                else:
                    try:
                        async with aclosing(self._rounds(session, provider, context, tools, lock)) as events:
                            async for event in events:
                                yield event
                    except Exception as e:
                        logger.exception(f"Session for {cid} crashed")
                        self._fail(session, ErrorKind.PROTOCOL, f"{type(e).__name__}: {e}")
                result = self._finish(session, lock)
                finished = True
                record_status(span, session.status.value, session.round_count)
                if session.error_kind is not None:
                    record_error(span, session.error_kind.value, session.error_message)
            yield StatusEvent(status=session.status, round_count=session.round_count)
            yield SessionCompleteEvent(result=result)
        finally:
            if not finished:
                session.cancellation_token.cancel()
                session.status = SessionStatus.CANCELLED
                if self.store.is_locked(cid, message_id):
                    self.store.finalize_message(
                        cid, message_id, lock,
                        status=MessageStatus.STOPPED,
                        content=session.accumulated_text,
                        tool_calls=session.tool_calls,
                    )

    async def _rounds(self, session, provider, context, tools, lock) -> AsyncIterator[StreamEvent]:
        cid = session.conversation_id
        token = session.cancellation_token
        engine = ToolExecutionEngine(tools, max_rounds=self.settings.max_tool_rounds)

        while True:
            session.round_count += 1
            yield self._transition(session, SessionStatus.REQUESTING)
            request = self._request(session, context, tools)
            round_text = ""
            pending: list[ToolCallComplete] = []

            async with completion_span(session.provider_id, session.model_id, session.round_count) as span:
                events = provider.open(request, token)
                try:
                    while True:
                        if token.cancelled:
                            session.status = SessionStatus.CANCELLED
                            return
                        reading = session.status in (SessionStatus.STREAMING, SessionStatus.TOOL_PENDING)
                        timeout = self.settings.stall_timeout if reading else None
                        try:
                            event = await token.guard(_next_event(events), timeout=timeout)
                        except OperationCancelled:
                            session.status = SessionStatus.CANCELLED
                            return
                        except asyncio.TimeoutError:
                            self._fail(session, ErrorKind.TRANSIENT, f"Stream stalled: no data for {timeout:g}s")
                            record_error(span, ErrorKind.TRANSIENT.value, session.error_message)
                            return
                        except ProviderError as e:
                            self._fail(session, e.kind, str(e))
                            record_error(span, e.kind.value, str(e))
                            return

                        if event is _END:
                            self._fail(session, ErrorKind.PROTOCOL, "Stream ended before completion")
                            record_error(span, ErrorKind.PROTOCOL.value, session.error_message)
                            return
                        if session.status == SessionStatus.REQUESTING:
                            yield self._transition(session, SessionStatus.STREAMING)

                        if isinstance(event, ErrorEvent):
                            self._fail(session, event.kind, event.message)
                            record_error(span, event.kind.value, event.message)
                            return
                        if isinstance(event, DoneEvent):
                            break
                        if isinstance(event, UsageEvent):
                            session.usage_tokens += event.tokens
                            self.store.add_usage(session.provider_id, event.tokens)
                            record_usage(span, event.tokens)
                            yield event
                        elif isinstance(event, ToolCallComplete):
                            pending.append(event)
                            session.pending_tool_calls = list(pending)
                            if session.status != SessionStatus.TOOL_PENDING:
                                yield self._transition(session, SessionStatus.TOOL_PENDING)
                            yield event
                        elif session.status == SessionStatus.TOOL_PENDING:
                            if isinstance(event, TextDelta):
                                logger.warning(f"Discarding text after tool call in {cid}: {event.text[:40]!r}")
                        elif isinstance(event, TextDelta):
                            session.accumulated_text += event.text
                            round_text += event.text
                            self.store.append_to_message(cid, session.message_id, event.text, lock)
                            yield event
                        elif isinstance(event, ToolCallDelta):
                            yield event
                finally:
                    await events.aclose()

            if not pending:
                return

            try:
                engine.check_round(session.round_count)
            except ToolLoopExceededError as e:
                self._fail(session, ErrorKind.TOOL_LOOP_EXCEEDED, str(e))
                return

            logger.info(f"Round {session.round_count} of {cid} requested {[c.name for c in pending]}")
            try:
                records = await token.guard(engine.execute_all(pending))
            except OperationCancelled:
                session.status = SessionStatus.CANCELLED
                return
            session.tool_calls.extend(records)
            session.pending_tool_calls = []
            for record in records:
                yield ToolResultEvent(record=record)
            context = engine.extend_context(context, round_text, records)

    def _finish(self, session: StreamSession, lock: str) -> SessionResult:
        if session.status not in (SessionStatus.CANCELLED, SessionStatus.FAILED):
            session.status = SessionStatus.COMPLETED
        text = session.accumulated_text

        if session.status == SessionStatus.FAILED:
            suffix = f"{ERROR_MARKER} {session.error_message}"
            content = f"{text}\n\n{suffix}" if text else suffix
            message_status = MessageStatus.ERROR
        elif session.status == SessionStatus.CANCELLED:
            content = text
            message_status = MessageStatus.STOPPED
        else:
            content = text
            message_status = MessageStatus.COMPLETE

        self.store.finalize_message(
            session.conversation_id, session.message_id, lock,
            status=message_status, content=content, tool_calls=session.tool_calls,
        )
        artifact = classify(text, self.sniff_rules) if session.status == SessionStatus.COMPLETED else None
        logger.info(
            f"Session for {session.conversation_id} ended {session.status.value} "
            f"after {session.round_count} round(s)"
        )
        return SessionResult(
            conversation_id=session.conversation_id,
            message_id=session.message_id,
            status=session.status,
            text=text,
            round_count=session.round_count,
            tool_calls=list(session.tool_calls),
            artifact=artifact,
            usage_tokens=session.usage_tokens,
            error_kind=session.error_kind,
            error_message=session.error_message,
        )
