import asyncio
from dataclasses import dataclass

import pytest

from parley.config import PlaygroundSettings
from parley.coordinator import StreamCoordinator
from parley.events import DoneEvent, TextDelta, ToolCallComplete, UsageEvent
from parley.message import MessageRole
from parley.persistence import InMemoryPersistence, KeyStore
from parley.provider import PROVIDERS, ModelProvider, ProviderId
from parley.store import ConversationStore


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

@dataclass
class Pause:
    """Script step that blocks the stream.

    With a *delay* it sleeps that long; without one it blocks until the
    read is abandoned.
    """

    delay: float | None = None

    async def wait(self):
        if self.delay is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(self.delay)


class ScriptedProvider(ModelProvider):
    """Provider that replays one pre-queued event list per round. No
    network calls.

    A script step may be a stream event, a :class:`Pause`, or an
    exception instance to raise at that point.
    """

    def __init__(self, rounds=None, provider_id=ProviderId.OPENAI, api_key="test-key"):
        super().__init__(PROVIDERS[provider_id], api_key)
        self.rounds: list[list] = list(rounds or [])
        self.requests = []
        self.closed = False

    async def _stream(self, request, token):
        self.requests.append(request)
        for step in self.rounds.pop(0):
            if isinstance(step, Pause):
                await step.wait()
            elif isinstance(step, Exception):
                raise step
            else:
                yield step

    async def aclose(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Script builder helpers
# ---------------------------------------------------------------------------

def text_round(*chunks: str, tokens: int | None = None) -> list:
    """A round that streams *chunks* and stops."""
    steps = [TextDelta(text=c) for c in chunks]
    if tokens is not None:
        steps.append(UsageEvent(tokens=tokens))
    steps.append(DoneEvent(stop_reason="stop"))
    return steps


def tool_round(name: str, args: dict, call_id: str = "call_1", text: str | None = None) -> list:
    """A round that requests a single tool call."""
    steps = [TextDelta(text=text)] if text else []
    steps.append(ToolCallComplete(id=call_id, name=name, arguments=args))
    steps.append(DoneEvent(stop_reason="tool_calls"))
    return steps


def request_texts(request) -> list[str]:
    return [m.content if isinstance(m.content, str) else "" for m in request.messages]


async def collect(events) -> list:
    return [event async for event in events]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def store(persistence):
    return ConversationStore(persistence)


@pytest.fixture
def conversation_id(store):
    return store.create_conversation(provider_id="openai", model_id="gpt-4o-mini")


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def make_coordinator(store, provider):
    """Factory fixture for coordinators that always hand out *provider*.

    Pass ``providers=`` (a dict of provider id to provider) to route
    different conversations to different scripted providers.
    """
    def _make(settings=None, providers=None, registry=None, keys=None):
        if providers is None:
            def factory(provider_id, api_key):
                return provider
        else:
            def factory(provider_id, api_key):
                return providers[provider_id]
        return StreamCoordinator(
            store,
            registry=registry,
            settings=settings or PlaygroundSettings(),
            keys=keys or KeyStore(),
            provider_factory=factory,
        )
    return _make


@pytest.fixture
def seeded_conversation(store, conversation_id):
    """Conversation holding user/assistant/user/assistant turns a, b, c, d."""
    for role, text in [
        (MessageRole.USER, "a"),
        (MessageRole.ASSISTANT, "b"),
        (MessageRole.USER, "c"),
        (MessageRole.ASSISTANT, "d"),
    ]:
        store.add_message(conversation_id, role, text)
    return conversation_id
