"""Interactive playground chat in the terminal.

Demonstrates:
- Loading settings from PARLEY_* environment variables
- Persisting conversations to a JSON file
- Streaming a session and printing text and tool results as they arrive
- Slash commands (/help, /roll 2d6, ...) answered without a model call
- Regenerating the last reply with ``:regen`` and branching with ``:fork``

Usage:
    uv run --env-file=.env examples/playground_chat.py --provider openai --model gpt-4o-mini --trace
    uv run examples/playground_chat.py --provider ollama --model llama3
"""

import argparse
import asyncio
import logging

from parley import ConversationStore, StreamCoordinator
from parley.config import PlaygroundSettings, configure_logging
from parley.events import ErrorEvent, SessionCompleteEvent, TextDelta, ToolResultEvent
from parley.persistence import JsonFilePersistence
from parley.provider import PROVIDERS


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from parley.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


async def show(events):
    async for event in events:
        if isinstance(event, TextDelta):
            print(event.text, end="", flush=True)
        elif isinstance(event, ToolResultEvent):
            print(f"\n  [{event.record.name}] {event.record.result}")
        elif isinstance(event, ErrorEvent):
            print(f"\n  ({event.kind.value}) {event.message}")
        elif isinstance(event, SessionCompleteEvent):
            result = event.result
            print()
            if result.artifact is not None:
                print(f"  artifact: {result.artifact.type} ({result.artifact.language})")
            print(f"  [{result.status.value}, {result.round_count} round(s), {result.usage_tokens} tokens]\n")


async def main():
    parser = argparse.ArgumentParser(description="Playground chat")
    parser.add_argument("--provider", choices=[p.value for p in PROVIDERS], default=None)
    parser.add_argument("--model", default=None)
    parser.add_argument("--store", default="conversations.json")
    parser.add_argument("--trace", action="store_true")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.debug else logging.WARNING)
    if args.trace:
        setup_tracing("parley-playground")

    settings = PlaygroundSettings.from_env()
    if args.provider:
        settings.provider_id = args.provider
    if args.model:
        settings.model_id = args.model

    store = ConversationStore(JsonFilePersistence(args.store))
    store.load()
    coordinator = StreamCoordinator(store, settings=settings)
    conversation_id = store.create_conversation(settings.provider_id, settings.model_id)

    print(f"Playground ({settings.provider_id}/{settings.model_id})\n")

    try:
        while True:
            try:
                user_input = input("You: ")
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break
            if not user_input.strip():
                continue

            if user_input == ":regen":
                try:
                    events = coordinator.stream_regenerate(conversation_id)
                except ValueError as e:
                    print(f"{e}\n")
                    continue
            elif user_input == ":fork":
                messages = store.get(conversation_id).messages
                if messages:
                    conversation_id = store.fork_conversation(conversation_id, messages[-1].id)
                    print(f"Forked into {store.get(conversation_id).title}\n")
                continue
            else:
                events = coordinator.stream_send(conversation_id, user_input)

            print("Assistant: ", end="")
            try:
                await show(events)
            except KeyboardInterrupt:
                coordinator.cancel(conversation_id)
    finally:
        await coordinator.aclose()


if __name__ == "__main__":
    asyncio.run(main())
