"""Optional OpenTelemetry tracing.

Call ``parley.instrument()`` once at startup to emit spans for each
streaming session, each provider round and each tool execution. Requires
``opentelemetry-api``; without it nothing is traced and nothing else
changes.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "parley") -> None:
    """Enable OpenTelemetry tracing.

    Call after configuring a TracerProvider::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        import parley
        parley.instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install parley[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info("No TracerProvider configured, spans will be discarded")
    else:
        logger.info("Parley instrumentation enabled")


def uninstrument() -> None:
    global _tracer
    _tracer = None


@asynccontextmanager
async def session_span(conversation_id: str, provider: str, model: str):
    """Span covering one streaming session, all of its rounds included."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"chat_session {conversation_id}",
        attributes={
            "gen_ai.operation.name": "chat_session",
            "gen_ai.conversation.id": conversation_id,
            "gen_ai.provider.name": provider,
            "gen_ai.request.model": model,
        },
    ) as span:
        yield span


@asynccontextmanager
async def completion_span(provider: str, model: str, round_count: int):
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {model}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": provider,
            "gen_ai.request.model": model,
            "parley.round": round_count,
        },
    ) as span:
        yield span


@asynccontextmanager
async def tool_span(tool_name: str, call_id: str):
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"execute_tool {tool_name}",
        attributes={
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    ) as span:
        yield span


def record_usage(span, tokens: int | None) -> None:
    if span is None or tokens is None:
        return
    span.set_attribute("gen_ai.usage.total_tokens", tokens)


def record_status(span, status: str, round_count: int) -> None:
    """Tag a session span with how it ended."""
    if span is None:
        return
    span.set_attribute("parley.session.status", status)
    span.set_attribute("parley.session.rounds", round_count)


def record_error(span, kind: str, message: str) -> None:
    """Mark *span* as failed with an ``error.type`` of *kind*."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, message)
    span.set_attribute("error.type", kind)
