"""Provider adapters.

Every provider speaks one of three wire families. Each adapter owns the
mapping from its native chunks to the canonical events in
:mod:`parley.events`; nothing outside this module branches on provider
identity.

- :class:`OpenAICompatibleProvider`: chat-completions SSE via ``openai``.
- :class:`AnthropicProvider`: Messages API SSE via ``httpx``.
- :class:`OllamaProvider`: native ``/api/chat`` NDJSON via ``httpx``.
"""

import json
import logging
import os
import re
from collections.abc import AsyncIterator
from enum import Enum

import httpx
import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from parley.cancellation import CancellationToken
from parley.capability import ALL_CAPABILITIES, NO_VISION, TEXT_ONLY, Capability
from parley.config import ModelParams
from parley.errors import (
    AuthError,
    ConfigurationError,
    ErrorKind,
    ProtocolError,
    ProviderError,
    RateLimitError,
    TransientNetworkError,
    error_for_status,
)
from parley.events import (
    DoneEvent,
    ErrorEvent,
    StreamEvent,
    TextDelta,
    ToolCallComplete,
    ToolCallDelta,
    UsageEvent,
)
from parley.message import (
    ContextMessage,
    ImagePart,
    MessageRole,
    TextPart,
    ToolCallRequestMessage,
    ToolCallResultMessage,
    content_text,
    has_images,
    new_id,
)
from parley.streaming import (
    ToolCall,
    ToolCallAccumulator,
    ToolCallFragment,
    iter_ndjson,
    iter_sse,
    parse_arguments,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
NO_SYSTEM_PROMPT_MODELS = ["o1", "o1-mini"]
NO_STREAMING_MODELS = ["o1"]


class ProviderId(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    MISTRAL = "mistral"
    XAI = "xai"
    GROQ = "groq"
    COHERE = "cohere"
    TOGETHER = "together"
    PERPLEXITY = "perplexity"
    OLLAMA = "ollama"
    OPENROUTER = "openrouter"


class WireFamily(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"


class ModelInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    tags: tuple[str, ...] = ()
    context_window: int | None = None


class ProviderSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: ProviderId
    name: str
    base_url: str
    wire: WireFamily = WireFamily.OPENAI
    requires_key: bool = True
    capabilities: frozenset[Capability] = ALL_CAPABILITIES
    extra_headers: dict[str, str] = Field(default_factory=dict)
    stream_usage: bool = False
    models: tuple[ModelInfo, ...] = ()

    @property
    def env_key(self) -> str:
        return f"{self.id.value.upper()}_API_KEY"


def _models(*rows) -> tuple[ModelInfo, ...]:
    return tuple(
        ModelInfo(id=mid, name=name, tags=tuple(tags), context_window=ctx)
        for mid, name, tags, ctx in rows
    )


PROVIDERS: dict[ProviderId, ProviderSpec] = {
    ProviderId.OPENAI: ProviderSpec(
        id=ProviderId.OPENAI, name="OpenAI",
        base_url="https://api.openai.com/v1", stream_usage=True,
        models=_models(
            ("gpt-4o", "GPT-4o", ["vision"], 128000),
            ("gpt-4o-mini", "GPT-4o Mini", ["vision", "fast"], 128000),
            ("gpt-4.1", "GPT-4.1", ["vision"], 1000000),
            ("gpt-4.1-mini", "GPT-4.1 Mini", ["vision", "fast"], 1000000),
            ("gpt-4.1-nano", "GPT-4.1 Nano", ["fast"], 1000000),
            ("o1", "o1", ["reasoning"], 200000),
            ("o1-mini", "o1 Mini", ["reasoning", "fast"], 128000),
            ("o3", "o3", ["reasoning"], 200000),
            ("o3-mini", "o3 Mini", ["reasoning", "fast"], 200000),
            ("o4-mini", "o4 Mini", ["reasoning", "fast"], 200000),
        ),
    ),
    ProviderId.ANTHROPIC: ProviderSpec(
        id=ProviderId.ANTHROPIC, name="Anthropic",
        base_url="https://api.anthropic.com/v1", wire=WireFamily.ANTHROPIC,
        extra_headers={"anthropic-version": ANTHROPIC_VERSION},
        models=_models(
            ("claude-opus-4-5", "Claude Opus 4.5", ["vision", "long-context"], 200000),
            ("claude-sonnet-4-5", "Claude Sonnet 4.5", ["vision", "long-context"], 200000),
            ("claude-haiku-4-5", "Claude Haiku 4.5", ["vision", "fast"], 200000),
        ),
    ),
    ProviderId.GEMINI: ProviderSpec(
        id=ProviderId.GEMINI, name="Google Gemini",
        base_url="https://generativelanguage.googleapis.com/v1beta/openai/",
        models=_models(
            ("gemini-2.0-flash", "Gemini 2.0 Flash", ["vision", "fast"], 1000000),
            ("gemini-2.0-flash-lite", "Gemini 2.0 Flash Lite", ["fast"], 1000000),
            ("gemini-2.5-pro", "Gemini 2.5 Pro", ["reasoning", "vision", "long-context"], 2000000),
        ),
    ),
    ProviderId.MISTRAL: ProviderSpec(
        id=ProviderId.MISTRAL, name="Mistral",
        base_url="https://api.mistral.ai/v1",
        models=_models(
            ("mistral-large-latest", "Mistral Large", ["vision"], 128000),
            ("mistral-small-latest", "Mistral Small", ["fast"], 128000),
            ("codestral-latest", "Codestral", ["code"], 256000),
            ("pixtral-large-latest", "Pixtral Large", ["vision"], 128000),
        ),
    ),
    ProviderId.XAI: ProviderSpec(
        id=ProviderId.XAI, name="xAI (Grok)",
        base_url="https://api.x.ai/v1",
        models=_models(
            ("grok-3", "Grok 3", ["web-search"], 131072),
            ("grok-3-mini", "Grok 3 Mini", ["fast", "reasoning"], 131072),
            ("grok-2-vision", "Grok 2 Vision", ["vision"], 32768),
        ),
    ),
    ProviderId.GROQ: ProviderSpec(
        id=ProviderId.GROQ, name="Groq",
        base_url="https://api.groq.com/openai/v1", capabilities=NO_VISION,
        models=_models(
            ("llama-3.3-70b-versatile", "Llama 3.3 70B", ["fast"], 128000),
            ("deepseek-r1-distill-llama-70b", "DeepSeek R1 Llama 70B", ["reasoning", "fast"], 128000),
            ("mixtral-8x7b-32768", "Mixtral 8x7B", ["fast"], 32768),
        ),
    ),
    ProviderId.COHERE: ProviderSpec(
        id=ProviderId.COHERE, name="Cohere",
        base_url="https://api.cohere.com/compatibility/v1", capabilities=NO_VISION,
        models=_models(
            ("command-r-plus", "Command R+", ["long-context"], 128000),
            ("command-r", "Command R", ["fast"], 128000),
            ("command", "Command", [], 4096),
        ),
    ),
    ProviderId.TOGETHER: ProviderSpec(
        id=ProviderId.TOGETHER, name="Together AI",
        base_url="https://api.together.xyz/v1", capabilities=NO_VISION,
        models=_models(
            ("meta-llama/Llama-3.3-70B-Instruct-Turbo", "Llama 3.3 70B Turbo", ["fast"], 131072),
            ("mistralai/Mixtral-8x7B-Instruct-v0.1", "Mixtral 8x7B", [], 32768),
            ("deepseek-ai/DeepSeek-R1", "DeepSeek R1", ["reasoning"], 65536),
        ),
    ),
    ProviderId.PERPLEXITY: ProviderSpec(
        id=ProviderId.PERPLEXITY, name="Perplexity",
        base_url="https://api.perplexity.ai", capabilities=TEXT_ONLY,
        models=_models(
            ("sonar", "Sonar", ["web-search", "fast"], 127072),
            ("sonar-pro", "Sonar Pro", ["web-search"], 200000),
            ("sonar-reasoning", "Sonar Reasoning", ["web-search", "reasoning"], 127072),
        ),
    ),
    ProviderId.OLLAMA: ProviderSpec(
        id=ProviderId.OLLAMA, name="Ollama (Local)",
        base_url="http://localhost:11434", wire=WireFamily.OLLAMA,
        requires_key=False,
        models=_models(
            ("llama3", "Llama 3", ["fast"], 8192),
            ("mistral", "Mistral 7B", ["fast"], 32768),
            ("codellama", "Code Llama", ["code"], 16384),
        ),
    ),
    ProviderId.OPENROUTER: ProviderSpec(
        id=ProviderId.OPENROUTER, name="OpenRouter",
        base_url="https://openrouter.ai/api/v1",
        models=_models(
            ("openai/gpt-4o", "GPT-4o", ["vision"], 128000),
            ("anthropic/claude-sonnet-4.5", "Claude Sonnet 4.5", ["vision", "long-context"], 200000),
            ("meta-llama/llama-3.3-70b-instruct", "Llama 3.3 70B", ["fast"], 131072),
        ),
    ),
}


class CompletionRequest(BaseModel):
    """One round's request to a provider.

    Sampling parameters are range-checked by :meth:`ModelProvider.validate`
    rather than at construction, so an out-of-range value surfaces as a
    :class:`~parley.errors.ConfigurationError`.
    """

    model_id: str
    messages: list[ContextMessage] = Field(default_factory=list)
    system_prompt: str | None = None
    temperature: float = 0.7
    max_tokens: int = 2048
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    tools: list[dict] | None = None

    @classmethod
    def build(cls, model_id: str, messages: list[ContextMessage], params: ModelParams,
              system_prompt: str | None = None, tools: list[dict] | None = None) -> "CompletionRequest":
        return cls(
            model_id=model_id, messages=messages, system_prompt=system_prompt,
            tools=tools or None, **params.model_dump(),
        )


def _wants_tools(request: CompletionRequest) -> bool:
    return bool(request.tools) or any(
        isinstance(m, (ToolCallRequestMessage, ToolCallResultMessage))
        for m in request.messages
    )


def _result_text(message: ToolCallResultMessage) -> str:
    return content_text(message.content)


class ModelProvider:
    """Base class for provider adapters.

    Subclasses implement :meth:`_stream`, raising
    :class:`~parley.errors.ProviderError` on failure; :meth:`open`
    validates the request and turns those errors into a final
    :class:`~parley.events.ErrorEvent`.
    """

    def __init__(self, spec: ProviderSpec, api_key: str | None = None):
        self.spec = spec
        self.api_key = api_key

    @property
    def provider_id(self) -> ProviderId:
        return self.spec.id

    @property
    def capabilities(self) -> frozenset[Capability]:
        return self.spec.capabilities

    def validate(self, request: CompletionRequest) -> None:
        """Reject a request the provider cannot legally receive.

        Raises:
            ConfigurationError: Tool context sent to a provider without
                tool calling, images sent to one without vision, or
                sampling parameters out of range.
        """
        if _wants_tools(request) and Capability.TOOL_CALLING not in self.capabilities:
            raise ConfigurationError(f"{self.spec.name} does not support tool calling")
        if Capability.VISION not in self.capabilities and any(
            has_images(m.content) for m in request.messages
        ):
            raise ConfigurationError(f"{self.spec.name} does not support image input")
        try:
            ModelParams(
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                top_p=request.top_p,
                frequency_penalty=request.frequency_penalty,
                presence_penalty=request.presence_penalty,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid sampling parameters: {e}") from e

    def open(self, request: CompletionRequest, token: CancellationToken | None = None) -> AsyncIterator[StreamEvent]:
        """Validate *request* and start streaming its response.

        Raises:
            ConfigurationError: Raised here, before any network I/O.
        """
        self.validate(request)
        return self._events(request, token or CancellationToken())

    async def _events(self, request: CompletionRequest, token: CancellationToken) -> AsyncIterator[StreamEvent]:
        try:
            async for event in self._stream(request, token):
                yield event
        except ProviderError as e:
            logger.error(f"{self.spec.name} request failed ({e.kind.value}): {e}")
            yield ErrorEvent(kind=e.kind, message=str(e))
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            logger.exception(f"Malformed {self.spec.name} response")
            yield ErrorEvent(
                kind=ErrorKind.PROTOCOL,
                message=f"Malformed {self.spec.name} response: {type(e).__name__}: {e}",
            )

    async def _stream(self, request: CompletionRequest, token: CancellationToken) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError
        yield  # pragma: no cover

    def system_prompt(self, request: CompletionRequest) -> str | None:
        if request.model_id in NO_SYSTEM_PROMPT_MODELS:
            return None
        return request.system_prompt or None

    async def aclose(self) -> None:
        pass


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions
# ---------------------------------------------------------------------------

def _openai_error(e: openai.APIError, provider: str, model: str) -> ProviderError:
    if isinstance(e, openai.NotFoundError):
        return ProtocolError(f"Model {model} not found on {provider}", status_code=404)
    if isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthError(f"Invalid API key for {provider}", status_code=e.status_code)
    if isinstance(e, openai.RateLimitError):
        return RateLimitError(f"Rate limited by {provider}. Try again soon.", status_code=429)
    if isinstance(e, openai.APIConnectionError):
        return TransientNetworkError(f"Connection to {provider} failed: {e.message}")
    if isinstance(e, openai.APIStatusError):
        return error_for_status(e.status_code, e.message)
    return ProtocolError(str(e))


class OpenAICompatibleProvider(ModelProvider):

    def __init__(self, spec: ProviderSpec, api_key: str | None = None, timeout: float = 600.0):
        super().__init__(spec, api_key)
        self.base_url = spec.base_url.rstrip("/")
        self.client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or "DUMMY",
            default_headers=spec.extra_headers or None,
            max_retries=0,
            timeout=timeout,
        )

    def messages(self, request: CompletionRequest) -> list[dict]:
        out: list[dict] = []
        system = self.system_prompt(request)
        if system:
            out.append({"role": "system", "content": system})
        for m in request.messages:
            if isinstance(m, ToolCallRequestMessage):
                out.append({
                    "role": "assistant",
                    "content": content_text(m.content) or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                        }
                        for tc in m.tool_calls
                    ],
                })
            elif isinstance(m, ToolCallResultMessage):
                out.append({"role": "tool", "tool_call_id": m.tool_call_id, "content": _result_text(m)})
            elif isinstance(m.content, str):
                out.append({"role": m.role.value, "content": m.content})
            else:
                parts = []
                for p in m.content:
                    if isinstance(p, TextPart):
                        parts.append({"type": "text", "text": p.text})
                    else:
                        parts.append({"type": "image_url", "image_url": {"url": p.url}})
                out.append({"role": m.role.value, "content": parts})
        return out

    def _kwargs(self, request: CompletionRequest, stream: bool) -> dict:
        kwargs = dict(
            model=request.model_id,
            messages=self.messages(request),
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            top_p=request.top_p,
        )
        if request.frequency_penalty:
            kwargs["frequency_penalty"] = request.frequency_penalty
        if request.presence_penalty:
            kwargs["presence_penalty"] = request.presence_penalty
        if request.tools:
            kwargs["tools"] = request.tools
            kwargs["tool_choice"] = "auto"
        if stream:
            kwargs["stream"] = True
            if self.spec.stream_usage:
                kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    async def _stream(self, request, token):
        try:
            if request.model_id in NO_STREAMING_MODELS:
                async for event in self._complete_once(request):
                    yield event
                return

            stream = await self.client.chat.completions.create(**self._kwargs(request, stream=True))
            acc = ToolCallAccumulator()
            stop_reason = None
            try:
                async for chunk in stream:
                    if token.cancelled:
                        return
                    usage = getattr(chunk, "usage", None)
                    if usage is not None:
                        yield UsageEvent(tokens=usage.total_tokens)
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    delta = choice.delta
                    if delta is not None and delta.content:
                        yield TextDelta(text=delta.content)
                    for tc in (delta.tool_calls if delta is not None else None) or []:
                        fn = tc.function
                        fragment = ToolCallFragment(
                            index=tc.index,
                            call_id=tc.id,
                            name=fn.name if fn else None,
                            arguments_delta=fn.arguments if fn else None,
                        )
                        call = acc.feed(fragment)
                        yield ToolCallDelta(
                            id=call.id,
                            name_fragment=fragment.name,
                            args_fragment=fragment.arguments_delta,
                        )
                    if choice.finish_reason:
                        stop_reason = choice.finish_reason
            finally:
                await stream.close()

            for complete in acc.finalize():
                yield complete
            yield DoneEvent(stop_reason=stop_reason)
        except openai.APIError as e:
            raise _openai_error(e, self.spec.name, request.model_id) from e

    async def _complete_once(self, request):
        response = await self.client.chat.completions.create(**self._kwargs(request, stream=False))
        if not response.choices:
            raise ProtocolError(f"{self.spec.name} returned no choices")
        choice = response.choices[0]
        message = choice.message
        if message.content:
            yield TextDelta(text=message.content)
        for tc in message.tool_calls or []:
            yield ToolCallComplete(
                id=tc.id,
                name=tc.function.name,
                arguments=parse_arguments(tc.function.name, tc.function.arguments),
            )
        if getattr(response, "usage", None) is not None:
            yield UsageEvent(tokens=response.usage.total_tokens)
        yield DoneEvent(stop_reason=choice.finish_reason)

    async def aclose(self) -> None:
        await self.client.close()


# ---------------------------------------------------------------------------
# HTTP helpers shared by the httpx adapters
# ---------------------------------------------------------------------------

_DATA_URL_RE = re.compile(r"^data:(?P<media>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)


def _split_data_url(url: str) -> tuple[str, str] | None:
    match = _DATA_URL_RE.match(url)
    if match is None:
        return None
    return match.group("media"), match.group("data")


def _field(payload: dict, key: str) -> dict:
    """Nested object ``payload[key]``, empty when absent."""
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProtocolError(f"Expected an object for {key!r}, got {type(value).__name__}")
    return value


async def _raise_for_status(response: httpx.Response, provider: str, model: str) -> None:
    if response.status_code < 400:
        return
    await response.aread()
    try:
        body = response.json()
    except ValueError:
        body = None
    detail = response.text
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            detail = err.get("message") or detail
        elif isinstance(err, str):
            detail = err
    if response.status_code == 404:
        raise ProtocolError(f"Model {model} not found on {provider}", status_code=404)
    if response.status_code == 401:
        raise AuthError(f"Invalid API key for {provider}", status_code=401)
    if response.status_code == 429:
        raise RateLimitError(f"Rate limited by {provider}. Try again soon.", status_code=429)
    raise error_for_status(response.status_code, f"{provider} error {response.status_code}: {detail}")


class HTTPProvider(ModelProvider):
    """Adapter that speaks to its provider with a shared ``httpx`` client."""

    def __init__(self, spec: ProviderSpec, api_key: str | None = None,
                 client: httpx.AsyncClient | None = None, timeout: float = 600.0):
        super().__init__(spec, api_key)
        self.base_url = spec.base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def headers(self) -> dict[str, str]:
        return {"content-type": "application/json", **self.spec.extra_headers}

    async def aclose(self) -> None:
        await self.client.aclose()


# ---------------------------------------------------------------------------
# Anthropic Messages API
# ---------------------------------------------------------------------------

_ANTHROPIC_ERROR_TYPES = {
    "authentication_error": AuthError,
    "permission_error": AuthError,
    "rate_limit_error": RateLimitError,
    "overloaded_error": TransientNetworkError,
    "api_error": TransientNetworkError,
}


class AnthropicProvider(HTTPProvider):

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        headers.setdefault("anthropic-version", ANTHROPIC_VERSION)
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    @staticmethod
    def _blocks(content) -> str | list[dict]:
        if isinstance(content, str):
            return content
        blocks = []
        for p in content:
            if isinstance(p, TextPart):
                blocks.append({"type": "text", "text": p.text})
            elif isinstance(p, ImagePart):
                split = _split_data_url(p.url)
                if split:
                    media, data = split
                    source = {"type": "base64", "media_type": media, "data": data}
                else:
                    source = {"type": "url", "url": p.url}
                blocks.append({"type": "image", "source": source})
        return blocks

    def body(self, request: CompletionRequest) -> dict:
        system_parts = [self.system_prompt(request)] if self.system_prompt(request) else []
        messages: list[dict] = []
        for m in request.messages:
            if isinstance(m, ToolCallRequestMessage):
                blocks = []
                if content_text(m.content):
                    blocks.append({"type": "text", "text": content_text(m.content)})
                blocks += [
                    {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments}
                    for tc in m.tool_calls
                ]
                messages.append({"role": "assistant", "content": blocks})
            elif isinstance(m, ToolCallResultMessage):
                block = {"type": "tool_result", "tool_use_id": m.tool_call_id, "content": _result_text(m)}
                last = messages[-1] if messages else None
                if last and last["role"] == "user" and isinstance(last["content"], list) \
                        and all(b.get("type") == "tool_result" for b in last["content"]):
                    last["content"].append(block)
                else:
                    messages.append({"role": "user", "content": [block]})
            elif m.role == MessageRole.SYSTEM:
                system_parts.append(content_text(m.content))
            else:
                messages.append({"role": m.role.value, "content": self._blocks(m.content)})

        body = {
            "model": request.model_id,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "stream": True,
        }
        if request.top_p < 1.0:
            body["top_p"] = request.top_p
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if request.tools:
            body["tools"] = [
                {
                    "name": t["function"]["name"],
                    "description": t["function"].get("description", ""),
                    "input_schema": t["function"].get("parameters") or {"type": "object", "properties": {}},
                }
                for t in request.tools
            ]
        return body

    async def _stream(self, request, token):
        url = f"{self.base_url}/messages"
        blocks: dict[int, ToolCall] = {}
        input_tokens = 0
        stop_reason = None
        try:
            async with self.client.stream("POST", url, headers=self.headers(), json=self.body(request)) as response:
                await _raise_for_status(response, self.spec.name, request.model_id)
                async for sse in iter_sse(response.aiter_lines()):
                    if token.cancelled:
                        return
                    try:
                        payload = json.loads(sse.data)
                    except json.JSONDecodeError as e:
                        raise ProtocolError(f"Malformed {self.spec.name} event: {sse.data[:200]}") from e
                    if not isinstance(payload, dict):
                        raise ProtocolError(f"Malformed {self.spec.name} event: {sse.data[:200]}")
                    kind = payload.get("type", sse.event)

                    if kind == "message_start":
                        usage = _field(_field(payload, "message"), "usage")
                        input_tokens = usage.get("input_tokens") or 0
                    elif kind == "content_block_start":
                        block = _field(payload, "content_block")
                        if block.get("type") == "tool_use":
                            index = payload.get("index")
                            if index is None:
                                raise ProtocolError("content_block_start without an index")
                            blocks[index] = ToolCall(id=block.get("id", ""), name=block.get("name", ""))
                            yield ToolCallDelta(id=block.get("id", ""), name_fragment=block.get("name"))
                    elif kind == "content_block_delta":
                        delta = _field(payload, "delta")
                        if delta.get("type") == "text_delta":
                            if delta.get("text"):
                                yield TextDelta(text=str(delta["text"]))
                        elif delta.get("type") == "input_json_delta":
                            call = blocks.get(payload.get("index"))
                            if call is None:
                                raise ProtocolError("input_json_delta for unknown content block")
                            fragment = str(delta.get("partial_json") or "")
                            call.arguments += fragment
                            yield ToolCallDelta(id=call.id, args_fragment=fragment)
                    elif kind == "content_block_stop":
                        call = blocks.pop(payload.get("index"), None)
                        if call is not None:
                            yield ToolCallComplete(
                                id=call.id, name=call.name,
                                arguments=parse_arguments(call.name, call.arguments),
                            )
                    elif kind == "message_delta":
                        stop_reason = _field(payload, "delta").get("stop_reason") or stop_reason
                        output_tokens = _field(payload, "usage").get("output_tokens")
                        if output_tokens is not None:
                            yield UsageEvent(tokens=input_tokens + output_tokens)
                    elif kind == "message_stop":
                        yield DoneEvent(stop_reason=stop_reason)
                        return
                    elif kind == "error":
                        err = _field(payload, "error")
                        cls = _ANTHROPIC_ERROR_TYPES.get(err.get("type"), ProtocolError)
                        raise cls(err.get("message") or "Unknown streaming error")
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Connection to {self.spec.name} failed: {e}") from e


# ---------------------------------------------------------------------------
# Ollama native chat
# ---------------------------------------------------------------------------

class OllamaProvider(HTTPProvider):

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    def body(self, request: CompletionRequest) -> dict:
        messages: list[dict] = []
        system = self.system_prompt(request)
        if system:
            messages.append({"role": "system", "content": system})
        for m in request.messages:
            if isinstance(m, ToolCallRequestMessage):
                messages.append({
                    "role": "assistant",
                    "content": content_text(m.content),
                    "tool_calls": [
                        {"function": {"name": tc.name, "arguments": tc.arguments}}
                        for tc in m.tool_calls
                    ],
                })
            elif isinstance(m, ToolCallResultMessage):
                messages.append({"role": "tool", "content": _result_text(m), "tool_name": m.name})
            else:
                entry = {"role": m.role.value, "content": content_text(m.content)}
                images = []
                if not isinstance(m.content, str):
                    for p in m.content:
                        if isinstance(p, ImagePart):
                            split = _split_data_url(p.url)
                            if split:
                                images.append(split[1])
                            else:
                                logger.warning(f"Ollama only accepts inline images, dropping {p.url[:60]}")
                if images:
                    entry["images"] = images
                messages.append(entry)

        body = {
            "model": request.model_id,
            "messages": messages,
            "stream": True,
            "options": {
                "temperature": request.temperature,
                "top_p": request.top_p,
                "num_predict": request.max_tokens,
            },
        }
        if request.tools:
            body["tools"] = request.tools
        return body

    async def _stream(self, request, token):
        url = f"{self.base_url}/api/chat"
        try:
            async with self.client.stream("POST", url, headers=self.headers(), json=self.body(request)) as response:
                await _raise_for_status(response, self.spec.name, request.model_id)
                async for chunk in iter_ndjson(response.aiter_lines()):
                    if token.cancelled:
                        return
                    if "error" in chunk:
                        raise ProtocolError(f"{self.spec.name} error: {chunk['error']}")
                    message = _field(chunk, "message")
                    if message.get("content"):
                        yield TextDelta(text=str(message["content"]))
                    tool_calls = message.get("tool_calls") or []
                    if not isinstance(tool_calls, list):
                        raise ProtocolError(f"Malformed {self.spec.name} tool_calls: {tool_calls!r:.200}")
                    for tc in tool_calls:
                        if not isinstance(tc, dict):
                            raise ProtocolError(f"Malformed {self.spec.name} tool call: {tc!r:.200}")
                        fn = _field(tc, "function")
                        arguments = fn.get("arguments") or {}
                        if isinstance(arguments, str):
                            arguments = parse_arguments(fn.get("name", ""), arguments)
                        yield ToolCallComplete(
                            id=tc.get("id") or f"call_{new_id()[:12]}",
                            name=fn.get("name", ""),
                            arguments=arguments,
                        )
                    if chunk.get("done"):
                        tokens = chunk.get("prompt_eval_count", 0) + chunk.get("eval_count", 0)
                        if tokens:
                            yield UsageEvent(tokens=tokens)
                        yield DoneEvent(stop_reason=chunk.get("done_reason"))
                        return
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Connection to {self.spec.name} failed: {e}") from e


_ADAPTERS: dict[WireFamily, type[ModelProvider]] = {
    WireFamily.OPENAI: OpenAICompatibleProvider,
    WireFamily.ANTHROPIC: AnthropicProvider,
    WireFamily.OLLAMA: OllamaProvider,
}


def build_provider(provider_id: ProviderId | str, api_key: str | None = None, **kwargs) -> ModelProvider:
    """Construct the adapter for *provider_id*.

    Falls back to the ``<PROVIDER>_API_KEY`` environment variable when no
    key is given.

    Raises:
        ConfigurationError: Unknown provider id.
    """
    try:
        spec = PROVIDERS[ProviderId(provider_id)]
    except ValueError as e:
        raise ConfigurationError(f"Unknown provider '{provider_id}'") from e
    if not api_key:
        api_key = os.getenv(spec.env_key)
    return _ADAPTERS[spec.wire](spec, api_key=api_key, **kwargs)

