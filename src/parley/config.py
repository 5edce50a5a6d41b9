import logging
import os

from pydantic import BaseModel, Field

from parley.errors import ConfigurationError

LOG_FORMAT = '%(asctime)s:%(name)s:%(levelname)s:%(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

DEFAULT_SYSTEM_PROMPT = "You are a helpful, knowledgeable AI assistant."
DEFAULT_TOOLS = [
    "calculator",
    "unit_converter",
    "generate_qr_code",
    "format_json",
    "generate_password",
    "generate_color_palette",
    "test_regex",
    "base64",
    "ask_human",
]


class ModelParams(BaseModel):
    """Sampling parameters sent with every completion request."""

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, ge=256, le=8192)
    top_p: float = Field(default=1.0, ge=0.0, le=1.0)
    frequency_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)
    presence_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)


class PlaygroundSettings(BaseModel):
    provider_id: str = "openai"
    model_id: str = "gpt-4o-mini"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    params: ModelParams = Field(default_factory=ModelParams)
    enabled_tools: list[str] = Field(default_factory=lambda: list(DEFAULT_TOOLS))
    tools_enabled: bool = True
    max_tool_rounds: int = Field(default=5, ge=1)
    stall_timeout: float = Field(default=60.0, gt=0)

    @classmethod
    def from_env(cls, prefix: str = "PARLEY_") -> "PlaygroundSettings":
        """Build settings from ``PARLEY_*`` environment variables.

        Recognized: ``PROVIDER``, ``MODEL``, ``SYSTEM_PROMPT``,
        ``TEMPERATURE``, ``MAX_TOKENS``, ``TOP_P``, ``TOOLS``
        (comma-separated, empty disables tools), ``MAX_TOOL_ROUNDS``
        and ``STALL_TIMEOUT``.
        """
        def env(name: str) -> str | None:
            return os.getenv(prefix + name)

        values: dict = {}
        params: dict = {}
        if (v := env("PROVIDER")) is not None:
            values["provider_id"] = v
        if (v := env("MODEL")) is not None:
            values["model_id"] = v
        if (v := env("SYSTEM_PROMPT")) is not None:
            values["system_prompt"] = v
        if (v := env("TEMPERATURE")) is not None:
            params["temperature"] = v
        if (v := env("MAX_TOKENS")) is not None:
            params["max_tokens"] = v
        if (v := env("TOP_P")) is not None:
            params["top_p"] = v
        if (v := env("TOOLS")) is not None:
            names = [n.strip() for n in v.split(",") if n.strip()]
            values["enabled_tools"] = names
            values["tools_enabled"] = bool(names)
        if (v := env("MAX_TOOL_ROUNDS")) is not None:
            values["max_tool_rounds"] = v
        if (v := env("STALL_TIMEOUT")) is not None:
            values["stall_timeout"] = v
        if params:
            values["params"] = params

        try:
            return cls.model_validate(values)
        except ValueError as e:
            raise ConfigurationError(f"Invalid {prefix}* settings: {e}") from e


def configure_logging(level: int = logging.INFO, filename: str | None = "parley.log") -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if filename:
        handlers.insert(0, logging.FileHandler(filename))
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
    )
