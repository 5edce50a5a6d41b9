import logging

import pytest
from pydantic import ValidationError

from parley.config import (
    DEFAULT_TOOLS,
    LOG_FORMAT,
    ModelParams,
    PlaygroundSettings,
    configure_logging,
)
from parley.errors import ConfigurationError


class TestModelParams:
    def test_defaults(self):
        params = ModelParams()

        assert params.temperature == 0.7
        assert params.max_tokens == 2048
        assert params.top_p == 1.0

    @pytest.mark.parametrize(
        "field,value",
        [
            ("temperature", 2.5),
            ("max_tokens", 100),
            ("max_tokens", 9000),
            ("top_p", 1.5),
            ("presence_penalty", -3),
        ],
    )
    def test_out_of_range(self, field, value):
        with pytest.raises(ValidationError):
            ModelParams(**{field: value})


class TestSettingsFromEnv:
    def test_defaults_without_env(self, monkeypatch):
        for name in ("PROVIDER", "MODEL", "TOOLS", "TEMPERATURE"):
            monkeypatch.delenv(f"PARLEY_{name}", raising=False)

        settings = PlaygroundSettings.from_env()

        assert settings.provider_id == "openai"
        assert settings.enabled_tools == DEFAULT_TOOLS
        assert settings.max_tool_rounds == 5

    def test_reads_values(self, monkeypatch):
        monkeypatch.setenv("PARLEY_PROVIDER", "anthropic")
        monkeypatch.setenv("PARLEY_MODEL", "claude-sonnet-4-5")
        monkeypatch.setenv("PARLEY_TEMPERATURE", "0.3")
        monkeypatch.setenv("PARLEY_MAX_TOKENS", "1024")
        monkeypatch.setenv("PARLEY_TOOLS", "calculator, base64")
        monkeypatch.setenv("PARLEY_STALL_TIMEOUT", "15")

        settings = PlaygroundSettings.from_env()

        assert settings.provider_id == "anthropic"
        assert settings.model_id == "claude-sonnet-4-5"
        assert settings.params.temperature == 0.3
        assert settings.params.max_tokens == 1024
        assert settings.enabled_tools == ["calculator", "base64"]
        assert settings.tools_enabled
        assert settings.stall_timeout == 15.0

    def test_empty_tools_disables(self, monkeypatch):
        monkeypatch.setenv("PARLEY_TOOLS", "")

        settings = PlaygroundSettings.from_env()

        assert settings.enabled_tools == []
        assert not settings.tools_enabled

    def test_custom_prefix(self, monkeypatch):
        monkeypatch.setenv("PLAY_MODEL", "gpt-4.1")

        assert PlaygroundSettings.from_env(prefix="PLAY_").model_id == "gpt-4.1"

    def test_invalid_value(self, monkeypatch):
        monkeypatch.setenv("PARLEY_MAX_TOOL_ROUNDS", "0")

        with pytest.raises(ConfigurationError, match="PARLEY_"):
            PlaygroundSettings.from_env()


class TestConfigureLogging:
    def test_installs_handlers(self, tmp_path, monkeypatch):
        root = logging.getLogger()
        monkeypatch.setattr(root, "handlers", [])
        monkeypatch.setattr(root, "level", root.level)
        log_file = tmp_path / "parley.log"

        configure_logging(logging.DEBUG, filename=str(log_file))
        logging.getLogger("parley.test").debug("hello")
        for handler in root.handlers:
            handler.flush()

        assert root.handlers[0].formatter._fmt == LOG_FORMAT
        assert ":parley.test:DEBUG:hello" in log_file.read_text()
        for handler in root.handlers:
            handler.close()
