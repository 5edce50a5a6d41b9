"""Collaborators that keep state across restarts.

:class:`JsonFilePersistence` stores conversations and settings in a single
versioned JSON document. :class:`KeyStore` holds API keys in process
memory and falls back to ``<PROVIDER>_API_KEY`` environment variables.
"""

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from parley.conversation import Conversation
from parley.errors import PersistenceError
from parley.message import ERROR_MARKER

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_LEGACY_KEYS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "providerId": "provider_id",
    "modelId": "model_id",
    "systemPrompt": "system_prompt",
    "toolCalls": "tool_calls",
}


class Persistence:
    """Interface the store saves through."""

    def load(self) -> list[Conversation]:
        raise NotImplementedError

    def save(self, conversations: list[Conversation]) -> None:
        raise NotImplementedError


class InMemoryPersistence(Persistence):
    def __init__(self, conversations: list[Conversation] | None = None):
        self._conversations = [c.model_dump(mode="json") for c in conversations or []]
        self.save_count = 0

    def load(self) -> list[Conversation]:
        return [Conversation.model_validate(c) for c in self._conversations]

    def save(self, conversations: list[Conversation]) -> None:
        self._conversations = [c.model_dump(mode="json") for c in conversations]
        self.save_count += 1


def _rename_legacy(data: dict) -> dict:
    return {_LEGACY_KEYS.get(k, k): v for k, v in data.items()}


def _migrate_message(data: dict) -> dict:
    msg = _rename_legacy(data)
    if msg.get("thumbs") is None:
        msg["thumbs"] = "none"
    content = msg.get("content")
    if isinstance(content, list):
        parts = []
        for part in content:
            if part.get("type") == "image_url" and isinstance(part.get("image_url"), dict):
                parts.append({"type": "image_url", "url": part["image_url"].get("url", "")})
            else:
                parts.append(part)
        msg["content"] = parts
    msg["tool_calls"] = [
        tc for tc in msg.get("tool_calls") or []
        if isinstance(tc, dict) and "id" in tc and "name" in tc
    ]
    msg.pop("isStreaming", None)
    if "status" not in msg:
        text = content if isinstance(content, str) else " ".join(
            p.get("text", "") for p in msg.get("content") or [] if isinstance(p, dict)
        )
        msg["status"] = "error" if text and ERROR_MARKER in text else "complete"
    return msg


def _migrate_conversation(data: dict) -> dict:
    conv = _rename_legacy(data)
    conv["messages"] = [_migrate_message(m) for m in conv.get("messages", [])]
    return conv


def migrate(payload: Any) -> dict:
    """Bring a stored payload up to :data:`SCHEMA_VERSION`.

    Unversioned payloads (a bare list of conversations, or an object
    possibly wrapped in ``{"state": ...}``) are treated as legacy.

    Raises:
        PersistenceError: The payload is from a newer schema or is not
            recognizable.
    """
    if isinstance(payload, list):
        payload = {"conversations": payload}
    if not isinstance(payload, dict):
        raise PersistenceError(f"Unrecognized payload of type {type(payload).__name__}")

    version = payload.get("version")
    if version is None:
        state = payload.get("state", payload)
        logger.info("Migrating unversioned conversation store")
        return {
            "version": SCHEMA_VERSION,
            "conversations": [_migrate_conversation(c) for c in state.get("conversations", [])],
            "settings": state.get("settings", {}),
        }
    if not isinstance(version, int) or version > SCHEMA_VERSION:
        raise PersistenceError(f"Unsupported store version {version!r}")
    return payload


class JsonFilePersistence(Persistence):

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.settings: dict = {}

    def _read(self) -> dict:
        if not self.path.exists():
            return {"version": SCHEMA_VERSION, "conversations": [], "settings": {}}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Could not read {self.path}: {e}") from e
        return migrate(payload)

    def load(self) -> list[Conversation]:
        payload = self._read()
        self.settings = payload.get("settings", {})
        try:
            return [Conversation.model_validate(c) for c in payload.get("conversations", [])]
        except ValidationError as e:
            raise PersistenceError(f"Corrupt conversation in {self.path}: {e}") from e

    def save(self, conversations: list[Conversation], settings: dict | None = None) -> None:
        if settings is not None:
            self.settings = settings
        payload = {
            "version": SCHEMA_VERSION,
            "conversations": [c.model_dump(mode="json") for c in conversations],
            "settings": self.settings,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceError(f"Could not write {self.path}: {e}") from e


class KeyStore:
    """API keys by provider id.

    Keys live only in memory; :meth:`get_key` falls back to the
    ``<PROVIDER>_API_KEY`` environment variable.
    """

    def __init__(self, keys: dict[str, str] | None = None):
        self._keys = dict(keys or {})

    def get_key(self, provider_id: str) -> str | None:
        provider_id = getattr(provider_id, "value", provider_id)
        key = self._keys.get(provider_id)
        if key:
            return key
        return os.getenv(f"{provider_id.upper()}_API_KEY") or None

    def set_key(self, provider_id: str, key: str) -> None:
        provider_id = getattr(provider_id, "value", provider_id)
        if key:
            self._keys[provider_id] = key
        else:
            self._keys.pop(provider_id, None)
