"""Classify finished model output into a renderable artifact.

Only the first fenced code block is considered. An explicit language tag
from :data:`FENCE_TYPES` decides the type; otherwise the block content is
sniffed, in a fixed order, according to :class:`SniffRules`.
"""

import json
import re
from typing import Literal

from pydantic import BaseModel, ConfigDict

ArtifactType = Literal["html", "react", "svg", "mermaid", "python", "json", "csv"]

FENCE_TYPES: dict[str, ArtifactType] = {
    "html": "html",
    "jsx": "react",
    "tsx": "react",
    "svg": "svg",
    "mermaid": "mermaid",
    "python": "python",
    "json": "json",
    "csv": "csv",
}

_FENCE_RE = re.compile(r"```([\w+-]*)[^\n]*\n(.*?)```", re.DOTALL)


class Artifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    language: str
    type: ArtifactType


class SniffRules(BaseModel):
    """Content-sniffing thresholds for untagged fences."""

    model_config = ConfigDict(frozen=True)

    json_containers_only: bool = True
    min_length: int = 1
    mermaid_keywords: tuple[str, ...] = ("graph", "flowchart", "sequenceDiagram")


DEFAULT_RULES = SniffRules()


def _sniff_json(code: str, rules: SniffRules) -> bool:
    try:
        parsed = json.loads(code)
    except ValueError:
        return False
    return isinstance(parsed, (dict, list)) or not rules.json_containers_only


def _sniff(code: str, rules: SniffRules) -> ArtifactType | None:
    if len(code) < rules.min_length:
        return None
    if _sniff_json(code, rules):
        return "json"
    lowered = code.lower()
    if lowered.startswith("<svg"):
        return "svg"
    if lowered.startswith("<!doctype html") or lowered.startswith("<html"):
        return "html"
    keywords = "|".join(re.escape(k) for k in rules.mermaid_keywords)
    if keywords and re.search(rf"^\s*(?:{keywords})\b", code, re.MULTILINE):
        return "mermaid"
    return None


def classify(text: str, rules: SniffRules = DEFAULT_RULES) -> Artifact | None:
    if not text:
        return None
    match = _FENCE_RE.search(text)
    if match is None:
        return None
    tag = match.group(1).lower()
    code = match.group(2).strip()

    if tag in FENCE_TYPES:
        return Artifact(code=code, language=tag, type=FENCE_TYPES[tag])

    sniffed = _sniff(code, rules)
    if sniffed is None:
        return None
    return Artifact(code=code, language=sniffed, type=sniffed)
