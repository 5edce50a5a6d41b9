"""Slash commands: small utilities answered locally, with no provider call.

``run_slash_command("/roll 2d6")`` returns the reply text, or ``None``
when the input is not a known command and should go to the model.
"""

import base64
import binascii
import random
import re
import unicodedata
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class SlashCommand:
    name: str
    description: str
    handler: Callable[[str, random.Random], str]
    arg_hint: str = ""


COMMANDS: dict[str, SlashCommand] = {}


def command(name: str, description: str, arg_hint: str = ""):
    def register(func):
        COMMANDS[name] = SlashCommand(name, description, func, arg_hint)
        return func
    return register


def _usage(name: str) -> str:
    return f"Usage: `{name} {COMMANDS[name].arg_hint}`"


@command("/uuid", "Generate a random UUID v4")
def _uuid(args, rng):
    return f"**UUID:** `{uuid.uuid4()}`"


@command("/date", "Current date (long format)")
def _date(args, rng):
    now = datetime.now()
    return f"**Date:** {now:%A, %B} {now.day}, {now:%Y}"


@command("/time", "Current local time")
def _time(args, rng):
    return f"**Time:** {datetime.now():%H:%M:%S}"


@command("/datetime", "Full date + time")
def _datetime(args, rng):
    return f"**Date & time:** {datetime.now():%Y-%m-%d %H:%M:%S}"


@command("/timestamp", "Unix timestamp in milliseconds")
def _timestamp(args, rng):
    return f"**Unix timestamp (ms):** `{int(datetime.now().timestamp() * 1000)}`"


@command("/flip", "Flip a coin (heads or tails)")
def _flip(args, rng):
    return f"**Coin flip:** **{'Heads' if rng.random() < 0.5 else 'Tails'}**"


@command("/roll", "Roll dice, e.g. /roll 2d6", "NdS")
def _roll(args, rng):
    match = re.fullmatch(r"(\d+)?d(\d+)", args, re.IGNORECASE)
    if not match:
        return f"**d6 roll:** **{rng.randint(1, 6)}**  *(usage: /roll 2d6)*"
    count = max(1, min(int(match.group(1) or 1), 20))
    sides = max(1, min(int(match.group(2)), 10000))
    rolls = [rng.randint(1, sides) for _ in range(count)]
    return f"**{count}d{sides}:** {' + '.join(map(str, rolls))} = **{sum(rolls)}**"


@command("/random", "Random integer, e.g. /random 1 100", "min max")
def _random(args, rng):
    numbers = []
    for part in args.split():
        try:
            numbers.append(int(float(part)))
        except ValueError:
            continue
    if len(numbers) >= 2:
        lo, hi = sorted(numbers[:2])
    else:
        lo, hi = 0, numbers[0] if numbers else 100
    return f"**Random ({lo}-{hi}):** **{rng.randint(lo, hi)}**"


@command("/upper", "Convert text to UPPERCASE", "text")
def _upper(args, rng):
    return f"**UPPERCASE:**\n`{args.upper()}`" if args else _usage("/upper")


@command("/lower", "Convert text to lowercase", "text")
def _lower(args, rng):
    return f"**lowercase:**\n`{args.lower()}`" if args else _usage("/lower")


def slugify(text: str) -> str:
    text = unicodedata.normalize("NFD", text.lower())
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = re.sub(r"[^a-z0-9\s-]", "", text).strip()
    return re.sub(r"\s+", "-", text)


@command("/slug", "Convert to URL-friendly slug", "text")
def _slug(args, rng):
    return f"**Slug:**\n`{slugify(args)}`" if args else _usage("/slug")


@command("/wordcount", "Count words and characters", "text")
def _wordcount(args, rng):
    if not args:
        return _usage("/wordcount")
    return f"**Word count:** **{len(args.split())}** words, **{len(args)}** characters"


@command("/base64", "Encode text to base64", "text")
def _base64(args, rng):
    if not args:
        return _usage("/base64")
    return f"**Base64 encoded:**\n`{base64.b64encode(args.encode('utf-8')).decode('ascii')}`"


@command("/decode", "Decode a base64 string", "base64")
def _decode(args, rng):
    if not args:
        return _usage("/decode")
    try:
        decoded = base64.b64decode(args.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return "Not valid base64."
    return f"**Decoded:**\n`{decoded}`"


@command("/reverse", "Reverse a string", "text")
def _reverse(args, rng):
    return f"**Reversed:**\n`{args[::-1]}`" if args else _usage("/reverse")


@command("/repeat", "Repeat text N times, e.g. /repeat 3 ha", "N text")
def _repeat(args, rng):
    count, _, text = args.partition(" ")
    if not text:
        return _usage("/repeat")
    try:
        n = int(count)
    except ValueError:
        n = 1
    n = max(1, min(n, 50))
    return f"**Repeated {n}x:**\n{' '.join([text] * n)}"


@command("/help", "List all slash commands")
def _help(args, rng):
    lines = [
        f"`{c.name}{' ' + c.arg_hint if c.arg_hint else ''}`: {c.description}"
        for c in COMMANDS.values() if c.name != "/help"
    ]
    return "**Slash commands** run instantly without calling the AI:\n\n" + "\n".join(lines)


def parse(raw: str) -> tuple[str, str] | None:
    text = raw.strip()
    if not text.startswith("/"):
        return None
    name, _, args = text.partition(" ")
    return name.lower(), args.strip()


def run_slash_command(raw: str, rng: random.Random | None = None) -> str | None:
    """Reply for a recognized slash command, ``None`` otherwise."""
    parsed = parse(raw)
    if parsed is None:
        return None
    name, args = parsed
    cmd = COMMANDS.get(name)
    if cmd is None:
        return None
    return cmd.handler(args, rng or random.Random())
