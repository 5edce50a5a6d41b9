import random
import re

import pytest

from parley.slash import COMMANDS, parse, run_slash_command, slugify


@pytest.fixture
def rng():
    return random.Random(1234)


class TestParse:
    def test_command_and_args(self):
        assert parse("  /Roll 2d6  ") == ("/roll", "2d6")

    def test_plain_text(self):
        assert parse("hello /roll") is None


class TestRunSlashCommand:
    def test_not_a_command(self):
        assert run_slash_command("what is 2+2?") is None

    def test_unknown_command(self):
        assert run_slash_command("/summarize this") is None

    def test_uuid(self):
        reply = run_slash_command("/uuid")

        assert re.search(r"`[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[0-9a-f]{4}-[0-9a-f]{12}`", reply)

    @pytest.mark.parametrize("name", ["/date", "/time", "/datetime", "/timestamp"])
    def test_clock_commands(self, name):
        assert run_slash_command(name).startswith("**")

    def test_roll(self, rng):
        reply = run_slash_command("/roll 3d6", rng)
        match = re.match(r"\*\*3d6:\*\* (\d) \+ (\d) \+ (\d) = \*\*(\d+)\*\*", reply)

        assert match
        rolls = [int(match.group(i)) for i in (1, 2, 3)]
        assert all(1 <= r <= 6 for r in rolls)
        assert sum(rolls) == int(match.group(4))

    def test_roll_caps_dice(self, rng):
        assert run_slash_command("/roll 99d6", rng).startswith("**20d6:**")

    def test_roll_bad_spec_falls_back_to_d6(self, rng):
        assert "usage: /roll 2d6" in run_slash_command("/roll lots", rng)

    def test_random_range(self, rng):
        reply = run_slash_command("/random 10 5", rng)
        value = int(re.search(r"\*\*(\d+)\*\*$", reply).group(1))

        assert reply.startswith("**Random (5-10):**")
        assert 5 <= value <= 10

    def test_flip(self, rng):
        assert run_slash_command("/flip", rng) in ("**Coin flip:** **Heads**", "**Coin flip:** **Tails**")

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("/upper hi there", "**UPPERCASE:**\n`HI THERE`"),
            ("/lower HI", "**lowercase:**\n`hi`"),
            ("/reverse abc", "**Reversed:**\n`cba`"),
            ("/base64 hi", "**Base64 encoded:**\n`aGk=`"),
            ("/decode aGk=", "**Decoded:**\n`hi`"),
            ("/repeat 3 ha", "**Repeated 3x:**\nha ha ha"),
            ("/wordcount two words", "**Word count:** **2** words, **9** characters"),
        ],
    )
    def test_text_commands(self, raw, expected):
        assert run_slash_command(raw) == expected

    def test_missing_argument_shows_usage(self):
        assert run_slash_command("/upper") == "Usage: `/upper text`"

    def test_decode_invalid(self):
        assert run_slash_command("/decode %%%") == "Not valid base64."

    def test_help_lists_commands(self):
        reply = run_slash_command("/help")

        for name in COMMANDS:
            if name != "/help":
                assert name in reply


class TestSlugify:
    def test_accents_and_punctuation(self):
        assert slugify("Héllo, Wörld!  Again") == "hello-world-again"
