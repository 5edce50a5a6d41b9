from enum import Enum


class Capability(Enum):
    """A feature a provider may or may not support.

    The capability set of a provider gates which request fields are
    legal. ``ModelProvider.validate`` checks a request against it before
    any network call is made.
    """

    CHAT = "chat"
    STREAMING = "streaming"
    TOOL_CALLING = "tool_calling"
    VISION = "vision"


ALL_CAPABILITIES = frozenset(Capability)
TEXT_ONLY = frozenset({Capability.CHAT, Capability.STREAMING})
NO_VISION = frozenset(
    {Capability.CHAT, Capability.STREAMING, Capability.TOOL_CALLING}
)
