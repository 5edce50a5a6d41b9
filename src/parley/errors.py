"""Error taxonomy shared by providers, the coordinator and the store."""

from enum import Enum


class ErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    PROTOCOL = "protocol"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"


class ParleyError(Exception):
    """Base class for every error raised by parley."""


class ConfigurationError(ParleyError):
    """A request is illegal for the selected provider or settings.

    Raised before any network call is made.
    """


class ProviderError(ParleyError):
    """A provider failed to produce a response.

    Args:
        message: Human readable description.
        kind: How the coordinator should treat the failure.
        status_code: HTTP status when the failure came from a response.
    """

    kind: ErrorKind = ErrorKind.PROTOCOL

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(ProviderError):
    kind = ErrorKind.AUTH


class RateLimitError(ProviderError):
    kind = ErrorKind.RATE_LIMIT


class TransientNetworkError(ProviderError):
    kind = ErrorKind.TRANSIENT


class ProtocolError(ProviderError):
    kind = ErrorKind.PROTOCOL


def error_for_status(status_code: int, message: str) -> ProviderError:
    """Map an HTTP status code onto the provider error taxonomy."""
    if status_code in (401, 403):
        return AuthError(message, status_code=status_code)
    if status_code == 429:
        return RateLimitError(message, status_code=status_code)
    if status_code >= 500:
        return TransientNetworkError(message, status_code=status_code)
    return ProtocolError(message, status_code=status_code)


class ToolExecutionError(ParleyError):
    """A tool handler failed. Never escapes the tool engine."""


class ToolLoopExceededError(ParleyError):
    """The model kept requesting tools past the round cap."""

    kind = ErrorKind.TOOL_LOOP_EXCEEDED


class SessionActiveError(ParleyError):
    """A conversation already has a streaming session in flight."""


class MessageLockedError(ParleyError):
    """A message is being written by an active session."""


class ConversationNotFoundError(ParleyError, KeyError):
    pass


class PersistenceError(ParleyError):
    pass
