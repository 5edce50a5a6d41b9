from parley.coordinator import SessionResult, SessionStatus, StreamCoordinator
from parley.instrumentation import instrument, uninstrument
from parley.store import ConversationStore

__all__ = [
    "ConversationStore",
    "SessionResult",
    "SessionStatus",
    "StreamCoordinator",
    "instrument",
    "uninstrument",
]
