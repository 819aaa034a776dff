from enum import Enum
from typing import Dict, FrozenSet


class SessionState(Enum):
    """Lifecycle of one in-flight completion request."""
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[SessionState] = frozenset({
    SessionState.COMPLETED,
    SessionState.CANCELLED,
    SessionState.FAILED,
})

# Allowed forward transitions; terminal states have none
TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.PENDING: frozenset({
        SessionState.STREAMING,
        SessionState.CANCELLED,
        SessionState.FAILED,
    }),
    SessionState.STREAMING: frozenset({
        SessionState.COMPLETED,
        SessionState.CANCELLED,
        SessionState.FAILED,
    }),
    SessionState.COMPLETED: frozenset(),
    SessionState.CANCELLED: frozenset(),
    SessionState.FAILED: frozenset(),
}


class AssemblerState(Enum):
    """State of the fragment assembler for one request."""
    ASSEMBLING = "assembling"
    COMPLETED = "completed"
    FAILED = "failed"
