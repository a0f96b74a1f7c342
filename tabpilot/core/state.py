from collections.abc import Awaitable, Callable
from enum import Enum


class SessionStatus(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_DETECTED = "tool_detected"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING_TOOL = "executing_tool"
    RECORDING = "recording"
    DONE = "done"
    CANCELLED = "cancelled"
    FALLEN_BACK = "fallen_back"
    FATAL = "fatal"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SessionStatus.DONE, SessionStatus.CANCELLED, SessionStatus.FATAL})

# Callback type for state changes
StateCallback = Callable[[SessionStatus], Awaitable[None]]
