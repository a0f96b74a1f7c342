from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from tabpilot.core.state import SessionStatus, StateCallback
from tabpilot.errors import ProviderError
from tabpilot.tools.core.base import ToolResult
from tabpilot.usage import Usage


@dataclass(frozen=True)
class SessionOutcome:
    status: SessionStatus
    steps: int
    fallbacks: int
    usage: Usage
    message: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is SessionStatus.DONE


@dataclass
class SessionCallbacks:
    """Hooks a host uses to follow a run. Every hook is optional and async."""

    on_chunk: Callable[[str], Awaitable[None]] | None = None
    on_segment: Callable[[str], Awaitable[None]] | None = None
    on_reasoning: Callable[[str], Awaitable[None]] | None = None
    on_tool_start: Callable[[str, str], Awaitable[None]] | None = None
    on_tool_end: Callable[[ToolResult], Awaitable[None]] | None = None
    on_complete: Callable[[SessionOutcome], Awaitable[None]] | None = None
    on_state: StateCallback | None = None
    on_fallback: Callable[[ProviderError], Awaitable[None]] | None = None
