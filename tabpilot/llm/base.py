from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import aclosing

from tabpilot.errors import ProviderError
from tabpilot.llm.models import Model
from tabpilot.llm.retry import is_retryable, status_code_of, with_retry
from tabpilot.llm.types import StreamEvent, TextEvent, ToolSpec, UsageEvent
from tabpilot.llm.utils import decode_escaped_tags, estimate_usage, split_escaped_tags

# Shape of every native function declaration; the arguments are rendered
# back into the textual grammar, so tools only ever see a string input.
TOOL_PARAMETERS = {
    "type": "object",
    "properties": {
        "input": {"type": "string", "description": "Input passed to the tool as plain text."},
        "requires_approval": {
            "type": "boolean",
            "description": "True when the action is sensitive and needs user approval.",
        },
    },
    "required": ["input", "requires_approval"],
}


class ProviderAdapter(ABC):
    name: str
    native_tools: bool = True
    transport_errors: tuple[type[BaseException], ...] = ()

    def __init__(self, model: Model):
        self.model = model

    @abstractmethod
    def _stream(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[ToolSpec] | None,
    ) -> AsyncIterator[StreamEvent]: ...

    @abstractmethod
    async def _complete(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[ToolSpec] | None,
    ) -> list[StreamEvent]: ...

    @abstractmethod
    async def close(self) -> None: ...

    async def stream(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[ToolSpec] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        tools = tools if self.native_tools else None
        output: list[str] = []
        pending = ""
        reported = False
        try:
            async with aclosing(self._stream(system_prompt, messages, tools)) as events:
                async for event in events:
                    match event:
                        case TextEvent(text=text):
                            # Some models emit tags as JSON escapes; an escape may straddle chunks.
                            text, pending = split_escaped_tags(pending + text)
                            if not text:
                                continue
                            output.append(text)
                            event = TextEvent(text)
                        case UsageEvent():
                            reported = True
                    yield event
        except self.transport_errors as e:
            raise self._provider_error(e) from e

        if pending:
            output.append(pending)
            yield TextEvent(pending)
        if not reported:
            yield UsageEvent(estimate_usage(system_prompt, messages, "".join(output)))

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[ToolSpec] | None = None,
    ) -> list[StreamEvent]:
        tools = tools if self.native_tools else None
        try:
            events = await with_retry(self._complete, system_prompt, messages, tools)
        except self.transport_errors as e:
            raise self._provider_error(e) from e

        events = [TextEvent(decode_escaped_tags(e.text)) if isinstance(e, TextEvent) else e for e in events]
        if not any(isinstance(e, UsageEvent) for e in events):
            output = "".join(e.text for e in events if isinstance(e, TextEvent))
            events.append(UsageEvent(estimate_usage(system_prompt, messages, output)))
        return events

    def _provider_error(self, exc: BaseException) -> ProviderError:
        return ProviderError(
            f"{self.name} ({self.model.id}): {exc}",
            provider=self.name,
            status_code=status_code_of(exc),
            retryable=is_retryable(exc),
        )
