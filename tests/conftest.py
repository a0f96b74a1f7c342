from collections.abc import AsyncGenerator, AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from tabpilot.errors import ProviderError
from tabpilot.llm.base import ProviderAdapter
from tabpilot.llm.models import Model, Provider
from tabpilot.llm.types import StreamEvent, TextEvent, ToolSpec, UsageEvent
from tabpilot.memory.store import MemoryStore
from tabpilot.tools.core.base import Tool
from tabpilot.tools.core.registry import ToolRegistry
from tabpilot.usage import Usage

STUB_MODEL = Model(
    "stub-model",
    provider=Provider.CUSTOM,
    max_context_tokens=32_000,
    price_in=1,
    price_out=2,
    base_url="http://stub.invalid",
)

STUB_USAGE = Usage(prompt_tokens=10, completion_tokens=5)


def tool_call(name: str, tool_input: str = "", requires_approval: bool = False) -> str:
    flag = "true" if requires_approval else "false"
    return f"<tool>{name}</tool>\n<input>{tool_input}</input>\n<requires_approval>{flag}</requires_approval>"


class StubProvider(ProviderAdapter):
    """Replays scripted turns. The last turn repeats once the script runs out."""

    name = "stub"

    def __init__(
        self,
        turns: list[str],
        *,
        chunk_size: int = 3,
        stream_error: bool = False,
        complete_error: bool = False,
        report_usage: bool = True,
    ):
        super().__init__(STUB_MODEL)
        self.turns = list(turns)
        self.chunk_size = chunk_size
        self.stream_error = stream_error
        self.complete_error = complete_error
        self.report_usage = report_usage
        self.stream_calls = 0
        self.complete_calls = 0
        self.seen: list[list[dict]] = []
        self.closed = False

    def _next_turn(self, messages: list[dict]) -> str:
        self.seen.append([dict(m) for m in messages])
        return self.turns.pop(0) if len(self.turns) > 1 else self.turns[0]

    async def _stream(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[ToolSpec] | None,
    ) -> AsyncIterator[StreamEvent]:
        self.stream_calls += 1
        if self.stream_error:
            raise ProviderError("stream dropped", provider=self.name)
        text = self._next_turn(messages)
        for i in range(0, len(text), self.chunk_size):
            yield TextEvent(text[i : i + self.chunk_size])
        if self.report_usage:
            yield UsageEvent(STUB_USAGE)

    async def _complete(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[ToolSpec] | None,
    ) -> list[StreamEvent]:
        self.complete_calls += 1
        if self.complete_error:
            raise ProviderError("complete failed", provider=self.name)
        events: list[StreamEvent] = [TextEvent(self._next_turn(messages))]
        if self.report_usage:
            events.append(UsageEvent(STUB_USAGE))
        return events

    async def close(self) -> None:
        self.closed = True


class EchoTool(Tool):
    name = "echo"
    description = "Return the input unchanged."

    def __init__(self):
        self.calls: list[str] = []

    async def execute(self, tool_input: str) -> str:
        self.calls.append(tool_input)
        return f"echo: {tool_input}"


class FailingTool(Tool):
    name = "fail"
    description = "Always raises."

    async def execute(self, tool_input: str) -> str:
        raise RuntimeError("boom")


@pytest.fixture
def echo() -> EchoTool:
    return EchoTool()


@pytest.fixture
def registry(echo: EchoTool) -> ToolRegistry:
    return ToolRegistry([echo, FailingTool()])


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncGenerator[MemoryStore]:
    store = MemoryStore(tmp_path / "memory.db")
    await store.connect()
    yield store
    await store.close()
