from tabpilot.errors import ToolExecutionError, ToolNotFoundError
from tabpilot.llm.types import ToolSpec
from tabpilot.logging import get_logger
from tabpilot.tools.core.base import Tool

_logger = get_logger(__name__)


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            _logger.warning("Replacing registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def specs(self) -> list[ToolSpec]:
        return [t.spec() for t in self._tools.values()]

    async def invoke(self, name: str, tool_input: str) -> str:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name, self.names())

        try:
            result = await tool.execute(tool_input)
        except Exception as e:
            raise ToolExecutionError(name, f"{type(e).__name__}: {e}") from e
        return result if isinstance(result, str) else str(result)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    # Kept last so the annotations above still see the builtin list.
    def list(self) -> list[dict]:
        return [{"name": s.name, "description": s.description} for s in self.specs()]
