import pytest

from tabpilot.errors import ToolExecutionError, ToolNotFoundError
from tabpilot.llm.types import ToolSpec
from tabpilot.tools.core.base import Tool
from tabpilot.tools.core.registry import ToolRegistry


class CountTool(Tool):
    name = "count"
    description = "Count characters."

    async def execute(self, tool_input: str) -> int:
        return len(tool_input)


class TestToolRegistry:
    def test_register_and_get(self, registry: ToolRegistry):
        assert registry.get("echo").name == "echo"
        assert registry.get("missing") is None
        assert "echo" in registry
        assert len(registry) == 2

    def test_names_and_list(self, registry: ToolRegistry):
        assert registry.names() == ["echo", "fail"]
        assert registry.list() == [
            {"name": "echo", "description": "Return the input unchanged."},
            {"name": "fail", "description": "Always raises."},
        ]
        assert registry.specs()[0] == ToolSpec("echo", "Return the input unchanged.")

    def test_register_replaces(self, registry: ToolRegistry):
        class Other(Tool):
            name = "echo"
            description = "replacement"

            async def execute(self, tool_input: str) -> str:
                return ""

        registry.register(Other())
        assert registry.get("echo").description == "replacement"
        assert len(registry) == 2

    @pytest.mark.asyncio
    async def test_invoke(self, registry: ToolRegistry):
        assert await registry.invoke("echo", "hi") == "echo: hi"

    @pytest.mark.asyncio
    async def test_invoke_unknown(self, registry: ToolRegistry):
        with pytest.raises(ToolNotFoundError) as exc:
            await registry.invoke("teleport", "x")
        assert exc.value.name == "teleport"
        assert exc.value.available == ["echo", "fail"]

    @pytest.mark.asyncio
    async def test_tool_errors_wrapped(self, registry: ToolRegistry):
        with pytest.raises(ToolExecutionError) as exc:
            await registry.invoke("fail", "x")
        assert exc.value.tool_name == "fail"
        assert str(exc.value) == "RuntimeError: boom"
        assert isinstance(exc.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_non_string_result_coerced(self):
        registry = ToolRegistry([CountTool()])
        assert await registry.invoke("count", "abcd") == "4"
