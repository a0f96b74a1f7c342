from abc import ABC, abstractmethod
from dataclasses import dataclass

from tabpilot.llm.types import ToolSpec


@dataclass(frozen=True)
class ToolResult:
    text: str
    is_error: bool = False


class Tool(ABC):
    """A page action the model can call by name with a single string input.

    Hosts subclass this for click, type, navigate and so on. ``execute`` may
    raise; the registry turns that into an error result for the model.
    """

    name: str
    description: str

    @abstractmethod
    async def execute(self, tool_input: str) -> str: ...

    def spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description)
