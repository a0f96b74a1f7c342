"""Core tool infrastructure - base classes and registry."""

from tabpilot.tools.core.base import Tool, ToolResult
from tabpilot.tools.core.registry import ToolRegistry

__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
]
