from dataclasses import dataclass, field
from typing import Literal

from tabpilot.usage import Usage


@dataclass(frozen=True)
class TextEvent:
    text: str
    kind: Literal["text"] = field(default="text", init=False)


@dataclass(frozen=True)
class ReasoningEvent:
    text: str
    kind: Literal["reasoning"] = field(default="reasoning", init=False)


@dataclass(frozen=True)
class UsageEvent:
    usage: Usage  # cumulative for the current call
    kind: Literal["usage"] = field(default="usage", init=False)


type StreamEvent = TextEvent | ReasoningEvent | UsageEvent


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
