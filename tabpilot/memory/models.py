from datetime import UTC, datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        dt = datetime.fromisoformat(value)
        return dt if dt.tzinfo else dt.replace(tzinfo=UTC)
    raise ValueError(f"Cannot parse datetime from {type(value)}")


def _parse_sequence(value: Any) -> list[str]:
    if isinstance(value, str):
        return [line.strip() for line in value.splitlines() if line.strip()]
    return [str(step) for step in value]


class MemoryDraft(BaseModel):
    """A memory record as written by a model or a tool, before it is stored."""

    domain: str
    task_description: str = Field(validation_alias=AliasChoices("task_description", "taskDescription"))
    tool_sequence: list[str] = Field(validation_alias=AliasChoices("tool_sequence", "toolSequence"))

    @field_validator("tool_sequence", mode="before")
    @classmethod
    def _coerce_sequence(cls, v: Any) -> list[str]:
        return _parse_sequence(v)

    @field_validator("domain", "task_description")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class MemoryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    domain: str
    task_description: str
    tool_sequence: list[str]
    created_at: datetime

    @field_validator("created_at", mode="before")
    @classmethod
    def _validate_created_at(cls, v: Any) -> datetime:
        return _parse_datetime(v)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "domain": self.domain,
            "task_description": self.task_description,
            "tool_sequence": self.tool_sequence,
            "created_at": self.created_at.isoformat(),
        }
