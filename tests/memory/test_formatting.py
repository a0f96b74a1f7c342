from datetime import UTC, datetime

from tabpilot.memory.formatting import format_memory, format_memory_context
from tabpilot.memory.models import MemoryRecord


def make_record(id: int, task: str, steps: list[str]) -> MemoryRecord:
    return MemoryRecord(
        id=id,
        domain="shop.com",
        task_description=task,
        tool_sequence=steps,
        created_at=datetime.now(UTC),
    )


class TestFormatMemory:
    def test_single(self):
        record = make_record(1, "Search", ["type | #q", "click | #go"])
        assert format_memory(record) == "Task: Search\nSteps: type | #q → click | #go"


class TestFormatMemoryContext:
    def test_empty(self):
        assert format_memory_context("shop.com", []) is None

    def test_lists_every_record(self):
        records = [make_record(1, "Search", ["a"]), make_record(2, "Checkout", ["b", "c"])]

        result = format_memory_context("shop.com", records)

        assert "2 memories for shop.com" in result
        assert "Task: Search" in result
        assert "Task: Checkout" in result
        assert result.startswith("Before we start")

    def test_record_serializes(self):
        data = make_record(3, "Login", ["x"]).to_dict()
        assert data["id"] == 3
        assert data["created_at"].endswith("+00:00")
