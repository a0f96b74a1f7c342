from tabpilot.core.prompts import MEMORY_CONTEXT_TEMPLATE
from tabpilot.memory.models import MemoryRecord


def format_memory(record: MemoryRecord) -> str:
    return f"Task: {record.task_description}\nSteps: {' → '.join(record.tool_sequence)}"


def format_memory_context(domain: str, records: list[MemoryRecord]) -> str | None:
    if not records:
        return None
    header = f"I found {len(records)} memories for {domain}. Here are patterns that worked before:"
    body = "\n\n".join(format_memory(r) for r in records)
    return MEMORY_CONTEXT_TEMPLATE.format(memories=f"{header}\n\n{body}")
