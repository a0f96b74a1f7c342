from tabpilot.memory.domain import normalize_domain
from tabpilot.memory.models import MemoryDraft, MemoryRecord
from tabpilot.memory.store import MemoryStore

__all__ = [
    "MemoryDraft",
    "MemoryRecord",
    "MemoryStore",
    "normalize_domain",
]
