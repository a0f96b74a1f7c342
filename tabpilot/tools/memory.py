import json

from pydantic import ValidationError

from tabpilot.constants import MEMORY_LOOKUP_LIMIT
from tabpilot.logging import get_logger
from tabpilot.memory.domain import normalize_domain
from tabpilot.memory.models import MemoryDraft
from tabpilot.memory.store import MemoryStore
from tabpilot.tools.core.base import Tool

_logger = get_logger(__name__)

LOOKUP_DESCRIPTION = """Look up stored memories for a website domain.

Call this FIRST when starting a task on a website, with the current domain (e.g. "www.google.com") or URL as input. Returns the tool sequences that worked before, newest first."""

SAVE_DESCRIPTION = """Save how a task was accomplished on a website so it can be replayed later.

Input is a JSON object:
{"domain": "example.com", "task_description": "short description", "tool_sequence": ["tool1 | input1", "tool2 | input2"]}"""


class LookupMemoriesTool(Tool):
    name = "lookup_memories"
    description = LOOKUP_DESCRIPTION

    def __init__(self, store: MemoryStore, limit: int = MEMORY_LOOKUP_LIMIT):
        self.store = store
        self.limit = limit

    async def execute(self, tool_input: str) -> str:
        domain = normalize_domain(tool_input)
        if not domain:
            return "Error: Please provide a valid domain to lookup memories for."

        records = await self.store.query_by_domain(domain)
        if not records:
            return f"No memories found for domain: {domain}"

        payload = [
            {
                "domain": r.domain,
                "task_description": r.task_description,
                "tool_sequence": r.tool_sequence,
                "created_at": r.created_at.isoformat(),
            }
            for r in records[: self.limit]
        ]
        return json.dumps(payload, indent=2, ensure_ascii=False)


class SaveMemoryTool(Tool):
    name = "save_memory"
    description = SAVE_DESCRIPTION

    def __init__(self, store: MemoryStore):
        self.store = store

    async def execute(self, tool_input: str) -> str:
        try:
            draft = MemoryDraft.model_validate_json(tool_input)
        except ValidationError as e:
            _logger.warning("Rejected memory input: %s", e.errors(include_url=False))
            return "Error: Missing required fields. Please provide domain, task_description, and tool_sequence."

        if not normalize_domain(draft.domain):
            return "Error: Invalid domain provided."

        memory_id = await self.store.store(draft)
        return f"Memory saved successfully with ID: {memory_id}"
