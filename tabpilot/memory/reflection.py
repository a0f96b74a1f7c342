import json
import re
from typing import Any

from pydantic import TypeAdapter, ValidationError

from tabpilot.constants import REFLECTION_MAX_CORRECTIONS
from tabpilot.core.prompts import CORRECTION_PROMPT, REFLECTION_PROMPT, REFLECTION_SYSTEM_PROMPT
from tabpilot.errors import ParseError
from tabpilot.llm.base import ProviderAdapter
from tabpilot.llm.types import TextEvent, UsageEvent
from tabpilot.logging import get_logger
from tabpilot.memory.domain import normalize_domain
from tabpilot.memory.models import MemoryDraft, MemoryRecord
from tabpilot.memory.store import MemoryStore
from tabpilot.usage import UsageTracker

_logger = get_logger(__name__)

_FENCED = re.compile(r"```(?:json)?[ \t]*\n([\s\S]*?)\n?```")
_DRAFTS = TypeAdapter(list[MemoryDraft])


def _decode_all(text: str) -> list[Any]:
    decoder = json.JSONDecoder()
    found: list[Any] = []
    idx = 0
    while True:
        starts = [i for i in (text.find("{", idx), text.find("[", idx)) if i != -1]
        if not starts:
            return found
        start = min(starts)
        try:
            value, idx = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            idx = start + 1
            continue
        found.append(value)


def parse_memories(output: str, domain: str) -> list[MemoryDraft]:
    """Pull memory drafts out of free-form model output.

    Accepts a fenced block, a bare array, a single object, or several objects
    separated by prose. Records without a domain inherit ``domain``.
    """
    text = m.group(1) if (m := _FENCED.search(output)) else output
    text = text.strip()

    try:
        values = [json.loads(text)]
    except json.JSONDecodeError as e:
        values = _decode_all(text)
        if not values:
            raise ParseError(f"No JSON found in reflection output: {e}") from e

    items: list[Any] = []
    for value in values:
        items.extend(value if isinstance(value, list) else [value])
    if not items:
        raise ParseError("Reflection output contained no memory records")

    for item in items:
        if isinstance(item, dict):
            item.setdefault("domain", domain)

    try:
        return _DRAFTS.validate_python(items)
    except ValidationError as e:
        raise ParseError(f"Invalid memory record: {e.errors(include_url=False)}") from e


class Reflector:
    """Turns a finished conversation into stored memory records for a domain."""

    def __init__(self, provider: ProviderAdapter, store: MemoryStore, usage: UsageTracker | None = None):
        self.provider = provider
        self.store = store
        self.usage = usage

    async def reflect(self, messages: list[dict], domain: str) -> list[MemoryRecord]:
        normalized = normalize_domain(domain)
        if not normalized:
            raise ValueError(f"Invalid domain: {domain!r}")

        conversation = [*messages, {"role": "user", "content": REFLECTION_PROMPT.format(domain=normalized)}]
        output = await self._ask(conversation)

        corrections = 0
        while True:
            try:
                drafts = parse_memories(output, normalized)
                break
            except ParseError as e:
                if corrections >= REFLECTION_MAX_CORRECTIONS:
                    raise
                corrections += 1
                _logger.warning("Reflection output malformed, asking for a correction: %s", e)
                conversation = [
                    *conversation,
                    {"role": "assistant", "content": output},
                    {"role": "user", "content": CORRECTION_PROMPT.format(error=e, output=output, domain=normalized)},
                ]
                output = await self._ask(conversation)

        records = []
        for draft in drafts:
            memory_id = await self.store.store(draft)
            if record := await self.store.get(memory_id):
                records.append(record)
        _logger.info("Reflection stored %d memories for %s", len(records), normalized)
        return records

    async def _ask(self, messages: list[dict]) -> str:
        events = await self.provider.complete(REFLECTION_SYSTEM_PROMPT, messages)
        text = []
        for event in events:
            match event:
                case TextEvent(text=chunk):
                    text.append(chunk)
                case UsageEvent(usage=usage) if self.usage is not None:
                    self.usage.record(self.provider.model.id, usage.with_cost(self.provider.model.pricing))
        return "".join(text)
