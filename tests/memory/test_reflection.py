import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from tabpilot.errors import ParseError
from tabpilot.llm.types import TextEvent, UsageEvent
from tabpilot.memory.reflection import Reflector, parse_memories
from tabpilot.memory.store import MemoryStore
from tabpilot.usage import Usage, UsageTracker
from tests.conftest import STUB_MODEL

CONVERSATION = [
    {"role": "user", "content": "search for socks"},
    {"role": "assistant", "content": "<tool>type</tool><input>#q socks</input><requires_approval>false</requires_approval>"},
    {"role": "user", "content": "Tool result: typed"},
    {"role": "assistant", "content": "Found them."},
]

RECORD = {"domain": "shop.com", "task_description": "Search products", "tool_sequence": ["type | #q socks"]}


def provider_with(*outputs: str):
    responses = [[TextEvent(o), UsageEvent(Usage(prompt_tokens=3, completion_tokens=1))] for o in outputs]
    return SimpleNamespace(complete=AsyncMock(side_effect=responses), model=STUB_MODEL)


class TestParseMemories:
    def test_fenced_block(self):
        output = f"Here you go:\n```json\n{json.dumps(RECORD)}\n```"
        [draft] = parse_memories(output, "shop.com")
        assert draft.task_description == "Search products"

    def test_array(self):
        output = json.dumps([RECORD, {**RECORD, "task_description": "Checkout"}])
        assert [d.task_description for d in parse_memories(output, "shop.com")] == ["Search products", "Checkout"]

    def test_objects_in_prose(self):
        output = f"First: {json.dumps(RECORD)}\nSecond: {json.dumps({**RECORD, 'task_description': 'Login'})}"
        assert len(parse_memories(output, "shop.com")) == 2

    def test_domain_defaults(self):
        record = {"taskDescription": "Search", "toolSequence": ["a"]}
        [draft] = parse_memories(json.dumps(record), "shop.com")
        assert draft.domain == "shop.com"

    def test_no_json(self):
        with pytest.raises(ParseError):
            parse_memories("I could not find any patterns.", "shop.com")

    def test_invalid_record(self):
        with pytest.raises(ParseError):
            parse_memories('{"domain": "shop.com"}', "shop.com")


class TestReflector:
    @pytest.mark.asyncio
    async def test_stores_records(self, store: MemoryStore):
        provider = provider_with(json.dumps(RECORD))

        records = await Reflector(provider, store).reflect(CONVERSATION, "https://www.shop.com/")

        assert [r.task_description for r in records] == ["Search products"]
        assert await store.count() == 1
        sent = provider.complete.call_args.args[1]
        assert sent[:-1] == CONVERSATION
        assert "shop.com" in sent[-1]["content"]

    @pytest.mark.asyncio
    async def test_one_correction(self, store: MemoryStore):
        provider = provider_with('{"domain": "shop.com", "task_description": ', f"```json\n{json.dumps(RECORD)}\n```")

        records = await Reflector(provider, store).reflect(CONVERSATION, "shop.com")

        assert len(records) == 1
        assert provider.complete.await_count == 2
        correction = provider.complete.call_args.args[1][-1]["content"]
        assert "the JSON was invalid" in correction

    @pytest.mark.asyncio
    async def test_second_failure_raises(self, store: MemoryStore):
        provider = provider_with("nope", "still nope", json.dumps(RECORD))

        with pytest.raises(ParseError):
            await Reflector(provider, store).reflect(CONVERSATION, "shop.com")

        assert provider.complete.await_count == 2
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_invalid_domain(self, store: MemoryStore):
        with pytest.raises(ValueError):
            await Reflector(provider_with("[]"), store).reflect(CONVERSATION, "")

    @pytest.mark.asyncio
    async def test_usage_recorded(self, store: MemoryStore):
        tracker = UsageTracker()
        tracker.start()

        await Reflector(provider_with(json.dumps(RECORD)), store, usage=tracker).reflect(CONVERSATION, "shop.com")
        await tracker.drain()

        assert tracker.by_model[STUB_MODEL.id].prompt_tokens == 3
        await tracker.stop()
