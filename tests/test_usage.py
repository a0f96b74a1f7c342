import asyncio

import pytest

from tabpilot.usage import Pricing, Usage, UsageTracker


class TestUsage:
    def test_with_cost(self):
        usage = Usage(prompt_tokens=1_000_000, completion_tokens=500_000, cache_read_tokens=200_000)
        priced = usage.with_cost(Pricing(price_in=3, price_out=15, price_cache_read=0.3))

        assert priced.cost == pytest.approx(3 + 7.5 + 0.06)
        assert priced.prompt_tokens == usage.prompt_tokens
        assert usage.cost == 0

    def test_add(self):
        total = Usage(1, 2, 3, 4, 0.5) + Usage(10, 20, 30, 40, 1.0)
        assert total == Usage(11, 22, 33, 44, 1.5)
        assert total.total_tokens == 33

    def test_iadd(self):
        usage = Usage()
        usage += Usage(prompt_tokens=5, completion_tokens=1)
        usage += Usage(prompt_tokens=5)
        assert usage.prompt_tokens == 10
        assert usage.completion_tokens == 1

    def test_to_dict(self):
        assert Usage(3, 4).to_dict() == {
            "prompt": 3,
            "completion": 4,
            "total": 7,
            "cache_read": 0,
            "cache_write": 0,
            "cost": 0.0,
        }


class TestUsageTracker:
    @pytest.mark.asyncio
    async def test_accumulates_per_model(self):
        tracker = UsageTracker()
        tracker.start()
        tracker.record("a", Usage(prompt_tokens=10, cost=0.1))
        tracker.record("b", Usage(prompt_tokens=5))
        tracker.record("a", Usage(completion_tokens=3))
        await tracker.drain()

        assert tracker.total.prompt_tokens == 15
        assert tracker.by_model["a"] == Usage(prompt_tokens=10, completion_tokens=3, cost=0.1)
        assert tracker.by_model["b"].prompt_tokens == 5
        await tracker.stop()

    @pytest.mark.asyncio
    async def test_concurrent_sessions(self):
        tracker = UsageTracker()
        tracker.start()

        async def session(n: int):
            for _ in range(50):
                tracker.record(f"model-{n % 2}", Usage(prompt_tokens=1, completion_tokens=2))
                await asyncio.sleep(0)

        await asyncio.gather(*(session(n) for n in range(8)))
        await tracker.drain()

        assert tracker.total.prompt_tokens == 400
        assert tracker.total.completion_tokens == 800
        assert sum(u.prompt_tokens for u in tracker.by_model.values()) == 400
        await tracker.stop()

    @pytest.mark.asyncio
    async def test_snapshots_are_copies(self):
        tracker = UsageTracker()
        tracker.start()
        tracker.record("a", Usage(prompt_tokens=1))
        await tracker.drain()

        snapshot = tracker.total
        snapshot.prompt_tokens = 999
        assert tracker.total.prompt_tokens == 1
        await tracker.stop()

    @pytest.mark.asyncio
    async def test_stop_applies_queued_updates(self):
        tracker = UsageTracker()
        tracker.start()
        tracker.record("a", Usage(prompt_tokens=7))
        await tracker.stop()

        assert tracker.total.prompt_tokens == 7

    @pytest.mark.asyncio
    async def test_drain_requires_start(self):
        with pytest.raises(RuntimeError):
            await UsageTracker().drain()
