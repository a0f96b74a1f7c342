import asyncio

import pytest

from tabpilot.core.cancellation import CancellationToken
from tabpilot.errors import CancellationError


class TestCancellationToken:
    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel()
        assert token.cancelled
        with pytest.raises(CancellationError):
            token.raise_if_cancelled()

    def test_cancel_twice(self):
        token = CancellationToken()
        token.cancel()
        token.cancel()
        assert token.cancelled


class TestGuard:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def work():
            await asyncio.sleep(0.02)
            return 42

        assert await CancellationToken().guard(work(), poll_interval=0.005) == 42

    @pytest.mark.asyncio
    async def test_propagates_errors(self):
        async def work():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await CancellationToken().guard(work(), poll_interval=0.005)

    @pytest.mark.asyncio
    async def test_cancel_interrupts_pending_call(self):
        token = CancellationToken()
        started = asyncio.Event()
        interrupted = asyncio.Event()

        async def slow():
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                interrupted.set()
                raise

        async def cancel_soon():
            await started.wait()
            token.cancel()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(CancellationError):
            await asyncio.wait_for(token.guard(slow(), poll_interval=0.01), timeout=2)
        await canceller

        assert interrupted.is_set()

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        token = CancellationToken()
        token.cancel()
        waiter = asyncio.get_running_loop().create_future()

        with pytest.raises(CancellationError):
            await token.guard(waiter)
