import asyncio
from collections.abc import Awaitable
from contextlib import suppress

from tabpilot.constants import CANCEL_POLL_INTERVAL
from tabpilot.errors import CancellationError


class CancellationToken:
    """Cooperative cancellation flag handed to every suspension point of a session."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError("Execution cancelled by user")

    async def guard[T](self, awaitable: Awaitable[T], poll_interval: float = CANCEL_POLL_INTERVAL) -> T:
        """Await a call that cannot be interrupted, polling the token while it runs.

        The pending call is cancelled and CancellationError raised as soon as a
        poll observes the flag.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=poll_interval)
                if done:
                    return task.result()
                if self.cancelled:
                    raise CancellationError("Execution cancelled by user")
        finally:
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
