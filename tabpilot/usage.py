import asyncio
from contextlib import suppress
from dataclasses import astuple, dataclass, replace

from tabpilot.logging import get_logger

_logger = get_logger(__name__)


@dataclass(frozen=True)
class Pricing:
    """USD per million tokens."""

    price_in: float = 0
    price_out: float = 0
    price_cache_read: float = 0
    price_cache_write: float = 0


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def with_cost(self, pricing: Pricing) -> "Usage":
        tokens = astuple(self)[:4]
        return replace(self, cost=sum(n * p for n, p in zip(tokens, astuple(pricing))) / 1_000_000)

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(*(a + b for a, b in zip(astuple(self), astuple(other))))

    def __iadd__(self, other: "Usage") -> "Usage":
        (
            self.prompt_tokens,
            self.completion_tokens,
            self.cache_read_tokens,
            self.cache_write_tokens,
            self.cost,
        ) = astuple(self + other)
        return self

    def to_dict(self) -> dict:
        return {
            "prompt": self.prompt_tokens,
            "completion": self.completion_tokens,
            "total": self.total_tokens,
            "cache_read": self.cache_read_tokens,
            "cache_write": self.cache_write_tokens,
            "cost": self.cost,
        }


class UsageTracker:
    """Process-wide token and cost counter shared by concurrent sessions.

    Sessions only enqueue; a single owner task applies every update, so the
    totals are never read-modify-written from more than one place.
    """

    def __init__(self):
        self._queue: asyncio.Queue[tuple[str, Usage]] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._total = Usage()
        self._by_model: dict[str, Usage] = {}

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        await self.drain()
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    def record(self, model: str, usage: Usage) -> None:
        self._queue.put_nowait((model, usage))

    async def drain(self) -> None:
        if self._task is None:
            raise RuntimeError("UsageTracker is not running")
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            model, usage = await self._queue.get()
            try:
                self._total += usage
                self._by_model.setdefault(model, Usage())
                self._by_model[model] += usage
                _logger.debug(
                    "Usage recorded (model=%s, prompt=%d, completion=%d)",
                    model,
                    usage.prompt_tokens,
                    usage.completion_tokens,
                )
            finally:
                self._queue.task_done()

    @property
    def total(self) -> Usage:
        return Usage() + self._total

    @property
    def by_model(self) -> dict[str, Usage]:
        return {model: Usage() + usage for model, usage in self._by_model.items()}
