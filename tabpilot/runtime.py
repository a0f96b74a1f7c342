from tabpilot.config import Config, get_config
from tabpilot.core.approval import ApprovalGate, ApprovalQueue
from tabpilot.core.session import ExecutionSession
from tabpilot.llm.router import ProviderRouter
from tabpilot.logging import configure_logging, get_logger
from tabpilot.memory.reflection import Reflector
from tabpilot.memory.store import MemoryStore
from tabpilot.tools.core.base import Tool
from tabpilot.tools.core.registry import ToolRegistry
from tabpilot.tools.memory import LookupMemoriesTool, SaveMemoryTool
from tabpilot.usage import UsageTracker

_logger = get_logger(__name__)


class Runtime:
    """Process-wide wiring: one router, one usage tracker, one memory store.

    Hosts register their page tools, then create a session per prompt stream.
    """

    def __init__(self, config: Config | None = None, tools: list[Tool] | None = None):
        self.config = config or get_config()
        self.router = ProviderRouter(self.config)
        self.usage = UsageTracker()
        self.registry = ToolRegistry(tools)
        self.memory: MemoryStore | None = None
        self._connected = False

    async def connect(self) -> None:
        if self._connected:
            return

        configure_logging(self.config.log_level, json_output=self.config.log_json)
        self.usage.start()

        if self.config.memory:
            self.memory = MemoryStore(self.config.memory_db_path)
            await self.memory.connect()
            self.registry.register(LookupMemoriesTool(self.memory))
            self.registry.register(SaveMemoryTool(self.memory))

        self._connected = True
        _logger.info("Runtime connected (model=%s, memory=%s)", self.config.model, self.memory is not None)

    def create_session(
        self,
        model: str | None = None,
        approvals: ApprovalGate | None = None,
        *,
        streaming: bool | None = None,
    ) -> ExecutionSession:
        return ExecutionSession(
            self.router.get(model or self.config.model),
            self.registry,
            approvals or ApprovalQueue(),
            memory=self.memory,
            usage=self.usage,
            max_steps=self.config.max_steps,
            context_budget=self.config.context_budget,
            streaming=self.config.streaming if streaming is None else streaming,
            cancel_poll_interval=self.config.cancel_poll_interval,
        )

    def reflector(self, model: str | None = None) -> Reflector:
        if self.memory is None:
            raise RuntimeError("Memory is disabled")
        return Reflector(self.router.get(model or self.config.model), self.memory, usage=self.usage)

    async def close(self) -> None:
        if not self._connected:
            return
        await self.usage.stop()
        await self.router.close()
        if self.memory is not None:
            await self.memory.close()
            self.memory = None
        self._connected = False
