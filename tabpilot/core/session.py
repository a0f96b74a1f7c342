from collections.abc import Awaitable, Callable
from contextlib import aclosing
from typing import Any, Protocol
from uuid import uuid4

from tabpilot.constants import CANCEL_POLL_INTERVAL, MAX_CONTEXT_TOKENS, MAX_STEPS, TOOL_INPUT_PREVIEW_LIMIT
from tabpilot.context.trim import trim_history
from tabpilot.core.approval import ApprovalGate
from tabpilot.core.cancellation import CancellationToken
from tabpilot.core.events import SessionCallbacks, SessionOutcome
from tabpilot.core.parser import ToolCallParser, ToolInvocation, diagnose_incomplete
from tabpilot.core.prompts import (
    CANCELLED_MESSAGE,
    DENIED_RESULT,
    STEP_LIMIT_MESSAGE,
    TOOL_RESULT_TEMPLATE,
    UNKNOWN_TOOL_TEMPLATE,
    build_system_prompt,
)
from tabpilot.core.state import SessionStatus
from tabpilot.errors import (
    BudgetExceededError,
    CancellationError,
    ProviderError,
    ToolExecutionError,
    ToolNotFoundError,
)
from tabpilot.llm.base import ProviderAdapter
from tabpilot.llm.types import ReasoningEvent, StreamEvent, TextEvent, UsageEvent
from tabpilot.llm.utils import estimate_usage
from tabpilot.logging import get_logger
from tabpilot.memory.domain import normalize_domain
from tabpilot.memory.formatting import format_memory_context
from tabpilot.tools.core.base import ToolResult
from tabpilot.tools.core.registry import ToolRegistry
from tabpilot.usage import Usage, UsageTracker

_logger = get_logger(__name__)


class MemoryBackend(Protocol):
    async def query_by_domain(self, domain: str) -> list: ...


async def _emit(callback: Callable[..., Awaitable[None]] | None, *args: Any) -> None:
    if callback is not None:
        await callback(*args)


class ExecutionSession:
    """Runs one prompt at a time through the model/tool loop.

    Every collaborator is injected. The conversation survives across runs, so
    a follow-up prompt sees the earlier turns; step count and cancellation
    are reset for each run.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        registry: ToolRegistry,
        approvals: ApprovalGate,
        *,
        memory: MemoryBackend | None = None,
        usage: UsageTracker | None = None,
        system_prompt: str | None = None,
        max_steps: int = MAX_STEPS,
        context_budget: int = MAX_CONTEXT_TOKENS,
        streaming: bool = True,
        cancel_poll_interval: float = CANCEL_POLL_INTERVAL,
    ):
        self.id = uuid4().hex[:8]
        self.provider = provider
        self.registry = registry
        self.approvals = approvals
        self.memory = memory
        self.usage_tracker = usage
        self.system_prompt = system_prompt or build_system_prompt(registry.specs())
        self.max_steps = max_steps
        self.context_budget = context_budget
        self.streaming = streaming
        self.cancel_poll_interval = cancel_poll_interval

        self.token = CancellationToken()
        self.messages: list[dict] = []
        self.transitions: list[SessionStatus] = []
        self.step_count = 0
        self.fallback_count = 0
        self.usage = Usage()

        self._status = SessionStatus.IDLE
        self._callbacks = SessionCallbacks()
        self._running = False

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def cancel(self) -> None:
        if not self.token.cancelled:
            _logger.info("Cancellation requested (session=%s, status=%s)", self.id, self._status.value)
            self.token.cancel()

    async def _set_status(self, status: SessionStatus) -> None:
        if status == self._status:
            return
        _logger.debug("Session %s: %s -> %s", self.id, self._status.value, status.value)
        self._status = status
        self.transitions.append(status)
        await _emit(self._callbacks.on_state, status)

    # --- Run ---

    async def run(
        self,
        prompt: str,
        callbacks: SessionCallbacks | None = None,
        *,
        domain: str | None = None,
    ) -> SessionOutcome:
        if self._running:
            raise RuntimeError(f"Session {self.id} is already running")

        self._running = True
        self._callbacks = callbacks or SessionCallbacks()
        self.token = CancellationToken()
        self.step_count = 0
        self.fallback_count = 0
        self.transitions = []
        self._status = SessionStatus.IDLE

        try:
            initial = await self._init_messages(prompt, domain)
            outcome = await self._run_with_fallback(initial)
        except CancellationError:
            _logger.info("Session %s cancelled after %d steps", self.id, self.step_count)
            outcome = await self._finish(SessionStatus.CANCELLED, message=CANCELLED_MESSAGE)
        except BudgetExceededError as e:
            _logger.warning("Session %s stopped at step ceiling (%d)", self.id, e.limit)
            outcome = await self._finish(SessionStatus.DONE, message=STEP_LIMIT_MESSAGE.format(max_steps=e.limit))
        except ProviderError as e:
            _logger.error("Provider failed (session=%s, provider=%s): %s", self.id, e.provider, e)
            outcome = await self._finish_fatal(e)
        except Exception as e:
            _logger.exception("Session %s failed", self.id)
            outcome = await self._finish_fatal(e)
        finally:
            self._running = False

        await self._notify_complete(outcome)
        return outcome

    async def _run_with_fallback(self, initial: list[dict]) -> SessionOutcome:
        if not self.streaming:
            return await self._loop(initial, streaming=False)

        try:
            return await self._loop(initial, streaming=True)
        except ProviderError as e:
            _logger.warning("Streaming call failed, retrying without streaming (session=%s): %s", self.id, e)
            self.fallback_count += 1
            await self._set_status(SessionStatus.FALLEN_BACK)
            await _emit(self._callbacks.on_fallback, e)
            await self._set_status(SessionStatus.IDLE)

        return await self._loop(initial, streaming=False)

    async def _init_messages(self, prompt: str, domain: str | None) -> list[dict]:
        messages = list(self.messages)
        if domain and self.memory is not None:
            if context := await self._memory_context(domain):
                messages.append({"role": "user", "content": context})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def _memory_context(self, domain: str) -> str | None:
        try:
            records = await self.memory.query_by_domain(domain)
        except Exception:
            _logger.warning("Memory lookup failed for %s", domain, exc_info=True)
            return None
        _logger.info("Loaded %d memories for %s", len(records), domain)
        return format_memory_context(normalize_domain(domain), records)

    async def _loop(self, initial: list[dict], *, streaming: bool) -> SessionOutcome:
        self.messages = list(initial)
        while True:
            self.token.raise_if_cancelled()
            await self._set_status(SessionStatus.STREAMING)

            text, invocation = await (self._stream_turn() if streaming else self._complete_turn())

            if invocation is None:
                if correction := diagnose_incomplete(text):
                    _logger.warning("Incomplete tool call (session=%s, step=%d)", self.id, self.step_count)
                    await self._record(text, correction)
                    continue
                self.messages.append({"role": "assistant", "content": text})
                return await self._finish(SessionStatus.DONE)

            await self._set_status(SessionStatus.TOOL_DETECTED)
            try:
                result = await self._execute(invocation)
            except ToolNotFoundError as e:
                _logger.warning("Model called unknown tool %r (session=%s)", e.name, self.id)
                await self._record(text, UNKNOWN_TOOL_TEMPLATE.format(name=e.name, available=", ".join(e.available)))
                continue

            await self._record(text, TOOL_RESULT_TEMPLATE.format(result=result.text))

    # --- Model turns ---

    async def _stream_turn(self) -> tuple[str, ToolInvocation | None]:
        parser = ToolCallParser()
        call_usage: Usage | None = None
        stream = self.provider.stream(self.system_prompt, self.messages, self.registry.specs())
        try:
            async with aclosing(stream) as events:
                async for event in events:
                    self.token.raise_if_cancelled()
                    match event:
                        case TextEvent(text=chunk):
                            fed = parser.feed(chunk)
                            if fed.emit:
                                await _emit(self._callbacks.on_chunk, fed.emit)
                            if fed.match is not None:
                                # Pause at the first complete call; closing the stream drops the rest.
                                break
                        case ReasoningEvent(text=thought):
                            await _emit(self._callbacks.on_reasoning, thought)
                        case UsageEvent(usage=usage):
                            call_usage = usage
        finally:
            self._record_usage(call_usage or estimate_usage(self.system_prompt, self.messages, parser.turn_text))

        if parser.match is None and (rest := parser.finish()):
            await _emit(self._callbacks.on_chunk, rest)
        await _emit(self._callbacks.on_segment, parser.preceding)
        return parser.turn_text, parser.match

    async def _complete_turn(self) -> tuple[str, ToolInvocation | None]:
        events: list[StreamEvent] = await self.token.guard(
            self.provider.complete(self.system_prompt, self.messages, self.registry.specs()),
            self.cancel_poll_interval,
        )

        parser = ToolCallParser()
        call_usage: Usage | None = None
        for event in events:
            match event:
                case TextEvent(text=chunk):
                    parser.feed(chunk)
                case ReasoningEvent(text=thought):
                    await _emit(self._callbacks.on_reasoning, thought)
                case UsageEvent(usage=usage):
                    call_usage = usage
        self._record_usage(call_usage or estimate_usage(self.system_prompt, self.messages, parser.text))
        self.token.raise_if_cancelled()

        if parser.match is None:
            parser.finish()
        await _emit(self._callbacks.on_segment, parser.preceding)
        return parser.turn_text, parser.match

    def _record_usage(self, usage: Usage) -> None:
        priced = usage.with_cost(self.provider.model.pricing)
        self.usage += priced
        if self.usage_tracker is not None:
            self.usage_tracker.record(self.provider.model.id, priced)

    # --- Tools ---

    async def _execute(self, invocation: ToolInvocation) -> ToolResult:
        name, tool_input = invocation.name, invocation.raw_input
        if name not in self.registry:
            raise ToolNotFoundError(name, self.registry.names())

        await _emit(self._callbacks.on_tool_start, name, tool_input)

        if invocation.requires_approval:
            await self._set_status(SessionStatus.AWAITING_APPROVAL)
            reason = f"The assistant marked {name} as requiring approval."
            approved = await self.token.guard(
                self.approvals.request_approval(name, tool_input, reason),
                self.cancel_poll_interval,
            )
            if not approved:
                _logger.info("Tool %s denied by user (session=%s)", name, self.id)
                result = ToolResult(DENIED_RESULT)
                await _emit(self._callbacks.on_tool_end, result)
                return result

        self.token.raise_if_cancelled()
        await self._set_status(SessionStatus.EXECUTING_TOOL)
        _logger.info("Executing %s (session=%s, input=%.*s)", name, self.id, TOOL_INPUT_PREVIEW_LIMIT, tool_input)

        try:
            result = ToolResult(await self.registry.invoke(name, tool_input))
        except ToolExecutionError as e:
            _logger.warning("Tool %s failed (session=%s): %s", name, self.id, e)
            result = ToolResult(f"Error: {e}", is_error=True)

        # A call that finished after cancel() is discarded, not recorded.
        self.token.raise_if_cancelled()
        await _emit(self._callbacks.on_tool_end, result)
        return result

    async def _record(self, assistant_text: str, user_content: str) -> None:
        await self._set_status(SessionStatus.RECORDING)
        self.messages.append({"role": "assistant", "content": assistant_text})
        self.messages.append({"role": "user", "content": user_content})
        self.messages = trim_history(self.messages, self.context_budget)

        self.step_count += 1
        if self.step_count >= self.max_steps:
            raise BudgetExceededError(self.max_steps)

    # --- Completion ---

    async def _finish(self, status: SessionStatus, message: str | None = None, error: str | None = None) -> SessionOutcome:
        if message:
            await _emit(self._callbacks.on_segment, message)
        await self._set_status(status)
        return SessionOutcome(
            status=status,
            steps=self.step_count,
            fallbacks=self.fallback_count,
            usage=Usage() + self.usage,
            message=message,
            error=error,
        )

    async def _finish_fatal(self, exc: Exception) -> SessionOutcome:
        await self._set_status(SessionStatus.FATAL)
        return SessionOutcome(
            status=SessionStatus.FATAL,
            steps=self.step_count,
            fallbacks=self.fallback_count,
            usage=Usage() + self.usage,
            message=f"Error: {exc}",
            error=f"{type(exc).__name__}: {exc}",
        )

    async def _notify_complete(self, outcome: SessionOutcome) -> None:
        try:
            await _emit(self._callbacks.on_complete, outcome)
        except Exception:
            _logger.exception("on_complete callback failed (session=%s)", self.id)
