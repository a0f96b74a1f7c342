import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol
from uuid import uuid4

from tabpilot.logging import get_logger

_logger = get_logger(__name__)


class ApprovalGate(Protocol):
    async def request_approval(self, tool_name: str, tool_input: str, reason: str) -> bool: ...


@dataclass
class ApprovalRequest:
    id: str
    tool_name: str
    input: str
    reason: str
    resolved: bool = False
    approved: bool = False


class ApprovalQueue:
    """In-process approval gate.

    Each request is parked under a generated id until a human answers it
    through ``resolve``. There is deliberately no timeout.
    """

    def __init__(self, notify: Callable[[ApprovalRequest], Awaitable[None]] | None = None):
        self._notify = notify
        self._requests: dict[str, ApprovalRequest] = {}
        self._waiters: dict[str, asyncio.Future[bool]] = {}

    async def request_approval(self, tool_name: str, tool_input: str, reason: str) -> bool:
        request = ApprovalRequest(id=f"approval_{uuid4().hex}", tool_name=tool_name, input=tool_input, reason=reason)
        waiter: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._requests[request.id] = request
        self._waiters[request.id] = waiter
        _logger.info("Approval requested (id=%s, tool=%s)", request.id, tool_name)

        try:
            if self._notify:
                await self._notify(request)
            return await waiter
        finally:
            self._waiters.pop(request.id, None)
            self._requests.pop(request.id, None)

    def resolve(self, request_id: str, approved: bool) -> bool:
        request = self._requests.get(request_id)
        waiter = self._waiters.get(request_id)
        if request is None or waiter is None or request.resolved or waiter.done():
            _logger.warning("Ignoring approval for unknown or resolved request %s", request_id)
            return False

        request.resolved = True
        request.approved = approved
        waiter.set_result(approved)
        _logger.info("Approval resolved (id=%s, approved=%s)", request_id, approved)
        return True

    def get(self, request_id: str) -> ApprovalRequest | None:
        return self._requests.get(request_id)

    def pending(self) -> list[ApprovalRequest]:
        return [r for r in self._requests.values() if not r.resolved]

    def deny_all(self) -> int:
        denied = 0
        for request in self.pending():
            denied += self.resolve(request.id, approved=False)
        return denied


class AutoApprove:
    async def request_approval(self, tool_name: str, tool_input: str, reason: str) -> bool:
        _logger.debug("Auto-approving %s", tool_name)
        return True
