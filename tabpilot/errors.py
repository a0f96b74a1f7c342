class TabPilotError(Exception):
    pass


class ProviderError(TabPilotError):
    """Transport, auth, rate-limit or protocol failure inside a vendor adapter."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class ParseError(TabPilotError):
    pass


class ToolNotFoundError(TabPilotError):
    def __init__(self, name: str, available: list[str]) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name
        self.available = available


class ToolExecutionError(TabPilotError):
    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class CancellationError(TabPilotError):
    pass


class BudgetExceededError(TabPilotError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Exceeded maximum of {limit} steps")
        self.limit = limit
