from tabpilot.context.trim import count_tokens, estimate_tokens, trim_history

__all__ = [
    "count_tokens",
    "estimate_tokens",
    "trim_history",
]
