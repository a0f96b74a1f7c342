from tabpilot.constants import MAX_CONTEXT_TOKENS, MIN_RETAINED_PAIRS
from tabpilot.llm.utils import approx_tokens, content_length


def estimate_tokens(message: dict) -> int:
    return approx_tokens(content_length(message.get("content", "")))


def count_tokens(messages: list[dict]) -> int:
    return sum(estimate_tokens(m) for m in messages)


def _pair_ends(messages: list[dict]) -> list[int]:
    """Index just past each user/assistant pair, oldest first."""
    return [
        i + 1
        for i in range(1, len(messages))
        if messages[i]["role"] == "assistant" and messages[i - 1]["role"] == "user"
    ]


def trim_history(
    messages: list[dict],
    budget: int = MAX_CONTEXT_TOKENS,
    min_pairs: int = MIN_RETAINED_PAIRS,
) -> list[dict]:
    """Drop the oldest user/assistant pairs until the history fits the budget.

    Args:
        messages: Conversation in chronological order; not modified.
        budget: Maximum estimated tokens (characters / 4).
        min_pairs: Complete pairs that are always kept, newest first. The most
            recent pair and anything after it are never dropped.

    Returns:
        A new list. Unpaired messages older than a dropped pair go with it.
    """
    if min_pairs < 1:
        raise ValueError(f"min_pairs must be at least 1, got {min_pairs}")

    trimmed = list(messages)
    while count_tokens(trimmed) > budget:
        ends = _pair_ends(trimmed)
        if len(ends) <= min_pairs:
            break
        trimmed = trimmed[ends[0] :]
    return trimmed
