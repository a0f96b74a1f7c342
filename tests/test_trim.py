import pytest

from tabpilot.context import count_tokens, estimate_tokens, trim_history


def msg(role: str, tokens: int) -> dict:
    return {"role": role, "content": "x" * (tokens * 4)}


def pairs(n: int, tokens: int = 100) -> list[dict]:
    messages = []
    for i in range(n):
        messages.append({"role": "user", "content": f"q{i}".ljust(tokens * 4)})
        messages.append({"role": "assistant", "content": f"a{i}".ljust(tokens * 4)})
    return messages


class TestEstimate:
    def test_chars_over_four_rounded_up(self):
        assert estimate_tokens({"role": "user", "content": "abcde"}) == 2
        assert estimate_tokens({"role": "user", "content": ""}) == 0

    def test_block_content(self):
        blocks = [{"type": "text", "text": "hello"}]
        assert estimate_tokens({"role": "user", "content": blocks}) > 0

    def test_count(self):
        assert count_tokens(pairs(3)) == 600


class TestTrimHistory:
    def test_under_budget_unchanged(self):
        messages = pairs(2)
        result = trim_history(messages, budget=1000)
        assert result == messages
        assert result is not messages

    def test_drops_oldest_pairs(self):
        result = trim_history(pairs(5), budget=450)
        assert count_tokens(result) <= 450
        assert result[0]["content"].startswith("q3")
        assert result[-1]["content"].startswith("a4")

    def test_keeps_most_recent_pair_over_budget(self):
        result = trim_history(pairs(3, tokens=1000), budget=10)
        assert len(result) == 2
        assert result[0]["content"].startswith("q2")

    def test_min_pairs(self):
        result = trim_history(pairs(5), budget=10, min_pairs=3)
        assert len(result) == 6
        assert result[0]["content"].startswith("q2")

    def test_min_pairs_must_be_positive(self):
        with pytest.raises(ValueError):
            trim_history(pairs(2), min_pairs=0)

    def test_input_not_mutated(self):
        messages = pairs(4)
        snapshot = [dict(m) for m in messages]
        trim_history(messages, budget=100)
        assert messages == snapshot

    def test_idempotent(self):
        once = trim_history(pairs(6), budget=350)
        assert trim_history(once, budget=350) == once

    def test_leading_unpaired_messages_go_with_oldest_pair(self):
        messages = [
            msg("user", 50),  # injected context
            {"role": "user", "content": "task".ljust(400)},
            {"role": "assistant", "content": "step1".ljust(400)},
            {"role": "user", "content": "result1".ljust(400)},
            {"role": "assistant", "content": "step2".ljust(400)},
            {"role": "user", "content": "result2".ljust(400)},
        ]
        result = trim_history(messages, budget=300)
        assert [m["content"].strip() for m in result] == ["result1", "step2", "result2"]

    def test_trailing_unpaired_message_kept(self):
        messages = pairs(3) + [msg("user", 10)]
        result = trim_history(messages, budget=50)
        assert result[-1] == messages[-1]
        assert result[-2]["content"].startswith("a2")

    def test_recent_pair_always_survives(self):
        for budget in (1, 100, 250, 10_000):
            messages = pairs(4)
            result = trim_history(messages, budget=budget)
            assert result[-2:] == messages[-2:]
            assert count_tokens(result) <= budget or len(result) == 2
