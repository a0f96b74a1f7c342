import json
import math
import re

from tabpilot.constants import CHARS_PER_TOKEN
from tabpilot.logging import get_logger
from tabpilot.usage import Usage

_logger = get_logger(__name__)

_INPUT_FIELD = re.compile(r'"input"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_APPROVAL_FIELD = re.compile(r'"requires_approval"\s*:\s*(true|false)')


def blocks_to_text(content: str | list) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text":
            parts.append(block["text"])
        elif isinstance(block, str):
            parts.append(block)
    return "\n\n".join(parts)


def content_length(content: str | list) -> int:
    if isinstance(content, str):
        return len(content)
    return len(json.dumps(content))


def approx_tokens(chars: int) -> int:
    return math.ceil(chars / CHARS_PER_TOKEN)


def estimate_usage(system_prompt: str, messages: list[dict], output: str) -> Usage:
    prompt_chars = len(system_prompt) + sum(content_length(m["content"]) for m in messages)
    return Usage(prompt_tokens=approx_tokens(prompt_chars), completion_tokens=approx_tokens(len(output)))


def format_tool_call(name: str, tool_input: str, requires_approval: bool) -> str:
    """Render a native function call in the textual tool-call grammar."""
    flag = "true" if requires_approval else "false"
    return f"<tool>{name}</tool>\n<input>{tool_input}</input>\n<requires_approval>{flag}</requires_approval>"


_ESCAPES = ("\\u003c", "\\u003e")


def decode_escaped_tags(text: str) -> str:
    return text.replace("\\u003c", "<").replace("\\u003e", ">")


def split_escaped_tags(text: str) -> tuple[str, str]:
    """Decode escaped angle brackets, holding back a trailing partial escape.

    Returns the decoded text and the tail to prepend to the next chunk.
    """
    keep = 0
    for size in range(min(len(text), len(_ESCAPES[0]) - 1), 0, -1):
        if any(e.startswith(text[-size:]) for e in _ESCAPES):
            keep = size
            break
    cut = len(text) - keep
    return decode_escaped_tags(text[:cut]), text[cut:]


def parse_tool_arguments(raw: str | dict | None) -> dict:
    """Parse function-call arguments, repairing the usual streaming damage.

    Streams sometimes deliver several JSON objects back to back or truncate
    the payload; fall back to the first object and then to pulling out the
    ``input`` field by pattern.
    """
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
        return parsed if isinstance(parsed, dict) else {}
    except json.JSONDecodeError:
        pass

    try:
        parsed, _ = json.JSONDecoder().raw_decode(raw.lstrip())
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    if match := _INPUT_FIELD.search(raw):
        try:
            args: dict = {"input": json.loads(f'"{match.group(1)}"')}
        except json.JSONDecodeError:
            args = {"input": match.group(1)}
        if approval := _APPROVAL_FIELD.search(raw):
            args["requires_approval"] = approval.group(1) == "true"
        return args

    _logger.warning("Malformed tool arguments: %.200s", raw)
    return {}


def render_function_call(name: str, arguments: str | dict | None) -> str:
    args = parse_tool_arguments(arguments)
    tool_input = args.get("input", "")
    if not isinstance(tool_input, str):
        tool_input = json.dumps(tool_input)
    return format_tool_call(name, tool_input, bool(args.get("requires_approval", False)))
