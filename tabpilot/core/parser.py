import re
from dataclasses import dataclass
from enum import Enum, auto

from tabpilot.core.prompts import INTERRUPTED_TEMPLATE, MISSING_APPROVAL_TEMPLATE, MISSING_INPUT_TEMPLATE

TOOL_OPEN = "<tool>"
TOOL_CLOSE = "</tool>"
INPUT_OPEN = "<input>"
INPUT_CLOSE = "</input>"
APPROVAL_OPEN = "<requires_approval>"
APPROVAL_CLOSE = "</requires_approval>"

# A call may be wrapped in a ```xml or ```bash fence; the opening fence is dropped with the call.
_CALL_START = re.compile(r"(?:```(?:xml|bash)\s*)?<tool>")
_PARTIAL_FENCE = re.compile(r"`{1,3}\Z|```(?:x|xm|xml|b|ba|bas|bash)\Z|```(?:xml|bash)\s*(?:<|<t|<to|<too|<tool)?\Z")


@dataclass(frozen=True)
class ToolInvocation:
    name: str
    raw_input: str
    requires_approval: bool


@dataclass(frozen=True)
class FeedResult:
    emit: str
    match: ToolInvocation | None = None


class _Phase(Enum):
    SEEK = auto()
    NAME = auto()
    BEFORE_INPUT = auto()
    INPUT = auto()
    BEFORE_APPROVAL = auto()
    APPROVAL = auto()


class _Step(Enum):
    ADVANCE = auto()
    NEED_MORE = auto()
    FAIL = auto()
    MATCH = auto()


def _partial_prefix(text: str, token: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``token``."""
    for size in range(min(len(text), len(token) - 1), 0, -1):
        if text.endswith(token[:size]):
            return size
    return 0


def _held_suffix(text: str) -> int:
    """How much of the tail of ``text`` could still grow into the start of a call."""
    keep = _partial_prefix(text, TOOL_OPEN)
    if m := _PARTIAL_FENCE.search(text):
        keep = max(keep, len(text) - m.start())
    return keep


class ToolCallParser:
    """Incremental scanner for the textual tool-call grammar.

    Text that can no longer belong to a call is released as soon as it
    arrives; a possible ``<tool>`` or fence prefix or an in-progress candidate is held
    back until it either completes or is ruled out. The scan resumes from a
    cursor, so each chunk is examined once rather than re-matching the whole
    buffer.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self._text: list[str] = []
        self._emitted: list[str] = []
        self._held = ""
        self._phase = _Phase.SEEK
        self._cursor = 0
        self._name_start = 0
        self._name_end = 0
        self._input_start = 0
        self._input_end = 0
        self._approval_start = 0
        self._approval_end = 0
        self._match: ToolInvocation | None = None
        self._call_text = ""

    @property
    def text(self) -> str:
        return "".join(self._text)

    @property
    def preceding(self) -> str:
        return "".join(self._emitted)

    @property
    def turn_text(self) -> str:
        """The assistant turn as recorded: the text up to and including the first call."""
        if self._match is None:
            return self.text
        return self.preceding + self._call_text

    @property
    def match(self) -> ToolInvocation | None:
        return self._match

    def feed(self, chunk: str) -> FeedResult:
        self._text.append(chunk)
        if self._match is not None:
            return FeedResult("")

        self._held += chunk
        emit = self._scan()
        self._emitted.append(emit)
        return FeedResult(emit, self._match)

    def finish(self) -> str:
        """Release held text once the model has stopped producing output."""
        if self._match is not None:
            return ""
        rest, self._held = self._held, ""
        self._phase = _Phase.SEEK
        self._cursor = 0
        self._emitted.append(rest)
        return rest

    # --- Scanning ---

    def _scan(self) -> str:
        out: list[str] = []
        while True:
            if self._phase is _Phase.SEEK:
                start = _CALL_START.search(self._held)
                if start is None:
                    cut = len(self._held) - _held_suffix(self._held)
                    out.append(self._held[:cut])
                    self._held = self._held[cut:]
                    return "".join(out)
                out.append(self._held[: start.start()])
                self._held = self._held[start.start() :]
                self._phase = _Phase.NAME
                self._name_start = self._cursor = start.end() - start.start()
                continue

            match self._step():
                case _Step.ADVANCE:
                    continue
                case _Step.NEED_MORE | _Step.MATCH:
                    return "".join(out)
                case _Step.FAIL:
                    # Not a call after all; release its first character and look again.
                    out.append(self._held[0])
                    self._held = self._held[1:]
                    self._phase = _Phase.SEEK
                    self._cursor = 0

    def _step(self) -> _Step:
        held = self._held
        match self._phase:
            case _Phase.NAME:
                return self._until(TOOL_CLOSE, self._name_start, single_line=True, then=_Phase.BEFORE_INPUT)
            case _Phase.BEFORE_INPUT:
                return self._expect(INPUT_OPEN, then=_Phase.INPUT)
            case _Phase.INPUT:
                return self._until(INPUT_CLOSE, self._input_start, single_line=False, then=_Phase.BEFORE_APPROVAL)
            case _Phase.BEFORE_APPROVAL:
                return self._expect(APPROVAL_OPEN, then=_Phase.APPROVAL)
            case _Phase.APPROVAL:
                step = self._until(APPROVAL_CLOSE, self._approval_start, single_line=True, then=_Phase.SEEK)
                if step is _Step.ADVANCE:
                    self._match = ToolInvocation(
                        name=held[self._name_start : self._name_end].strip(),
                        raw_input=held[self._input_start : self._input_end].strip(),
                        requires_approval=held[self._approval_start : self._approval_end].strip().lower() == "true",
                    )
                    self._call_text = held[self._name_start - len(TOOL_OPEN) : self._cursor]
                    return _Step.MATCH
                return step
        raise AssertionError(f"unexpected phase {self._phase}")

    def _until(self, close: str, start: int, *, single_line: bool, then: _Phase) -> _Step:
        held = self._held
        end = held.find(close, self._cursor)
        if single_line:
            newline = held.find("\n", self._cursor, end if end != -1 else len(held))
            if newline != -1:
                return _Step.FAIL
        if end == -1:
            self._cursor = max(start, len(held) - len(close) + 1)
            return _Step.NEED_MORE

        match self._phase:
            case _Phase.NAME:
                self._name_end = end
            case _Phase.INPUT:
                self._input_end = end
            case _Phase.APPROVAL:
                self._approval_end = end
        self._cursor = end + len(close)
        self._phase = then
        return _Step.ADVANCE

    def _expect(self, token: str, *, then: _Phase) -> _Step:
        held = self._held
        pos = self._cursor
        while pos < len(held) and held[pos].isspace():
            pos += 1
        self._cursor = pos

        rest = held[pos:]
        if rest.startswith(token):
            self._cursor = pos + len(token)
            if then is _Phase.INPUT:
                self._input_start = self._cursor
            else:
                self._approval_start = self._cursor
            self._phase = then
            return _Step.ADVANCE
        if token.startswith(rest):
            return _Step.NEED_MORE
        return _Step.FAIL


def parse(full_text: str) -> ToolInvocation | None:
    parser = ToolCallParser()
    return parser.feed(full_text).match


_MISSING_APPROVAL = re.compile(r"<tool>(.*?)</tool>\s*<input>([\s\S]*?)</input>(?!\s*<requires_approval>)")
_MISSING_INPUT = re.compile(r"<tool>(.*?)</tool>(?!\s*<input>)")
_INTERRUPTED = re.compile(
    r"<tool>(.*?)</tool>\s*<input>(?:(?![\s\S]*</input>)|[\s\S]*?</input>\s*<requires_approval>(?![\s\S]*</requires_approval>))"
)


def diagnose_incomplete(text: str) -> str | None:
    """Corrective message for a tool call that was started but never completed."""
    if TOOL_OPEN not in text or parse(text) is not None:
        return None
    if m := _INTERRUPTED.search(text):
        return INTERRUPTED_TEMPLATE.format(name=m.group(1).strip())
    if m := _MISSING_APPROVAL.search(text):
        return MISSING_APPROVAL_TEMPLATE.format(name=m.group(1).strip(), input=m.group(2).strip())
    if m := _MISSING_INPUT.search(text):
        return MISSING_INPUT_TEMPLATE.format(name=m.group(1).strip())
    return None
