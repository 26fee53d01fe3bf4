"""Shared data models for the orchestration core.

Kept free of behaviour beyond small helpers so protocols, session and
orchestrator can import it without cycles.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

# Joins the content of consecutive rounds in a turn transcript
TRANSCRIPT_SEPARATOR = "\n"


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FinishReason(StrEnum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"


class TurnState(StrEnum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    TOOL_EXECUTING = "tool_executing"
    AWAITING_USER = "awaiting_user"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"
    ROUND_LIMIT_REACHED = "round_limit_reached"


@dataclass
class ToolCall:
    """A model-issued tool call.

    raw_arguments accumulates streamed fragments; arguments is only
    populated once the stream has finished.
    """

    id: str
    name: str
    raw_arguments: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)
    index: int = 0


@dataclass
class ToolSpec:
    """Protocol-neutral tool schema."""

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )


@dataclass
class AskUserQA:
    question: str
    options: list[str]
    answer: str


@dataclass
class Message:
    """A single message in a conversation."""

    role: Role
    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None  # tool results only
    is_error: bool = False  # tool results only
    streaming: bool = False
    ask_user_qa: AskUserQA | None = None
    summary: bool = False  # synthetic compaction summary


# ---------------------------------------------------------------------------
# Normalized stream deltas
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolCallFragment:
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True)
class Finish:
    reason: FinishReason


@dataclass(frozen=True)
class UsageReport:
    """Prompt size reported by the upstream, used for estimator calibration."""

    prompt_tokens: int


Delta = ContentDelta | ReasoningDelta | ToolCallFragment | Finish | UsageReport


@dataclass
class _FragmentBuffer:
    id: str = ""
    name: str = ""
    parts: list[str] = field(default_factory=list)


@dataclass
class StreamState:
    """Transient accumulator for one in-flight upstream call."""

    content: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    fragments: dict[int, _FragmentBuffer] = field(default_factory=dict)
    finish_reason: FinishReason | None = None

    def apply(self, delta: Delta) -> None:
        if isinstance(delta, ContentDelta):
            self.content.append(delta.text)
        elif isinstance(delta, ReasoningDelta):
            self.reasoning.append(delta.text)
        elif isinstance(delta, ToolCallFragment):
            buf = self.fragments.setdefault(delta.index, _FragmentBuffer())
            # Some upstreams send the id or name only after the first fragment
            if delta.id and not buf.id:
                buf.id = delta.id
            if delta.name and not buf.name:
                buf.name = delta.name
            if delta.arguments:
                buf.parts.append(delta.arguments)
        elif isinstance(delta, Finish):
            self.finish_reason = delta.reason

    def finalize(self) -> list[ToolCall]:
        """Concatenate fragments per index and parse them, in index order.

        Unparsable argument text yields a call with empty arguments; the raw
        text is kept so the tool handler can report the failure. Fragments
        that never received a name are dropped.
        """
        calls: list[ToolCall] = []
        for index in sorted(self.fragments):
            buf = self.fragments[index]
            if not buf.name:
                logger.warning("Dropping tool call fragment %d without a name", index)
                continue
            raw = "".join(buf.parts)
            calls.append(ToolCall(
                id=buf.id or f"call_{index}",
                name=buf.name,
                raw_arguments=raw,
                arguments=parse_arguments(raw),
                index=index,
            ))
        if calls:
            self.finish_reason = FinishReason.TOOL_CALLS
        elif self.finish_reason is None:
            self.finish_reason = FinishReason.STOP
        return calls


def parse_arguments(raw: str) -> dict[str, Any]:
    """Best-effort JSON object parse. Empty or invalid text gives {}."""
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# Tool outcomes
# ---------------------------------------------------------------------------


@dataclass
class ToolExecutionResult:
    success: bool
    output: str = ""
    error: str | None = None
    duration_ms: int | None = None


@dataclass(frozen=True)
class ToolInterrupt:
    """Returned instead of a result when the model asks the user something."""

    question: str
    options: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Ask-user suspension
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PendingOffsets:
    """Transcript lengths at the moment of an ask_user suspension.

    content_offset is the length of the turn's content so far (rounds
    joined with TRANSCRIPT_SEPARATOR, ending with the frozen message);
    reasoning_offset is the same for reasoning. Captured once, never
    altered.
    """

    content_offset: int
    reasoning_offset: int

    @property
    def resume_at(self) -> int:
        """Position where post-answer text starts in a joined transcript.

        Rounds are joined with TRANSCRIPT_SEPARATOR, which is only inserted
        after non-empty content.
        """
        if self.content_offset == 0:
            return 0
        return self.content_offset + len(TRANSCRIPT_SEPARATOR)


@dataclass
class AskUserRequest:
    question: str
    options: list[str]
    tool_call_id: str
    answer: asyncio.Future[str]

    def resolve(self, answer: str) -> bool:
        """Resolve once. Later calls are no-ops and return False."""
        if self.answer.done():
            return False
        self.answer.set_result(answer)
        return True


# ---------------------------------------------------------------------------
# Public surface
# ---------------------------------------------------------------------------


@dataclass
class Usage:
    used_tokens: int
    context_window: int
    percent: float
    is_near_limit: bool
    is_full: bool
    available_tokens: int = 0
    message_count: int = 0


@dataclass
class TurnEvent:
    """A single event yielded by Orchestrator.send_message()."""

    type: str  # content_delta, reasoning_delta, tool_executing, tool_result, ask_user, warning, done, error
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    question: str = ""
    options: list[str] = field(default_factory=list)
    offsets: PendingOffsets | None = None
    state: TurnState | None = None
    error: Exception | None = None
