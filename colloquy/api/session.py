"""Conversation session -- message history, token accounting, compaction.

The Session is the sole owner of history. Only the Orchestrator mutates
it: turn-by-turn appends, in-place growth of the single streaming
message, and compaction (which replaces an older prefix with one
synthetic summary message).
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from colloquy.api.errors import CompactionFailure, ContractViolation
from colloquy.api.models import Message, Role, Usage

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]"

# Fixed per-message framing overhead (role, separators)
_MESSAGE_OVERHEAD = 4

Summarize = Callable[[list[Message]], Awaitable[str]]


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Estimates token counts with optional calibration from API usage.

    Per-character weights: CJK ~1.5 chars/token, ASCII ~4 chars/token,
    other scripts ~2 chars/token. A scale factor starts at 1.0 and moves
    towards observed/estimated ratios via calibrate() (EMA, alpha=0.1).
    """

    def __init__(self) -> None:
        self._scale: float = 1.0
        self._samples: int = 0

    @property
    def samples(self) -> int:
        """Number of calibration samples received."""
        return self._samples

    @property
    def scale(self) -> float:
        return self._scale

    @staticmethod
    def _raw(text: str) -> float:
        tokens = 0.0
        for char in text:
            code = ord(char)
            if (
                0x4E00 <= code <= 0x9FFF  # CJK unified ideographs
                or 0x3040 <= code <= 0x30FF  # Hiragana + Katakana
                or 0xAC00 <= code <= 0xD7AF  # Hangul syllables
            ):
                tokens += 0.67
            elif code < 128:
                tokens += 0.25
            else:
                tokens += 0.5
        return tokens

    def estimate(self, text: str) -> int:
        """Estimate token count for text content. Empty text is 0."""
        if not text:
            return 0
        return math.ceil(self._raw(text) * self._scale)

    def estimate_message(self, message: Message) -> int:
        tokens = _MESSAGE_OVERHEAD + self.estimate(message.content) + self.estimate(message.reasoning)
        for call in message.tool_calls:
            tokens += self.estimate(call.name) + self.estimate(
                call.raw_arguments or json.dumps(call.arguments)
            )
        return tokens

    def calibrate(self, estimated_tokens: int, actual_tokens: int) -> None:
        """Move the scale towards actual/estimated. EMA with alpha=0.1."""
        if estimated_tokens <= 0 or actual_tokens <= 0:
            return
        observed = self._scale * actual_tokens / estimated_tokens
        self._scale = 0.1 * observed + 0.9 * self._scale
        self._samples += 1


# ------------------------------------------------------------------
# Session
# ------------------------------------------------------------------


@dataclass
class _Entry:
    message: Message
    tokens: int


@dataclass(frozen=True)
class SessionCheckpoint:
    """Snapshot used to roll back a failed turn."""

    message_count: int
    used_tokens: int


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


class Session:
    """Ordered message history with a running token estimate."""

    def __init__(
        self,
        context_window: int,
        compaction_threshold: float = 0.8,
        keep_recent: int = 4,
        near_limit_threshold: float = 0.8,
        full_threshold: float = 0.95,
        estimator: TokenEstimator | None = None,
    ) -> None:
        if context_window <= 0:
            raise ValueError("context_window must be > 0")
        self.context_window = context_window
        self.compaction_threshold = compaction_threshold
        self.keep_recent = keep_recent
        self.near_limit_threshold = near_limit_threshold
        self.full_threshold = full_threshold
        self.estimator = estimator or TokenEstimator()

        self._entries: list[_Entry] = []
        self._system_prompt: _Entry | None = None
        self._tools_tokens: int = 0
        self._used_tokens: int = 0
        self.compaction_count: int = 0

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        """History including the system prompt, in conversation order."""
        history = [e.message for e in self._entries]
        if self._system_prompt:
            return [self._system_prompt.message, *history]
        return history

    @property
    def history(self) -> list[Message]:
        """History without the system prompt."""
        return [e.message for e in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def streaming_message(self) -> Message | None:
        for entry in reversed(self._entries):
            if entry.message.streaming:
                return entry.message
        return None

    def set_system_prompt(self, prompt: str) -> None:
        if self._system_prompt:
            self._used_tokens -= self._system_prompt.tokens
            self._system_prompt = None
        if prompt:
            message = Message(role=Role.SYSTEM, content=prompt)
            self._system_prompt = _Entry(message, self.estimator.estimate_message(message))
            self._used_tokens += self._system_prompt.tokens

    def set_tools_estimate(self, tokens: int) -> None:
        """Token cost of the tool definitions sent with every request."""
        self._used_tokens += tokens - self._tools_tokens
        self._tools_tokens = tokens

    def append(self, message: Message) -> None:
        """Insert at the tail and update the running estimate."""
        if message.streaming and self.streaming_message is not None:
            raise ContractViolation("Another message is already streaming")
        entry = _Entry(message, self.estimator.estimate_message(message))
        self._entries.append(entry)
        self._used_tokens += entry.tokens

    def settle(self, message: Message) -> None:
        """Re-estimate a message whose content grew while streaming."""
        for entry in reversed(self._entries):
            if entry.message is message:
                tokens = self.estimator.estimate_message(message)
                self._used_tokens += tokens - entry.tokens
                entry.tokens = tokens
                return

    def clear(self) -> None:
        self._entries = []
        self._system_prompt = None
        self._used_tokens = self._tools_tokens

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    @property
    def used_tokens(self) -> int:
        return self._used_tokens

    def get_usage(self) -> Usage:
        used = self._used_tokens
        percent = used / self.context_window * 100
        return Usage(
            used_tokens=used,
            context_window=self.context_window,
            percent=percent,
            is_near_limit=percent >= self.near_limit_threshold * 100,
            is_full=percent >= self.full_threshold * 100,
            available_tokens=max(0, self.context_window - used),
            message_count=len(self._entries),
        )

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def should_compact(self) -> bool:
        """True once the estimate reaches the threshold fraction.

        Needs at least two real (non-summary) messages, so a single large
        first message or a fresh summary never triggers compaction.
        """
        real = sum(1 for e in self._entries if not e.message.summary)
        if real < 2:
            return False
        return self._used_tokens >= self.context_window * self.compaction_threshold

    def _cut_point(self) -> int:
        cut = max(0, len(self._entries) - self.keep_recent)
        # Tool results must stay with the assistant message that issued the call
        while 0 < cut < len(self._entries) and self._entries[cut].message.role == Role.TOOL:
            cut -= 1
        return cut

    async def compact(self, summarize: Summarize) -> bool:
        """Replace all but the most recent messages with one summary.

        Returns False without calling summarize when below threshold or
        when nothing older than the recent window exists.
        """
        if not self.should_compact():
            return False
        if self.streaming_message is not None:
            raise ContractViolation("Cannot compact while a message is streaming")

        cut = self._cut_point()
        if cut <= 0:
            return False
        old = [e.message for e in self._entries[:cut]]

        start_time = time.monotonic()
        try:
            text = await summarize(old)
        except Exception as e:
            raise CompactionFailure(f"Summarization failed: {e}") from e
        if not text or not text.strip():
            raise CompactionFailure("Summarization returned empty text")

        summary = Message(role=Role.USER, content=f"{SUMMARY_PREFIX}\n\n{text.strip()}", summary=True)
        recent = self._entries[cut:]
        self._entries = [_Entry(summary, self.estimator.estimate_message(summary)), *recent]
        self._recount()
        self.compaction_count += 1

        logger.info(
            "Compacted session: %d messages -> summary + %d (%d tokens, %d ms, compaction #%d)",
            len(old) + len(recent),
            len(recent),
            self._used_tokens,
            int((time.monotonic() - start_time) * 1000),
            self.compaction_count,
        )
        return True

    def _recount(self) -> None:
        total = self._tools_tokens + sum(e.tokens for e in self._entries)
        if self._system_prompt:
            total += self._system_prompt.tokens
        self._used_tokens = total

    # ------------------------------------------------------------------
    # Checkpoint / rollback
    # ------------------------------------------------------------------

    def checkpoint(self) -> SessionCheckpoint:
        return SessionCheckpoint(message_count=len(self._entries), used_tokens=self._used_tokens)

    def rollback(self, checkpoint: SessionCheckpoint) -> None:
        """Drop everything appended after checkpoint."""
        if len(self._entries) > checkpoint.message_count:
            del self._entries[checkpoint.message_count:]
        self._recount()

    # ------------------------------------------------------------------
    # Tool call pairing
    # ------------------------------------------------------------------

    def validate(self) -> ValidationResult:
        """Check that every tool call has a result and vice versa."""
        errors: list[str] = []
        pending: dict[str, int] = {}
        for i, entry in enumerate(self._entries):
            msg = entry.message
            if msg.role == Role.ASSISTANT:
                for call in msg.tool_calls:
                    pending[call.id] = i
            elif msg.role == Role.TOOL and msg.tool_call_id:
                if pending.pop(msg.tool_call_id, None) is None:
                    errors.append(
                        f"Orphan tool result at index {i}: tool_call_id={msg.tool_call_id}"
                    )
        for call_id, index in pending.items():
            errors.append(f"Orphan tool call at index {index}: tool_call_id={call_id}")
        return ValidationResult(valid=not errors, errors=errors)

    def repair(self) -> int:
        """Remove unpaired tool calls and tool results. Returns messages removed."""
        if self.validate().valid:
            return 0

        call_ids = {
            call.id
            for e in self._entries if e.message.role == Role.ASSISTANT
            for call in e.message.tool_calls
        }
        answered = {
            e.message.tool_call_id
            for e in self._entries
            if e.message.role == Role.TOOL and e.message.tool_call_id in call_ids
        }

        kept: list[_Entry] = []
        for entry in self._entries:
            msg = entry.message
            if msg.role == Role.TOOL and msg.tool_call_id not in answered:
                continue
            if msg.role == Role.ASSISTANT and msg.tool_calls:
                msg.tool_calls = [c for c in msg.tool_calls if c.id in answered]
                entry.tokens = self.estimator.estimate_message(msg)
            kept.append(entry)

        removed = len(self._entries) - len(kept)
        self._entries = kept
        self._recount()
        logger.warning("Repaired session history: removed %d unpaired messages", removed)
        return removed
