"""Model-backed summarization for history compaction.

Session.compact() decides what to fold and where; this module only
turns the older messages into summary text with one non-tool call to
the configured model.
"""

from __future__ import annotations

import logging
import re

from colloquy.api.errors import CompactionFailure, ProtocolParseError
from colloquy.api.models import ContentDelta, Message, Role
from colloquy.api.protocols import WireAdapter
from colloquy.api.session import SUMMARY_PREFIX
from colloquy.api.transport import StreamingTransport
from colloquy.config import ModelConfig, Settings

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization Prompts
# ------------------------------------------------------------------

CHECKPOINT_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY a structured summary.
TARGET LENGTH: 300-600 words. Prioritize precision over completeness.

## Format

## Goal
[1-2 sentences]

## Constraints & Preferences
- [Requirements stated by the user]

## Progress
- [What was done, including tool calls and their outcomes]

## Open Questions
- [Questions asked of or by the user that are still unresolved]

## Critical Context
- [Names, values, error messages, identifiers the conversation depends on]
"""

UPDATE_SYSTEM_PROMPT = """\
You are updating a conversation summary with new messages.
PRESERVE existing info unless explicitly superseded, ADD new progress and
context, and keep exact names and error messages. Use the SAME format as
the existing summary.

Output ONLY the updated summary."""

_SECTION_PATTERNS = [
    re.compile(r"##\s*goals?\b", re.IGNORECASE),
    re.compile(r"##\s*progress\b", re.IGNORECASE),
    re.compile(r"##\s*critical\s*context\b", re.IGNORECASE),
]

_SUMMARY_MAX_TOKENS = 2048


class ModelSummarizer:
    """Summarizes messages by streaming one plain completion."""

    def __init__(
        self,
        transport: StreamingTransport,
        adapter: WireAdapter,
        settings: Settings,
        model: ModelConfig | None = None,
    ) -> None:
        self._transport = transport
        self._adapter = adapter
        self._settings = settings
        self._model = model or transport.model
        if settings.summary_model:
            self._model = self._model.model_copy(update={"model_id": settings.summary_model})

    async def summarize(self, messages: list[Message]) -> str:
        existing = ""
        if messages and messages[0].summary:
            existing = messages[0].content.removeprefix(SUMMARY_PREFIX).strip()
            messages = messages[1:]

        if existing:
            system = UPDATE_SYSTEM_PROMPT
            user_content = (
                f"## Existing Summary\n\n{existing}\n\n"
                f"## New Conversation\n\n{serialize_for_summary(messages)}"
            )
        else:
            system = CHECKPOINT_SYSTEM_PROMPT
            user_content = serialize_for_summary(messages)

        body = self._adapter.to_wire(
            [Message(role=Role.SYSTEM, content=system), Message(role=Role.USER, content=user_content)],
            None,
            self._model,
            max_tokens=_SUMMARY_MAX_TOKENS,
        )

        parts: list[str] = []
        async for payload in self._transport.stream(self._adapter.endpoint, body):
            try:
                deltas = self._adapter.from_wire_chunk(payload)
            except ProtocolParseError as e:
                logger.warning("Skipping malformed summary chunk: %s", e)
                continue
            parts.extend(d.text for d in deltas if isinstance(d, ContentDelta))

        summary = "".join(parts).strip()
        if not summary:
            raise CompactionFailure("Summarizer returned no text")
        _check_summary(summary)
        return summary


def _check_summary(summary: str) -> None:
    """Format check only; a loosely formatted summary is still kept."""
    found = sum(1 for pat in _SECTION_PATTERNS if pat.search(summary))
    if found < 2:
        logger.warning("Summary missing sections (%d/3), keeping it anyway", found)


def serialize_for_summary(messages: list[Message]) -> str:
    """Render messages as readable text for summarization."""
    lines = []
    for msg in messages:
        if msg.role == Role.TOOL:
            label = "Tool error" if msg.is_error else "Tool result"
            lines.append(f"**{label}:** {msg.content}")
            continue
        role = "User" if msg.role == Role.USER else "Assistant"
        text = msg.content
        if msg.tool_calls:
            calls = ", ".join(f"{tc.name}({tc.raw_arguments or tc.arguments})" for tc in msg.tool_calls)
            text = f"{text}\n[called {calls}]" if text else f"[called {calls}]"
        if msg.ask_user_qa:
            qa = msg.ask_user_qa
            text += f"\n[asked the user: {qa.question!r}, answer: {qa.answer!r}]"
        lines.append(f"**{role}:** {text}")
    return "\n\n".join(lines)
