"""Tests for ModelSummarizer and summary serialization."""

import pytest

from colloquy.api.compaction import (
    CHECKPOINT_SYSTEM_PROMPT,
    UPDATE_SYSTEM_PROMPT,
    ModelSummarizer,
    serialize_for_summary,
)
from colloquy.api.errors import CompactionFailure
from colloquy.api.models import AskUserQA, Message, Role, ToolCall
from colloquy.api.protocols import get_adapter
from colloquy.api.session import SUMMARY_PREFIX
from conftest import ScriptedTransport

SUMMARY = "## Goal\nList files.\n\n## Progress\n- listed\n\n## Critical Context\n- a.txt"


def _chunks(*texts: str) -> list[dict]:
    chunks = [{"choices": [{"delta": {"content": t}}]} for t in texts]
    chunks.append({"choices": [{"delta": {}, "finish_reason": "stop"}]})
    return chunks


def _history() -> list[Message]:
    return [
        Message(role=Role.USER, content="list files"),
        Message(
            role=Role.ASSISTANT,
            content="Let me check.",
            tool_calls=[ToolCall(id="c1", name="list_dir", raw_arguments='{"path": "."}')],
        ),
        Message(role=Role.TOOL, tool_call_id="c1", content="a.txt\nb.txt"),
    ]


class TestModelSummarizer:
    @pytest.mark.asyncio
    async def test_collects_streamed_text(self, settings):
        transport = ScriptedTransport([_chunks(SUMMARY[:10], SUMMARY[10:])])
        summarizer = ModelSummarizer(transport, get_adapter("openai"), settings)

        assert await summarizer.summarize(_history()) == SUMMARY

        endpoint, body = transport.calls[0]
        assert endpoint == "/chat/completions"
        assert "tools" not in body
        assert body["messages"][0] == {"role": "system", "content": CHECKPOINT_SYSTEM_PROMPT}
        assert "**User:** list files" in body["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_existing_summary_uses_update_prompt(self, settings):
        transport = ScriptedTransport([_chunks(SUMMARY)])
        summarizer = ModelSummarizer(transport, get_adapter("openai"), settings)
        previous = Message(role=Role.USER, content=f"{SUMMARY_PREFIX}\n\nOld summary.", summary=True)

        await summarizer.summarize([previous, *_history()])

        body = transport.calls[0][1]
        assert body["messages"][0]["content"] == UPDATE_SYSTEM_PROMPT
        user_content = body["messages"][1]["content"]
        assert user_content.startswith("## Existing Summary\n\nOld summary.")
        assert SUMMARY_PREFIX not in user_content

    @pytest.mark.asyncio
    async def test_summary_model_override(self, settings):
        settings.summary_model = "small-model"
        transport = ScriptedTransport([_chunks(SUMMARY)])
        summarizer = ModelSummarizer(transport, get_adapter("openai"), settings)
        await summarizer.summarize(_history())
        assert transport.calls[0][1]["model"] == "small-model"

    @pytest.mark.asyncio
    async def test_empty_output_fails(self, settings):
        transport = ScriptedTransport([_chunks()])
        summarizer = ModelSummarizer(transport, get_adapter("openai"), settings)
        with pytest.raises(CompactionFailure):
            await summarizer.summarize(_history())

    @pytest.mark.asyncio
    async def test_malformed_chunks_skipped(self, settings):
        transport = ScriptedTransport([["{oops", *_chunks(SUMMARY)]])
        summarizer = ModelSummarizer(transport, get_adapter("openai"), settings)
        assert await summarizer.summarize(_history()) == SUMMARY


class TestSerializeForSummary:
    def test_roles_tool_calls_and_results(self):
        text = serialize_for_summary(_history())
        assert "**User:** list files" in text
        assert '[called list_dir({"path": "."})]' in text
        assert "**Tool result:** a.txt\nb.txt" in text

    def test_ask_user_exchange_included(self):
        msg = Message(
            role=Role.ASSISTANT,
            content="Picking: ",
            ask_user_qa=AskUserQA(question="Which file?", options=["a.txt"], answer="a.txt"),
        )
        text = serialize_for_summary([msg])
        assert "asked the user: 'Which file?', answer: 'a.txt'" in text
