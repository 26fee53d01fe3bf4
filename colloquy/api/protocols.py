"""Wire protocol adapters.

Stateless translation between the internal message model and the two
upstream request/response shapes:

- "openai": chat-completions style. System message inline, tools as
  {type: function, function: {...}}, SSE JSON chunks ending in [DONE].
- "anthropic": messages style. System extracted to a top-level field,
  tools as {name, description, input_schema}, typed SSE events.

One adapter is chosen per session from the declared protocol via
get_adapter(); it is never inferred per chunk.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from colloquy.api.errors import ProtocolParseError, UpstreamError
from colloquy.api.models import (
    ContentDelta,
    Delta,
    Finish,
    FinishReason,
    Message,
    ReasoningDelta,
    Role,
    ToolCallFragment,
    ToolSpec,
    UsageReport,
)
from colloquy.config import ModelConfig

logger = logging.getLogger(__name__)

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "eos": FinishReason.STOP,  # SiliconFlow
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "tool_use": FinishReason.TOOL_CALLS,
    "length": FinishReason.LENGTH,
    "max_tokens": FinishReason.LENGTH,
}


def normalize_finish_reason(reason: str | None) -> FinishReason:
    """Map an upstream finish/stop reason onto the normalized set."""
    return _FINISH_REASONS.get(reason or "", FinishReason.STOP)


def _decode(raw: str | dict[str, Any]) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ProtocolParseError(f"Malformed chunk: {e}", raw=str(raw)) from e
    if not isinstance(data, dict):
        raise ProtocolParseError("Chunk is not a JSON object", raw=str(raw))
    return data


def _obj(value: Any, field: str, raw: Any) -> dict[str, Any]:
    """A nested object field. Missing or null reads as empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProtocolParseError(f"{field} is not an object", raw=str(raw))
    return value


def _str(value: Any, field: str, raw: Any) -> str:
    """A text field. Missing or null reads as empty."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ProtocolParseError(f"{field} is not a string", raw=str(raw))
    return value


def _opt_str(value: Any, field: str, raw: Any) -> str | None:
    return None if value is None else _str(value, field, raw)


def _index(value: Any, raw: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolParseError("index is not an integer", raw=str(raw))
    return value


def _usage_report(prompt_tokens: Any) -> list[Delta]:
    if isinstance(prompt_tokens, int) and prompt_tokens > 0:
        return [UsageReport(prompt_tokens)]
    return []


class WireAdapter:
    """Base class shared by both protocol adapters."""

    name: str = ""
    endpoint: str = ""

    def to_wire(
        self,
        messages: list[Message],
        tools: list[ToolSpec] | None,
        model: ModelConfig,
        max_tokens: int = 4096,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def encode_tools(self, specs: list[ToolSpec]) -> list[dict[str, Any]]:
        raise NotImplementedError

    def from_wire_chunk(self, raw: str | dict[str, Any]) -> list[Delta]:
        raise NotImplementedError

    def tool_result(self, tool_call_id: str, text: str, is_error: bool = False) -> Message:
        raise NotImplementedError

    @staticmethod
    def _sendable(messages: list[Message]) -> list[Message]:
        """Drop the in-flight message and empty assistant turns."""
        return [
            m for m in messages
            if not m.streaming
            and not (m.role == Role.ASSISTANT and not m.content and not m.tool_calls)
        ]


# ---------------------------------------------------------------------------
# Style A: chat completions
# ---------------------------------------------------------------------------


class ChatCompletionsAdapter(WireAdapter):
    name = "openai"
    endpoint = "/chat/completions"

    def to_wire(
        self,
        messages: list[Message],
        tools: list[ToolSpec] | None,
        model: ModelConfig,
        max_tokens: int = 4096,
    ) -> dict[str, Any]:
        wire: list[dict[str, Any]] = []
        for msg in self._sendable(messages):
            if msg.role == Role.TOOL:
                wire.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id or "",
                    "content": msg.content,
                })
            elif msg.role == Role.ASSISTANT and msg.tool_calls:
                wire.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": json.dumps(tc.arguments),
                            },
                        }
                        for tc in msg.tool_calls
                    ],
                })
            else:
                wire.append({"role": str(msg.role), "content": msg.content})

        body: dict[str, Any] = {
            "model": model.model_id,
            "messages": wire,
            "max_tokens": max_tokens,
            "stream": True,
        }
        if tools:
            body["tools"] = self.encode_tools(tools)
            body["tool_choice"] = "auto"
        return body

    def encode_tools(self, specs: list[ToolSpec]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.parameters,
                },
            }
            for spec in specs
        ]

    def from_wire_chunk(self, raw: str | dict[str, Any]) -> list[Delta]:
        data = _decode(raw)

        if "error" in data:
            error = data.get("error") or {}
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            raise UpstreamError(f"Upstream stream error: {message}", body=json.dumps(data)[:500])

        choices = data.get("choices")
        if not choices:
            # Usage-only trailer chunks carry no choices
            return _usage_report(_obj(data.get("usage"), "usage", raw).get("prompt_tokens"))
        if not isinstance(choices, list):
            raise ProtocolParseError("choices is not a list", raw=str(raw))
        choice = _obj(choices[0], "choice", raw)
        delta = _obj(choice.get("delta"), "delta", raw)

        deltas: list[Delta] = []
        reasoning = _str(delta.get("reasoning_content") or delta.get("reasoning"), "reasoning", raw)
        if reasoning:
            deltas.append(ReasoningDelta(reasoning))
        content = _str(delta.get("content"), "content", raw)
        if content:
            deltas.append(ContentDelta(content))
        tool_calls = delta.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            raise ProtocolParseError("tool_calls is not a list", raw=str(raw))
        for tc in tool_calls:
            if not isinstance(tc, dict):
                raise ProtocolParseError("tool call is not an object", raw=str(raw))
            function = _obj(tc.get("function"), "function", raw)
            deltas.append(ToolCallFragment(
                index=_index(tc.get("index"), raw),
                id=_opt_str(tc.get("id"), "id", raw),
                name=_opt_str(function.get("name"), "name", raw),
                arguments=_str(function.get("arguments"), "arguments", raw),
            ))
        finish_reason = _opt_str(choice.get("finish_reason"), "finish_reason", raw)
        if finish_reason:
            deltas.append(Finish(normalize_finish_reason(finish_reason)))
        return deltas

    def tool_result(self, tool_call_id: str, text: str, is_error: bool = False) -> Message:
        return Message(
            role=Role.TOOL,
            tool_call_id=tool_call_id,
            content=f"Error: {text}" if is_error else text,
            is_error=is_error,
        )


# ---------------------------------------------------------------------------
# Style B: messages
# ---------------------------------------------------------------------------


class MessagesAdapter(WireAdapter):
    name = "anthropic"
    endpoint = "/v1/messages"

    def to_wire(
        self,
        messages: list[Message],
        tools: list[ToolSpec] | None,
        model: ModelConfig,
        max_tokens: int = 4096,
    ) -> dict[str, Any]:
        system_parts: list[str] = []
        wire: list[dict[str, Any]] = []
        pending_results: list[dict[str, Any]] = []

        def flush_results() -> None:
            if pending_results:
                wire.append({"role": "user", "content": list(pending_results)})
                pending_results.clear()

        for msg in self._sendable(messages):
            if msg.role == Role.SYSTEM:
                system_parts.append(msg.content)
                continue
            if msg.role == Role.TOOL:
                pending_results.append({
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id or "",
                    "content": msg.content,
                    "is_error": msg.is_error,
                })
                continue

            flush_results()
            if msg.role == Role.ASSISTANT and msg.tool_calls:
                blocks: list[dict[str, Any]] = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    blocks.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.arguments,
                    })
                wire.append({"role": "assistant", "content": blocks})
            else:
                wire.append({"role": str(msg.role), "content": msg.content})
        flush_results()

        body: dict[str, Any] = {
            "model": model.model_id,
            "max_tokens": max_tokens,
            "messages": wire,
            "stream": True,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if tools:
            body["tools"] = self.encode_tools(tools)
        return body

    def encode_tools(self, specs: list[ToolSpec]) -> list[dict[str, Any]]:
        return [
            {
                "name": spec.name,
                "description": spec.description,
                "input_schema": spec.parameters,
            }
            for spec in specs
        ]

    def from_wire_chunk(self, raw: str | dict[str, Any]) -> list[Delta]:
        """Parse one typed event.

        stop_reason arrives in message_delta.delta, not in message_start.
        Errors can arrive in-stream on an HTTP 200 response.
        """
        data = _decode(raw)
        event_type = data.get("type")

        if event_type == "error":
            error = data.get("error")
            if not isinstance(error, dict):
                error = {"message": str(error or "")}
            raise UpstreamError(
                f"{error.get('type', 'unknown')}: {error.get('message', '')}",
                body=json.dumps(data)[:500],
            )

        if event_type == "content_block_start":
            block = _obj(data.get("content_block"), "content_block", raw)
            index = _index(data.get("index"), raw)
            block_type = block.get("type")
            if block_type == "tool_use":
                return [ToolCallFragment(
                    index=index,
                    id=_opt_str(block.get("id"), "id", raw),
                    name=_opt_str(block.get("name"), "name", raw),
                )]
            if block_type == "text":
                text = _str(block.get("text"), "text", raw)
                return [ContentDelta(text)] if text else []
            if block_type == "thinking":
                thinking = _str(block.get("thinking"), "thinking", raw)
                return [ReasoningDelta(thinking)] if thinking else []
            return []

        if event_type == "content_block_delta":
            delta = _obj(data.get("delta"), "delta", raw)
            index = _index(data.get("index"), raw)
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                text = _str(delta.get("text"), "text", raw)
                return [ContentDelta(text)] if text else []
            if delta_type == "thinking_delta":
                thinking = _str(delta.get("thinking"), "thinking", raw)
                return [ReasoningDelta(thinking)] if thinking else []
            if delta_type == "input_json_delta":
                return [ToolCallFragment(
                    index=index,
                    arguments=_str(delta.get("partial_json"), "partial_json", raw),
                )]
            return []

        if event_type == "message_delta":
            delta = _obj(data.get("delta"), "delta", raw)
            stop_reason = _opt_str(delta.get("stop_reason"), "stop_reason", raw)
            if stop_reason:
                return [Finish(normalize_finish_reason(stop_reason))]
            return []

        if event_type == "message_start":
            message = _obj(data.get("message"), "message", raw)
            usage = _obj(message.get("usage"), "usage", raw)
            return _usage_report(usage.get("input_tokens"))

        # content_block_stop, message_stop, ping, unknown
        return []

    def tool_result(self, tool_call_id: str, text: str, is_error: bool = False) -> Message:
        return Message(role=Role.TOOL, tool_call_id=tool_call_id, content=text, is_error=is_error)


_ADAPTERS: dict[str, type[WireAdapter]] = {
    ChatCompletionsAdapter.name: ChatCompletionsAdapter,
    MessagesAdapter.name: MessagesAdapter,
}


def get_adapter(protocol: str) -> WireAdapter:
    """Return the adapter for a declared protocol."""
    try:
        return _ADAPTERS[protocol]()
    except KeyError:
        raise ValueError(f"Unknown wire protocol: {protocol!r}") from None
