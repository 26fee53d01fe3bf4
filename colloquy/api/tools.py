"""Tool execution boundary.

Provides:
- ToolExecutor: the external execution capability the orchestrator calls
- ToolDispatcher: an in-process ToolExecutor backed by registered handlers
- ToolCallHandler: runs one resolved ToolCall, special-casing ask_user

Every outcome (success, failure, interrupt) is returned as data. Nothing
raised by a tool or by malformed arguments escapes the handler.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from colloquy.api.errors import ToolArgumentParseError
from colloquy.api.models import ToolCall, ToolExecutionResult, ToolInterrupt, ToolSpec

logger = logging.getLogger(__name__)

ASK_USER_TOOL = "ask_user"

ASK_USER_SPEC = ToolSpec(
    name=ASK_USER_TOOL,
    description=(
        "Ask the user a question and wait for the answer. Provide predefined "
        "options when the choice is constrained; the user may also answer freely "
        "or decline (empty answer)."
    ),
    parameters={
        "type": "object",
        "properties": {
            "question": {"type": "string", "description": "The question to ask the user"},
            "options": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Predefined answers to choose from, optional",
            },
        },
        "required": ["question"],
    },
)

DECLINED_ANSWER = "The user declined to answer."
_NO_OUTPUT = "(no output)"


class ToolExecutor(Protocol):
    """External tool execution capability."""

    async def execute(self, name: str, args: dict[str, Any]) -> ToolExecutionResult: ...

    def list_tools_for_model(self, protocol: str) -> list[ToolSpec]: ...


ToolHandler = Callable[..., Awaitable[Any]]


class ToolDispatcher:
    """Registers tool handlers and executes them by name.

    Each handler is an async callable taking the tool arguments as keyword
    arguments. It may return a ToolExecutionResult, or any value which is
    rendered to text as a successful output. Exceptions become failed
    results.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._specs: dict[str, ToolSpec] = {}
        self._protocols: dict[str, frozenset[str] | None] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        schema: dict[str, Any],
        protocols: list[str] | None = None,
    ) -> None:
        """Register a tool handler with its JSON schema.

        protocols restricts which upstream styles the tool is offered to;
        None offers it to all.
        """
        if name == ASK_USER_TOOL:
            raise ValueError(f"{ASK_USER_TOOL!r} is reserved")
        self._handlers[name] = handler
        self._specs[name] = ToolSpec(
            name=name,
            description=schema.get("description", ""),
            parameters={k: v for k, v in schema.items() if k != "description"},
        )
        self._protocols[name] = frozenset(protocols) if protocols else None

    async def execute(self, name: str, args: dict[str, Any]) -> ToolExecutionResult:
        handler = self._handlers.get(name)
        if not handler:
            return ToolExecutionResult(success=False, error=f"Unknown tool: {name}")
        try:
            result = await handler(**args)
        except Exception as e:
            logger.exception("Tool execution error for %s", name)
            return ToolExecutionResult(success=False, error=f"Tool error: {e}")
        if isinstance(result, ToolExecutionResult):
            return result
        if isinstance(result, str):
            return ToolExecutionResult(success=True, output=result)
        return ToolExecutionResult(success=True, output=json.dumps(result, default=str))

    def list_tools_for_model(self, protocol: str) -> list[ToolSpec]:
        return [
            spec for name, spec in self._specs.items()
            if self._protocols[name] is None or protocol in self._protocols[name]
        ]


def parse_tool_arguments(call: ToolCall) -> dict[str, Any]:
    """Parse the accumulated argument text of a completed call.

    Raises ToolArgumentParseError when the text is not a JSON object.
    Empty text means no arguments.
    """
    raw = call.raw_arguments
    if not raw.strip():
        return dict(call.arguments)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ToolArgumentParseError(call.name, raw, str(e)) from e
    if not isinstance(value, dict):
        raise ToolArgumentParseError(call.name, raw, f"expected an object, got {type(value).__name__}")
    return value


def _parse_options(value: Any) -> list[str]:
    # Some models send the options array JSON-encoded as a string
    if isinstance(value, str):
        if not value.strip():
            return []
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return [value]
    if isinstance(value, list):
        return [str(v) for v in value]
    return []


class ToolCallHandler:
    """Executes a single completed tool call against a ToolExecutor."""

    def __init__(self, executor: ToolExecutor) -> None:
        self._executor = executor

    async def handle(self, call: ToolCall) -> ToolExecutionResult | ToolInterrupt:
        try:
            args = parse_tool_arguments(call)
        except ToolArgumentParseError as e:
            logger.warning("Tool call %s (%s) has malformed arguments: %s", call.id, call.name, e)
            return ToolExecutionResult(
                success=False,
                error=f"{e}. Send the arguments again as a valid JSON object.",
            )

        if call.name == ASK_USER_TOOL:
            question = args.get("question")
            if not isinstance(question, str) or not question.strip():
                return ToolExecutionResult(success=False, error="ask_user requires a non-empty 'question'")
            return ToolInterrupt(question=question, options=_parse_options(args.get("options")))

        start_time = time.monotonic()
        try:
            result = await self._executor.execute(call.name, args)
        except Exception as e:
            logger.exception("Tool executor raised for %s", call.name)
            result = ToolExecutionResult(success=False, error=str(e) or type(e).__name__)
        if result.duration_ms is None:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)

        logger.debug(
            "Tool %s finished (success=%s, %d ms)", call.name, result.success, result.duration_ms
        )
        return result


def format_result(result: ToolExecutionResult) -> str:
    """Text sent back to the model for a tool result."""
    if result.success:
        return result.output or _NO_OUTPUT
    return result.error or result.output or "Tool execution failed"
