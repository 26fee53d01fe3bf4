"""Orchestrator -- the per-turn state machine.

Drives one turn from the user message to a terminal state:

    Idle -> Sending -> Streaming -> {ToolExecuting -> Streaming}*
         -> AwaitingUser -> Streaming -> ... -> Done | Aborted | Failed
                                                | RoundLimitReached

send_message() is an async generator of TurnEvents. An ask_user tool
call suspends the generator on an AskUserRequest future right after the
``ask_user`` event is yielded; submit_ask_user_answer() resolves it and
the next iteration resumes streaming.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from contextlib import aclosing

from colloquy.api.errors import (
    ColloquyError,
    CompactionFailure,
    ProtocolParseError,
    RoundLimitExceeded,
    TurnInProgressError,
)
from colloquy.api.models import (
    TRANSCRIPT_SEPARATOR,
    AskUserQA,
    AskUserRequest,
    ContentDelta,
    Message,
    PendingOffsets,
    ReasoningDelta,
    Role,
    StreamState,
    ToolCall,
    ToolInterrupt,
    ToolSpec,
    TurnEvent,
    TurnState,
    Usage,
    UsageReport,
)
from colloquy.api.protocols import WireAdapter
from colloquy.api.session import Session, Summarize
from colloquy.api.tools import (
    ASK_USER_SPEC,
    DECLINED_ANSWER,
    ToolCallHandler,
    ToolExecutor,
    format_result,
)
from colloquy.api.transport import StreamingTransport
from colloquy.config import ModelConfig, Settings

logger = logging.getLogger(__name__)

_TERMINAL_STATES = frozenset({
    TurnState.DONE,
    TurnState.ABORTED,
    TurnState.FAILED,
    TurnState.ROUND_LIMIT_REACHED,
})


class Orchestrator:
    """Runs turns against one session, one model and one tool executor.

    All collaborators are injected. At most one turn is active at a time;
    a second send_message() is rejected or queued per settings.busy_policy.
    """

    def __init__(
        self,
        transport: StreamingTransport,
        adapter: WireAdapter,
        session: Session,
        executor: ToolExecutor,
        settings: Settings,
        summarizer: Summarize | None = None,
        tool_handler: ToolCallHandler | None = None,
        model: ModelConfig | None = None,
    ) -> None:
        self._transport = transport
        self._adapter = adapter
        self._session = session
        self._executor = executor
        self._settings = settings
        self._summarize = summarizer
        self._handler = tool_handler or ToolCallHandler(executor)
        self._model = model or transport.model

        self._turn_lock = asyncio.Lock()
        self._state = TurnState.IDLE
        self._stop_requested = False
        self._pending: AskUserRequest | None = None
        self._pending_offsets: PendingOffsets | None = None
        self._rounds = 0
        self._transcript: list[str] = []
        self._current: Message | None = None
        self._answered: set[str] = set()
        self._reasoning: list[str] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._transport.start()

    async def close(self) -> None:
        self.stop()
        await self._transport.close()

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def session(self) -> Session:
        return self._session

    @property
    def pending_ask_user(self) -> AskUserRequest | None:
        return self._pending

    @property
    def pending_offsets(self) -> PendingOffsets | None:
        """Offsets recorded at the most recent ask_user suspension of this turn."""
        return self._pending_offsets

    @property
    def rounds(self) -> int:
        """Tool-call rounds completed in the current or last turn."""
        return self._rounds

    def get_usage(self) -> Usage:
        return self._session.get_usage()

    def submit_ask_user_answer(self, answer: str) -> bool:
        """Resolve the pending ask_user request. Empty answer declines.

        Returns False when nothing is pending or it was already resolved.
        """
        request = self._pending
        if request is None:
            logger.warning("No pending ask_user request -- answer ignored")
            return False
        return request.resolve(answer)

    def stop(self) -> None:
        """Abort the active turn. Safe to call repeatedly or when idle."""
        if not self._turn_lock.locked() or self._state in _TERMINAL_STATES:
            return
        if self._stop_requested:
            return
        self._stop_requested = True
        logger.info("Stop requested (state: %s)", self._state)
        self._transport.cancel()
        if self._pending is not None:
            self._pending.resolve("")

    async def send_message(self, text: str) -> AsyncGenerator[TurnEvent, None]:
        """Run one turn and yield its events, ending with a ``done`` event."""
        if self._turn_lock.locked() and self._settings.busy_policy == "reject":
            error = TurnInProgressError("A turn is already in progress")
            if self._settings.strict_contracts:
                raise error
            logger.warning("Rejected message: a turn is already in progress")
            yield TurnEvent(type="error", text=str(error), error=error)
            return

        async with self._turn_lock:
            try:
                async with aclosing(self._run_turn(text)) as events:
                    async for event in events:
                        yield event
            finally:
                if self._state not in _TERMINAL_STATES:
                    # Consumer abandoned the turn mid-flight
                    self._transport.cancel()
                    if self._current is not None:
                        self._abort(self._current, self._answered)
                    self._state = TurnState.ABORTED
                self._current = None
                self._pending = None

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def _run_turn(self, text: str) -> AsyncGenerator[TurnEvent, None]:
        self._stop_requested = False
        self._pending = None
        self._pending_offsets = None
        self._rounds = 0
        self._transcript = []
        self._current = None
        self._answered = set()
        self._reasoning = []
        self._state = TurnState.SENDING

        warning = await self._maybe_compact()
        if warning is not None:
            yield TurnEvent(type="warning", text=str(warning), error=warning)

        if not self._session.validate().valid:
            self._session.repair()

        tools = self._tool_specs()
        self._session.set_tools_estimate(
            self._session.estimator.estimate(json.dumps(self._adapter.encode_tools(tools))) if tools else 0
        )

        checkpoint = self._session.checkpoint()
        self._session.append(Message(role=Role.USER, content=text))
        cap = self._model.max_tool_call_rounds

        try:
            while True:
                if self._stop_requested:
                    self._state = TurnState.ABORTED
                    break
                message = Message(role=Role.ASSISTANT, streaming=True)
                self._session.append(message)
                self._current = message
                self._answered = set()
                stream = StreamState()

                async for event in self._stream_round(message, stream, tools):
                    yield event

                calls = stream.finalize()
                message.tool_calls = calls
                message.streaming = False
                if message.content:
                    self._transcript.append(message.content)
                if message.reasoning:
                    self._reasoning.append(message.reasoning)

                if self._stop_requested:
                    self._abort(message, self._answered)
                    break

                self._session.settle(message)
                if not calls:
                    self._state = TurnState.DONE
                    break

                async for event in self._run_tools(message, calls, self._answered):
                    yield event
                self._session.settle(message)

                if self._stop_requested:
                    self._abort(message, self._answered)
                    break

                self._rounds += 1
                if self._rounds >= cap:
                    logger.warning("Tool loop reached max_tool_call_rounds=%d", cap)
                    self._state = TurnState.ROUND_LIMIT_REACHED
                    break

        except Exception as e:
            if isinstance(e, ColloquyError):
                logger.error("Turn failed: %s", e)
            else:
                logger.exception("Unexpected error during turn")
            self._session.rollback(checkpoint)
            self._current = None
            self._state = TurnState.FAILED
            yield TurnEvent(type="error", text=str(e), error=e)
            yield TurnEvent(type="done", state=self._state, error=e)
            return

        error = RoundLimitExceeded(self._rounds) if self._state == TurnState.ROUND_LIMIT_REACHED else None
        yield TurnEvent(
            type="done",
            text=TRANSCRIPT_SEPARATOR.join(self._transcript),
            state=self._state,
            error=error,
        )

    async def _stream_round(
        self,
        message: Message,
        stream: StreamState,
        tools: list[ToolSpec],
    ) -> AsyncGenerator[TurnEvent, None]:
        """One upstream call, applying deltas to the streaming message."""
        self._state = TurnState.SENDING
        body = self._adapter.to_wire(
            self._session.messages,
            tools or None,
            self._model,
            max_tokens=self._settings.max_tokens,
        )
        estimated = self._session.used_tokens

        async with aclosing(self._transport.stream(self._adapter.endpoint, body)) as payloads:
            async for payload in payloads:
                if self._stop_requested:
                    break
                self._state = TurnState.STREAMING
                try:
                    deltas = self._adapter.from_wire_chunk(payload)
                except ProtocolParseError as e:
                    logger.warning("Skipping malformed chunk: %s (%.200s)", e, e.raw)
                    continue

                for delta in deltas:
                    stream.apply(delta)
                    if isinstance(delta, ContentDelta):
                        message.content += delta.text
                        yield TurnEvent(type="content_delta", text=delta.text)
                    elif isinstance(delta, ReasoningDelta):
                        message.reasoning += delta.text
                        yield TurnEvent(type="reasoning_delta", text=delta.text)
                    elif isinstance(delta, UsageReport):
                        self._session.estimator.calibrate(estimated, delta.prompt_tokens)

    async def _run_tools(
        self,
        message: Message,
        calls: list[ToolCall],
        answered: set[str],
    ) -> AsyncGenerator[TurnEvent, None]:
        """Execute each call in order, appending one tool result per call."""
        self._state = TurnState.TOOL_EXECUTING
        for call in calls:
            if self._stop_requested:
                return
            yield TurnEvent(
                type="tool_executing",
                tool_name=call.name,
                tool_id=call.id,
                tool_input=call.arguments,
            )
            outcome = await self._handler.handle(call)

            if isinstance(outcome, ToolInterrupt):
                request = AskUserRequest(
                    question=outcome.question,
                    options=outcome.options,
                    tool_call_id=call.id,
                    answer=asyncio.get_running_loop().create_future(),
                )
                offsets = PendingOffsets(
                    content_offset=len(TRANSCRIPT_SEPARATOR.join(self._transcript)),
                    reasoning_offset=len(TRANSCRIPT_SEPARATOR.join(self._reasoning)),
                )
                self._pending = request
                self._pending_offsets = offsets
                self._state = TurnState.AWAITING_USER
                logger.info("Awaiting user answer for %s: %s", call.id, outcome.question)
                yield TurnEvent(
                    type="ask_user",
                    tool_name=call.name,
                    tool_id=call.id,
                    question=outcome.question,
                    options=list(outcome.options),
                    offsets=offsets,
                )

                answer = await request.answer
                self._pending = None
                message.ask_user_qa = AskUserQA(outcome.question, list(outcome.options), answer)
                result_text = answer or DECLINED_ANSWER
                self._session.append(self._adapter.tool_result(call.id, result_text))
                answered.add(call.id)
                self._state = TurnState.TOOL_EXECUTING
                yield TurnEvent(type="tool_result", tool_name=call.name, tool_id=call.id, text=result_text)
                continue

            result_text = format_result(outcome)
            self._session.append(
                self._adapter.tool_result(call.id, result_text, is_error=not outcome.success)
            )
            answered.add(call.id)
            yield TurnEvent(
                type="tool_result",
                tool_name=call.name,
                tool_id=call.id,
                text=result_text,
                success=outcome.success,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _maybe_compact(self) -> CompactionFailure | None:
        if self._summarize is None or not self._session.should_compact():
            return None
        try:
            await self._session.compact(self._summarize)
        except CompactionFailure as e:
            logger.warning("Compaction failed, continuing uncompacted: %s", e)
            return e
        return None

    def _tool_specs(self) -> list[ToolSpec]:
        if not self._model.supports_tools:
            return []
        return [*self._executor.list_tools_for_model(self._model.protocol), ASK_USER_SPEC]

    def _abort(self, message: Message, answered: set[str]) -> None:
        """Freeze the message, dropping calls that never got a result."""
        dropped = [c.id for c in message.tool_calls if c.id not in answered]
        if dropped:
            logger.info("Dropping unanswered tool calls on abort: %s", dropped)
        message.tool_calls = [c for c in message.tool_calls if c.id in answered]
        message.streaming = False
        self._session.settle(message)
        self._state = TurnState.ABORTED

