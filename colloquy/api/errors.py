"""Error taxonomy for the orchestration core.

Only contract violations are meant to escape to callers. Everything else is
either retried (TransportError), surfaced as a turn failure (UpstreamError),
skipped (ProtocolParseError), or converted into data (ToolArgumentParseError,
RoundLimitExceeded, CompactionFailure).
"""

from __future__ import annotations


class ColloquyError(Exception):
    """Base class for all colloquy errors."""


class TransportError(ColloquyError):
    """Connect, timeout or abort failure talking to the upstream. Retryable."""


class UpstreamError(ColloquyError):
    """Non-2xx response or API-level error event from the upstream."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProtocolParseError(ColloquyError):
    """A single stream chunk could not be decoded."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class ToolArgumentParseError(ColloquyError):
    """Accumulated tool-call argument text is not a JSON object."""

    def __init__(self, tool_name: str, raw_arguments: str, reason: str) -> None:
        super().__init__(f"Invalid arguments for {tool_name}: {reason}")
        self.tool_name = tool_name
        self.raw_arguments = raw_arguments


class RoundLimitExceeded(ColloquyError):
    """The tool-call round cap was reached. A designed termination."""

    def __init__(self, rounds: int) -> None:
        super().__init__(f"Reached the maximum of {rounds} tool call rounds")
        self.rounds = rounds


class CompactionFailure(ColloquyError):
    """The summarization collaborator failed; history stays uncompacted."""


class ContractViolation(ColloquyError):
    """A session or turn invariant was violated by the caller."""


class TurnInProgressError(ContractViolation):
    """A message was submitted while another turn is still active."""
