"""Shared fixtures: settings, a scripted fake transport and a tool dispatcher."""

import copy
import json
from typing import Any

import pytest

from colloquy.api.tools import ToolDispatcher
from colloquy.config import ModelConfig, Settings

# ---------------------------------------------------------------------------
# Scripted transport
# ---------------------------------------------------------------------------


class ScriptedTransport:
    """Stands in for StreamingTransport.

    Each stream() call pops the next script: a list of payloads (dicts are
    JSON-encoded, strings are passed through) or an exception to raise
    before any payload. Request bodies are recorded in ``calls``.
    """

    def __init__(self, scripts: list[Any], model: ModelConfig | None = None) -> None:
        self.scripts = list(scripts)
        self.model = model or ModelConfig(model_id="test-model", api_key="sk-test")
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.cancel_count = 0
        self.started = False
        self.closed = False
        self.on_payload = None  # optional callback(index) after each yield

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    def cancel(self) -> None:
        self.cancel_count += 1

    async def stream(self, endpoint: str, body: dict[str, Any]):
        self.calls.append((endpoint, copy.deepcopy(body)))
        if not self.scripts:
            raise AssertionError(f"Unexpected stream call #{len(self.calls)}")
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        for i, payload in enumerate(script):
            yield payload if isinstance(payload, str) else json.dumps(payload)
            if self.on_payload:
                self.on_payload(i)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        api_key="sk-test",
        model="test-model",
        retry_backoff=0.0,
    )


@pytest.fixture
def model_config() -> ModelConfig:
    return ModelConfig(model_id="test-model", api_key="sk-test")


@pytest.fixture
def dispatcher() -> ToolDispatcher:
    """Dispatcher with a list_dir tool returning a fixed listing."""
    d = ToolDispatcher()

    async def list_dir(path: str = ".") -> str:
        return "a.txt\nb.txt"

    d.register(
        "list_dir",
        list_dir,
        {
            "description": "List files in a directory",
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
    )
    return d
