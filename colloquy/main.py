"""Component wiring.

Builds the orchestration core from Settings in dependency order:
  Settings -> ModelConfig -> Transport + Adapter -> Session -> Summarizer -> Orchestrator

Nothing is registered globally; callers own the returned Orchestrator
and must await start() before the first turn and close() when done.
"""

from __future__ import annotations

import logging

import httpx

from colloquy.api.compaction import ModelSummarizer
from colloquy.api.orchestrator import Orchestrator
from colloquy.api.protocols import get_adapter
from colloquy.api.session import Session, Summarize
from colloquy.api.tools import ToolExecutor
from colloquy.api.transport import StreamingTransport
from colloquy.config import Settings

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def create_orchestrator(
    settings: Settings,
    executor: ToolExecutor,
    summarizer: Summarize | None = None,
    http: httpx.AsyncClient | None = None,
) -> Orchestrator:
    """Initialize all components for one conversation.

    summarizer defaults to a ModelSummarizer sharing the orchestrator's
    transport and adapter. http lets callers supply a preconfigured
    client (tests pass one backed by httpx.MockTransport).
    """
    model = settings.to_model_config()
    transport = StreamingTransport(model, settings, http=http)
    adapter = get_adapter(model.protocol)

    session = Session(
        context_window=model.context_window,
        compaction_threshold=settings.compaction_threshold,
        keep_recent=settings.compaction_keep_recent,
        near_limit_threshold=settings.near_limit_threshold,
        full_threshold=settings.full_threshold,
    )
    session.set_system_prompt(settings.system_prompt)

    if summarizer is None:
        summarizer = ModelSummarizer(transport, adapter, settings, model).summarize

    logger.info(
        "Orchestrator ready: model %s via %s (context window %d, max tool rounds %d)",
        model.model_id,
        model.protocol,
        model.context_window,
        model.max_tool_call_rounds,
    )
    if not model.supports_tools:
        logger.info("Tools disabled for model %s", model.model_id)

    return Orchestrator(
        transport=transport,
        adapter=adapter,
        session=session,
        executor=executor,
        settings=settings,
        summarizer=summarizer,
        model=model,
    )
