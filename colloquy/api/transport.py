"""Streaming transport client over httpx.

Opens one streaming POST per call and yields the raw SSE ``data:``
payloads as a lazy, single-pass sequence. A stream cannot be resumed
mid-way; retries reissue the whole request and only happen before the
first payload was yielded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable
from typing import Any, TypeVar

import httpx

from colloquy.api.errors import TransportError, UpstreamError
from colloquy.config import ModelConfig, Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Anthropic API version header
_API_VERSION = "2023-06-01"

DONE_SENTINEL = "[DONE]"

# Rate limit / overloaded: retried once honoring retry-after
_RETRY_STATUSES = frozenset({429, 529})
_MAX_RETRY_AFTER = 30.0


def build_headers(model: ModelConfig) -> dict[str, str]:
    """Auth and content headers for the declared protocol."""
    headers: dict[str, str] = {"content-type": "application/json"}
    api_key = model.api_key

    if not api_key:
        logger.warning("No API key configured for model %s -- calls will likely fail", model.model_id)
        if model.protocol == "anthropic":
            headers["anthropic-version"] = _API_VERSION
        return headers

    if model.protocol == "anthropic":
        headers["anthropic-version"] = _API_VERSION
        if "sk-ant-oat" in api_key:
            # OAuth tokens use Bearer plus the required beta headers
            headers["authorization"] = f"Bearer {api_key}"
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
        else:
            headers["x-api-key"] = api_key
    else:
        headers["authorization"] = f"Bearer {api_key}"
    return headers


async def _next_line(lines: AsyncIterator[str]) -> str | None:
    try:
        return await anext(lines)
    except StopAsyncIteration:
        return None


class StreamingTransport:
    """Issues streaming calls against one model endpoint.

    An injected http client must already carry the base URL; the
    protocol auth headers are added to each request it sends.

    cancel() is cooperative and idempotent: it wakes any pending read,
    stops further payload emission and closes the response. Calling it
    after a stream finished naturally is a no-op.
    """

    def __init__(
        self,
        model: ModelConfig,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._model = model
        self._settings = settings
        self._http = http
        self._owns_http = http is None
        # Injected clients get auth headers per request
        self._request_headers = build_headers(model) if http is not None else None
        self._cancel_event = asyncio.Event()
        self._active = False

    @property
    def model(self) -> ModelConfig:
        return self._model

    @property
    def active(self) -> bool:
        """True while a stream is open."""
        return self._active

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=self._model.base_url,
            headers=build_headers(self._model),
            timeout=timeout,
            limits=limits,
        )
        self._owns_http = True
        logger.info(
            "httpx client initialized (protocol: %s, base_url: %s)",
            self._model.protocol,
            self._model.base_url,
        )

    async def close(self) -> None:
        """Clean up httpx client."""
        self.cancel()
        if self._http and self._owns_http:
            await self._http.aclose()
        self._http = None

    def cancel(self) -> None:
        self._cancel_event.set()

    async def _until_cancelled(self, aw: Awaitable[T]) -> tuple[bool, T | None]:
        """Await aw unless cancel() fires first. Returns (cancelled, result)."""
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task in done:
            return False, task.result()
        task.cancel()
        return True, None

    async def _sleep(self, delay: float) -> bool:
        """Sleep for delay seconds. Returns True if cancelled meanwhile."""
        cancelled, _ = await self._until_cancelled(asyncio.sleep(delay))
        return cancelled

    async def stream(self, endpoint: str, body: dict[str, Any]) -> AsyncGenerator[str, None]:
        """Yield raw data payloads for one streaming call.

        Raises UpstreamError on non-2xx responses and TransportError on
        any httpx transport failure once retries are exhausted, or at once
        when the response body cannot be read or decoded.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        self._cancel_event = asyncio.Event()
        max_retries = self._settings.transport_max_retries
        attempt = 0
        rate_limit_retried = False
        received = False

        self._active = True
        try:
            while True:
                response: httpx.Response | None = None
                try:
                    request = self._http.build_request(
                        "POST", endpoint, json=body, headers=self._request_headers
                    )
                    cancelled, response = await self._until_cancelled(
                        self._http.send(request, stream=True)
                    )
                    if cancelled or response is None:
                        logger.debug("Stream cancelled before response headers")
                        return

                    if not response.is_success:
                        error_body = (await response.aread()).decode(errors="replace")[:500]
                        if response.status_code in _RETRY_STATUSES and not rate_limit_retried:
                            rate_limit_retried = True
                            retry_after = _retry_after(response)
                            logger.warning(
                                "Upstream returned %d, retrying in %.1fs: %s",
                                response.status_code,
                                retry_after,
                                error_body,
                            )
                            if await self._sleep(retry_after):
                                return
                            continue
                        raise UpstreamError(
                            f"Upstream error ({response.status_code}): {error_body}",
                            status_code=response.status_code,
                            body=error_body,
                        )

                    lines = response.aiter_lines()
                    while True:
                        cancelled, line = await self._until_cancelled(_next_line(lines))
                        if cancelled:
                            logger.debug("Stream cancelled mid-flight")
                            return
                        if line is None:
                            return
                        # Only data: lines carry payloads; event: lines are redundant
                        if not line.startswith("data:"):
                            continue
                        payload = line[5:].strip()
                        if not payload:
                            continue
                        if payload == DONE_SENTINEL:
                            return
                        received = True
                        yield payload
                        if self._cancel_event.is_set():
                            return

                except (httpx.DecodingError, httpx.StreamError) as e:
                    if self._cancel_event.is_set():
                        return
                    raise TransportError(f"Unreadable response body: {e}") from e
                except httpx.TransportError as e:
                    if self._cancel_event.is_set():
                        return
                    if received:
                        raise TransportError(f"Stream interrupted: {e}") from e
                    if attempt >= max_retries:
                        raise TransportError(
                            f"Transport failed after {attempt + 1} attempts: {e}"
                        ) from e
                    delay = self._settings.retry_backoff * (2 ** attempt)
                    attempt += 1
                    logger.warning(
                        "Transport error (%s), retry %d/%d in %.1fs",
                        e, attempt, max_retries, delay,
                    )
                    if await self._sleep(delay):
                        return
                finally:
                    if response is not None:
                        await response.aclose()
        finally:
            self._active = False


def _retry_after(response: httpx.Response) -> float:
    try:
        value = float(response.headers.get("retry-after", "1"))
    except ValueError:
        value = 1.0
    return min(max(value, 0.0), _MAX_RETRY_AFTER)
