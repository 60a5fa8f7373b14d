"""HTTP transport primitives shared by provider adapters."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Mapping
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import httpx

from chatbridge.errors import RequestCancelledError, TransportError

_T = TypeVar("_T")

logger = logging.getLogger(__name__)


def join_url(base: str, path: str) -> str:
    """Join a base URL and a path with exactly one slash. Absolute paths win."""
    if path.startswith("http"):
        return path
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


class CancellationToken:
    """Caller-owned switch that aborts in-flight network operations."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelledError("Request was cancelled")

    async def guard(self, awaitable: Awaitable[_T]) -> _T:
        """Await ``awaitable`` unless the token fires first.

        On cancellation the pending operation is cancelled and
        :class:`RequestCancelledError` is raised.
        """
        if self._event.is_set():
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            raise RequestCancelledError("Request was cancelled")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done() and not self._event.is_set():
                task.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise RequestCancelledError("Request was cancelled")


async def _maybe_guard(awaitable: Awaitable[_T], cancel: CancellationToken | None) -> _T:
    if cancel is None:
        return await awaitable
    return await cancel.guard(awaitable)


class HttpTransport:
    """Thin wrapper over :class:`httpx.AsyncClient`.

    Adapters receive the base URL per call, so the client carries no base URL of
    its own. Tests inject an ``httpx.AsyncClient`` built on ``httpx.MockTransport``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout_s: float = 60.0,
        provider: str = "http",
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._provider = provider

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def perform(
        self,
        url: str,
        *,
        method: str = "POST",
        headers: Mapping[str, str] | None = None,
        json: Any = None,
        cancel: CancellationToken | None = None,
        provider: str | None = None,
    ) -> httpx.Response:
        """Send one request and return the response with its body already read.

        ``provider`` names the vendor in errors; a shared transport falls back to its own label.
        """
        logger.debug("%s %s", method, url)
        try:
            return await _maybe_guard(
                self._client.request(method, url, headers=dict(headers or {}), json=json),
                cancel,
            )
        except httpx.HTTPError as exc:
            raise TransportError(provider or self._provider, f"request to {url} failed: {exc}") from exc

    @asynccontextmanager
    async def open_stream(
        self,
        url: str,
        *,
        method: str = "POST",
        headers: Mapping[str, str] | None = None,
        json: Any = None,
        cancel: CancellationToken | None = None,
        provider: str | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming request. The response is closed on every exit path."""
        logger.debug("%s %s (stream)", method, url)
        request = self._client.build_request(method, url, headers=dict(headers or {}), json=json)
        try:
            response = await _maybe_guard(self._client.send(request, stream=True), cancel)
        except httpx.HTTPError as exc:
            raise TransportError(provider or self._provider, f"request to {url} failed: {exc}") from exc
        try:
            yield response
        finally:
            await response.aclose()

    async def iter_bytes(
        self,
        response: httpx.Response,
        cancel: CancellationToken | None = None,
        provider: str | None = None,
    ) -> AsyncIterator[bytes]:
        """Yield decoded body chunks, checking the cancellation token around each read."""
        chunks = response.aiter_bytes()
        try:
            while True:
                try:
                    chunk = await _maybe_guard(chunks.__anext__(), cancel)
                except StopAsyncIteration:
                    return
                except httpx.HTTPError as exc:
                    raise TransportError(provider or self._provider, f"stream read failed: {exc}") from exc
                yield chunk
        finally:
            await chunks.aclose()
