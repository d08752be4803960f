"""Responses API HTTP client with SSE streaming."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Iterable, Optional

import httpx

from .chat.request_builder import build_headers
from .chat.streaming.cancellation import CancellationToken
from .chat.streaming.types import SseEvent
from .config import ServiceEndpoint, Settings
from .errors import NetworkError, ProtocolError

logger = logging.getLogger(__name__)


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None

    def asdict(self) -> SseEvent:
        payload: SseEvent = {"event": self.event, "data": self.data}
        if self.event_id is not None:
            payload["id"] = self.event_id
        return payload


class ResponsesClient:
    """Client responsible for sending requests to a ``/responses`` endpoint."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        service: ServiceEndpoint | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings
        self._service = service or settings.resolve_service()
        self._http_client = http_client

    @property
    def service(self) -> ServiceEndpoint:
        return self._service

    def _client_key(self) -> tuple[str, float]:
        return (self._service.base_url, float(self._settings.request_timeout))

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=timeout,
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    async def stream_response(
        self,
        payload: dict[str, Any],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncGenerator[ServerSentEvent, None]:
        """Stream SSE events for *payload* until the body ends or is cancelled.

        Cancellation ends the generator quietly and closes the connection; a
        body that stays silent for ``stream_idle_timeout`` raises
        ``ProtocolError``.
        """

        headers = build_headers(self._service, stream=True)
        client = await self._get_http_client()
        try:
            async with client.stream(
                "POST",
                self._service.responses_url,
                headers=headers,
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    detail = self._extract_error_detail(body)
                    raise NetworkError(response.status_code, detail)

                lines = self._iter_lines(response, cancel_token)
                async for event in self._iter_events(lines):
                    if cancel_token is not None and cancel_token.cancelled:
                        logger.debug("Dropping buffered events after cancellation")
                        break
                    yield event
        except httpx.HTTPError as exc:
            raise NetworkError(httpx.codes.BAD_GATEWAY, str(exc)) from exc

    async def create_response(
        self,
        payload: dict[str, Any],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> dict[str, Any] | None:
        """Send a non-streaming request and return the decoded JSON body.

        Returns ``None`` when *cancel_token* fires first; the in-flight request
        is cancelled and its connection released.
        """

        headers = build_headers(self._service, stream=False)
        client = await self._get_http_client()
        request = asyncio.ensure_future(
            client.post(
                self._service.responses_url,
                headers=headers,
                json=payload,
            )
        )
        if cancel_token is not None:
            cancel_waiter = asyncio.ensure_future(cancel_token.wait())
            try:
                await asyncio.wait(
                    {request, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
            except asyncio.CancelledError:
                request.cancel()
                raise
            finally:
                cancel_waiter.cancel()
            if not request.done():
                request.cancel()
                with contextlib.suppress(asyncio.CancelledError, httpx.HTTPError):
                    await request
                logger.debug("Request aborted by cancellation")
                return None

        try:
            response = await request
        except httpx.HTTPError as exc:
            raise NetworkError(httpx.codes.BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            detail = self._extract_error_detail(response.content)
            raise NetworkError(response.status_code, detail)

        try:
            body = response.json()
        except ValueError as exc:
            raise ProtocolError(f"Response body is not JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise ProtocolError("Response body is not a JSON object")
        return body

    async def aclose(self) -> None:
        await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                pass

    async def _iter_lines(
        self,
        response: httpx.Response,
        cancel_token: CancellationToken | None,
    ) -> AsyncGenerator[str, None]:
        idle_timeout = self._settings.stream_idle_timeout
        lines: AsyncIterator[str] = response.aiter_lines().__aiter__()
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                return
            next_line = asyncio.ensure_future(lines.__anext__())
            waiters: set[asyncio.Future[Any]] = {next_line}
            cancel_waiter: asyncio.Future[Any] | None = None
            if cancel_token is not None:
                cancel_waiter = asyncio.ensure_future(cancel_token.wait())
                waiters.add(cancel_waiter)
            try:
                done, _ = await asyncio.wait(
                    waiters,
                    timeout=idle_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                if cancel_waiter is not None:
                    cancel_waiter.cancel()

            if next_line not in done:
                next_line.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await next_line
                if cancel_token is not None and cancel_token.cancelled:
                    logger.debug("Stream read aborted by cancellation")
                    return
                raise ProtocolError(
                    f"Stream stalled: no data for {idle_timeout:g} seconds"
                )

            try:
                yield next_line.result()
            except StopAsyncIteration:
                return

    async def _iter_events(
        self, lines: AsyncIterator[str]
    ) -> AsyncGenerator[ServerSentEvent, None]:
        buffer: list[str] = []
        async for line in lines:
            if not line:
                if buffer:
                    yield self._parse_event(buffer)
                    buffer.clear()
                continue
            if line.startswith(":"):
                continue
            buffer.append(line)
        if buffer:
            yield self._parse_event(buffer)

    def _parse_event(self, lines: Iterable[str]) -> ServerSentEvent:
        event_name: Optional[str] = None
        event_id: Optional[str] = None
        data_lines: list[str] = []

        for line in lines:
            field, _, value = line.partition(":")
            value = value.lstrip(" ")
            if field == "event":
                event_name = value or None
            elif field == "data":
                data_lines.append(value)
            elif field == "id":
                event_id = value or None

        data = "\n".join(data_lines)
        return ServerSentEvent(
            data=data, event=event_name or "message", event_id=event_id
        )

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "The provider returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


__all__ = ["ResponsesClient", "ServerSentEvent"]
