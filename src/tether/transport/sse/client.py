"""Client side of the MCP HTTP+SSE transport (protocol revision 2024-11-05).

The server is reached with a long-lived ``GET`` returning an event stream.
Its first ``endpoint`` event names the URL that client messages are
``POST``ed to; every following ``message`` event carries one server message.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Protocol
from urllib.parse import urljoin, urlparse

import httpx
from httpx_sse import ServerSentEvent, SSEError, aconnect_sse

from tether.auth.client.models.errors import UnauthorizedError
from tether.auth.client.primitives.discovery import extract_resource_metadata_url
from tether.transport.base import Transport

logger = logging.getLogger(__name__)

ENDPOINT_TIMEOUT = 30.0


class AuthProvider(Protocol):
    """What the transport needs from the OAuth layer."""

    def authorization_headers(self) -> dict[str, str]: ...

    async def handle_unauthorized(self) -> bool: ...

    def set_resource_metadata_url(self, resource_metadata_url: str | None) -> None: ...


class SseClientTransport(Transport):
    """Connects to a remote MCP server over HTTP+SSE.

    A transport is started once. ``start()`` returns after the server has
    announced its message endpoint; ``UnauthorizedError`` means the stream
    was refused with 401 and the caller should authenticate and build a new
    transport.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        auth: AuthProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
        endpoint_timeout: float = ENDPOINT_TIMEOUT,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the SSE client transport.

        Args:
            url: SSE endpoint of the remote server
            headers: Extra headers sent with every request
            auth: Supplies bearer tokens and refreshes them on 401
            http_client: Shared client to use instead of creating one
            endpoint_timeout: Seconds to wait for the ``endpoint`` event
            timeout: Connect/write timeout for requests
        """
        super().__init__()
        self.url = url
        self.headers = dict(headers or {})
        self.auth = auth
        self.endpoint_timeout = endpoint_timeout
        self.timeout = timeout

        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

        self._endpoint: str | None = None
        self._stack: AsyncExitStack | None = None
        self._reader_task: asyncio.Task | None = None
        self._started = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._endpoint is not None and not self._closed

    @property
    def endpoint(self) -> str | None:
        """Message endpoint announced by the server."""
        return self._endpoint

    def _request_headers(self) -> dict[str, str]:
        headers = dict(self.headers)
        if self.auth is not None:
            headers.update(self.auth.authorization_headers())
        return headers

    def _note_challenge(self, response: httpx.Response) -> str | None:
        """Pass the 401 challenge's resource metadata URL to the auth provider."""
        resource_metadata_url = extract_resource_metadata_url(
            response.headers.get("WWW-Authenticate")
        )
        if self.auth is not None:
            self.auth.set_resource_metadata_url(resource_metadata_url)
        return resource_metadata_url

    def _unauthorized(self, response: httpx.Response, message: str) -> UnauthorizedError:
        return UnauthorizedError(message, self._note_challenge(response))

    async def start(self) -> None:
        """Open the event stream and wait for the message endpoint.

        Raises:
            UnauthorizedError: The server answered 401
            ConnectionError: Any other failure to establish the stream
        """
        if self._started:
            raise RuntimeError("SseClientTransport can only be started once")
        self._started = True

        stack = AsyncExitStack()
        try:
            event_source = await stack.enter_async_context(
                aconnect_sse(
                    self._http_client,
                    "GET",
                    self.url,
                    headers=self._request_headers(),
                    timeout=httpx.Timeout(self.timeout, read=None),
                )
            )
            response = event_source.response

            if response.status_code == 401:
                raise self._unauthorized(response, f"{self.url} requires authorization")
            if response.status_code != 200:
                raise ConnectionError(
                    f"SSE connection to {self.url} failed with HTTP "
                    f"{response.status_code}"
                )

            events = event_source.aiter_sse()
            self._endpoint = await asyncio.wait_for(
                self._wait_for_endpoint(events), self.endpoint_timeout
            )

        except asyncio.TimeoutError:
            await self._abort_start(stack)
            raise ConnectionError(
                f"{self.url} sent no endpoint event within {self.endpoint_timeout}s"
            ) from None
        except (httpx.HTTPError, SSEError) as e:
            await self._abort_start(stack)
            raise ConnectionError(f"SSE connection to {self.url} failed: {e}") from e
        except BaseException:
            await self._abort_start(stack)
            raise

        self._stack = stack
        logger.debug(f"Message endpoint: {self._endpoint}")
        self._reader_task = asyncio.create_task(
            self._read_loop(events), name="sse-reader"
        )

    async def _abort_start(self, stack: AsyncExitStack) -> None:
        self._closed = True
        await stack.aclose()
        await self._close_client()

    async def _wait_for_endpoint(self, events: AsyncIterator[ServerSentEvent]) -> str:
        async for sse_event in events:
            if sse_event.event != "endpoint":
                logger.debug(f"Ignoring '{sse_event.event}' event before endpoint")
                continue

            endpoint = urljoin(self.url, sse_event.data.strip())
            connection, announced = urlparse(self.url), urlparse(endpoint)
            if (connection.scheme, connection.netloc) != (
                announced.scheme,
                announced.netloc,
            ):
                raise ConnectionError(
                    f"Endpoint origin does not match connection origin: {endpoint}"
                )
            return endpoint

        raise ConnectionError(f"{self.url} closed the stream before the endpoint event")

    async def _read_loop(self, events: AsyncIterator[ServerSentEvent]) -> None:
        try:
            async for sse_event in events:
                if sse_event.event != "message" or not sse_event.data:
                    continue

                try:
                    message = json.loads(sse_event.data)
                except json.JSONDecodeError as e:
                    await self._emit_error(ValueError(f"Invalid JSON in SSE message: {e}"))
                    continue
                if not isinstance(message, dict):
                    await self._emit_error(
                        ValueError(f"Unexpected SSE message: {sse_event.data}")
                    )
                    continue

                await self._emit_message(message)

            logger.info(f"SSE stream from {self.url} ended")

        except (httpx.HTTPError, httpx.StreamError, SSEError) as e:
            if not self._closed:
                await self._emit_error(
                    ConnectionError(f"SSE stream from {self.url} failed: {e}")
                )

        self._closed = True
        await self._release()
        await self._emit_close()

    async def _post(self, message: dict[str, Any]) -> httpx.Response:
        headers = self._request_headers()
        headers["Content-Type"] = "application/json"
        try:
            return await self._http_client.post(
                self._endpoint, content=json.dumps(message), headers=headers
            )
        except httpx.HTTPError as e:
            raise ConnectionError(f"Error POSTing to endpoint: {e}") from e

    async def send(self, message: dict[str, Any]) -> None:
        """POST a message to the endpoint.

        A 401 triggers one refresh through the auth provider and one retry.

        Raises:
            UnauthorizedError: Still 401 after the retry, or no retry possible
            ConnectionError: Transport closed or the POST failed
        """
        if self._closed or self._endpoint is None:
            raise ConnectionError("SSE transport is not connected")

        response = await self._post(message)

        if response.status_code == 401 and self.auth is not None:
            self._note_challenge(response)
            if await self.auth.handle_unauthorized():
                response = await self._post(message)

        if response.status_code == 401:
            raise self._unauthorized(response, f"{self.url} rejected our credentials")
        if not response.is_success:
            raise ConnectionError(
                f"Error POSTing to endpoint (HTTP {response.status_code}): "
                f"{response.text}"
            )

    async def close(self) -> None:
        if self._closed:
            await self._emit_close()
            return
        self._closed = True

        task = self._reader_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self._release()
        await self._emit_close()

    async def _release(self) -> None:
        stack, self._stack = self._stack, None
        if stack is not None:
            await stack.aclose()
        await self._close_client()

    async def _close_client(self) -> None:
        if self._owns_client and not self._http_client.is_closed:
            await self._http_client.aclose()
