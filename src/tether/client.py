"""Minimal MCP client used by the ``client`` command.

Just enough JSON-RPC to run the ``initialize`` handshake and list what a
remote server offers. Results are returned as plain dicts.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from tether.config import VERSION
from tether.transport.base import Transport

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"


class RemoteError(Exception):
    """JSON-RPC error response from the remote server."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.message = message
        self.data = data


class RemoteClient:
    """Request/response correlation over a started transport.

    Installs its own hooks on the transport. Notifications and unsolicited
    messages from the server are logged.
    """

    def __init__(self, transport: Transport, client_name: str = "tether-client"):
        self.transport = transport
        self.client_name = client_name
        self.server_info: dict[str, Any] | None = None
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}

        transport.on_message = self._handle_message
        transport.on_error = self._handle_error
        transport.on_close = self._handle_close

    # ================================
    # Send requests to server
    # ================================

    async def send_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        """Send a request and wait for its result.

        Raises:
            RemoteError: The server answered with an error
            TimeoutError: If server doesn't respond within timeout
            ConnectionError: The transport closed before a response
        """
        request_id = str(uuid.uuid4())
        request: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            request["params"] = params

        future: asyncio.Future[dict[str, Any]] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[request_id] = future

        try:
            await self.transport.send(request)
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(request_id, None)

    async def send_notification(
        self, method: str, params: dict[str, Any] | None = None
    ) -> None:
        notification: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            notification["params"] = params
        await self.transport.send(notification)

    async def initialize(self) -> dict[str, Any]:
        result = await self.send_request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": self.client_name, "version": VERSION},
            },
        )
        self.server_info = result.get("serverInfo")
        await self.send_notification("notifications/initialized")
        return result

    async def list_tools(self) -> dict[str, Any]:
        return await self.send_request("tools/list")

    async def list_resources(self) -> dict[str, Any]:
        return await self.send_request("resources/list")

    # ================================
    # Transport hooks
    # ================================

    async def _handle_message(self, message: dict[str, Any]) -> None:
        if "method" in message:
            logger.info(f"Received {message['method']} from server")
            return

        request_id = message.get("id")
        future = self._pending.get(request_id) if isinstance(request_id, str) else None
        if future is None or future.done():
            logger.warning(f"No pending request {request_id}")
            return

        error = message.get("error")
        if error is not None:
            future.set_exception(
                RemoteError(
                    error.get("code", -32603),
                    error.get("message", "Unknown error"),
                    error.get("data"),
                )
            )
        else:
            future.set_result(message.get("result") or {})

    async def _handle_error(self, error: Exception) -> None:
        logger.error(f"Transport error: {error}")

    async def _handle_close(self) -> None:
        logger.info("Connection closed.")
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionError("Connection closed"))
