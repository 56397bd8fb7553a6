"""Bidirectional relay between two transports."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from tether.transport.base import Transport

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[str, Exception], None]

LOCAL = "local"
REMOTE = "remote"


def message_identifier(message: dict[str, Any]) -> str | int | None:
    """Method name for requests and notifications, id for responses."""
    method = message.get("method")
    if method is not None:
        return str(method)

    message_id = message.get("id")
    if isinstance(message_id, (str, int)) and not isinstance(message_id, bool):
        return message_id
    return None


def _log_error(side: str, error: Exception) -> None:
    if side == LOCAL:
        logger.error(f"Error from local client: {error}")
    else:
        logger.error(f"Error from remote server: {error}")


class TransportProxy:
    """Relays messages between a local (near) and a remote (far) transport.

    A close on either side closes the other exactly once. Errors, including
    failed forwards, are only reported: a single failed send does not mean
    the transport is gone, and the transport itself reports closure when it
    is.

    The proxy installs its hooks on construction; start the transports
    afterwards.
    """

    def __init__(
        self,
        near: Transport,
        far: Transport,
        on_error: ErrorCallback | None = None,
    ):
        self.near = near
        self.far = far
        self.on_error = on_error or _log_error

        self._near_closed = False
        self._far_closed = False
        self._near_close_requested = False
        self._far_close_requested = False
        self._all_closed = asyncio.Event()

        near.on_message = self._forward_to_far
        far.on_message = self._forward_to_near
        near.on_close = self._on_near_close
        far.on_close = self._on_far_close
        near.on_error = self._on_near_error
        far.on_error = self._on_far_error

    @property
    def closed(self) -> bool:
        return self._all_closed.is_set()

    async def wait_closed(self) -> None:
        """Wait until both transports have closed."""
        await self._all_closed.wait()

    async def close(self) -> None:
        """Close both sides; each transport sees at most one close call."""
        await self._close_near()
        await self._close_far()

    async def _forward_to_far(self, message: dict[str, Any]) -> None:
        logger.info(f"[Local→Remote] {message_identifier(message)}")
        try:
            await self.far.send(message)
        except Exception as e:
            self.on_error(REMOTE, e)

    async def _forward_to_near(self, message: dict[str, Any]) -> None:
        logger.info(f"[Remote→Local] {message_identifier(message)}")
        try:
            await self.near.send(message)
        except Exception as e:
            self.on_error(LOCAL, e)

    async def _on_near_close(self) -> None:
        self._near_closed = True
        self._near_close_requested = True
        if not self._far_closed:
            await self._close_far()
        self._check_all_closed()

    async def _on_far_close(self) -> None:
        self._far_closed = True
        self._far_close_requested = True
        if not self._near_closed:
            await self._close_near()
        self._check_all_closed()

    async def _close_near(self) -> None:
        if self._near_close_requested:
            return
        self._near_close_requested = True
        try:
            await self.near.close()
        except Exception as e:
            self.on_error(LOCAL, e)
        self._near_closed = True
        self._check_all_closed()

    async def _close_far(self) -> None:
        if self._far_close_requested:
            return
        self._far_close_requested = True
        try:
            await self.far.close()
        except Exception as e:
            self.on_error(REMOTE, e)
        self._far_closed = True
        self._check_all_closed()

    async def _on_near_error(self, error: Exception) -> None:
        self.on_error(LOCAL, error)

    async def _on_far_error(self, error: Exception) -> None:
        self.on_error(REMOTE, error)

    def _check_all_closed(self) -> None:
        if self._near_closed and self._far_closed:
            self._all_closed.set()
