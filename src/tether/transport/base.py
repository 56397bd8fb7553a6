import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Any, Self

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
CloseHandler = Callable[[], Awaitable[None]]
ErrorHandler = Callable[[Exception], Awaitable[None]]


class Transport(ABC):
    """Abstract transport for MCP message delivery.

    Handles the mechanics of sending and receiving messages without
    knowledge of protocol semantics or message correlation.

    Incoming traffic is delivered through hooks the owner installs before
    calling ``start()``:

    - ``on_message``: each parsed message
    - ``on_error``: a failure worth reporting; never implies closure
    - ``on_close``: the transport is gone; fires at most once
    """

    def __init__(self) -> None:
        self.on_message: MessageHandler | None = None
        self.on_close: CloseHandler | None = None
        self.on_error: ErrorHandler | None = None
        self._close_emitted = False

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True if the transport is open and ready for message processing."""

    @abstractmethod
    async def start(self) -> None:
        """Open the transport and begin delivering messages to ``on_message``.

        Raises:
            ConnectionError: If the connection cannot be established
        """

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Send a message.

        Raises:
            ConnectionError: If transport is closed or the write failed
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the transport. Idempotent; fires ``on_close`` once."""

    async def _emit_message(self, message: dict[str, Any]) -> None:
        if self.on_message is None:
            logger.debug(f"{type(self).__name__} dropped a message: no handler")
            return
        try:
            await self.on_message(message)
        except Exception as e:
            await self._emit_error(e)

    async def _emit_error(self, error: Exception) -> None:
        if self.on_error is None:
            logger.error(f"{type(self).__name__} error: {error}")
            return
        await self.on_error(error)

    async def _emit_close(self) -> None:
        if self._close_emitted:
            return
        self._close_emitted = True
        if self.on_close is not None:
            await self.on_close()

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
        return None
