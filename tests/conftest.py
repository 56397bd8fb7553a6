from typing import Any

import pytest

from tether.transport.base import Transport


class FakeTransport(Transport):
    """In-memory transport: records sends, replays received messages."""

    def __init__(self, fail_send: Exception | None = None):
        super().__init__()
        self.sent: list[dict[str, Any]] = []
        self.fail_send = fail_send
        self.started = False
        self.close_calls = 0
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def start(self) -> None:
        self.started = True
        self._open = True

    async def send(self, message: dict[str, Any]) -> None:
        if self.fail_send is not None:
            raise self.fail_send
        if not self._open:
            raise ConnectionError("closed")
        self.sent.append(message)

    async def close(self) -> None:
        self.close_calls += 1
        self._open = False
        await self._emit_close()

    async def receive(self, message: dict[str, Any]) -> None:
        await self._emit_message(message)

    async def remote_close(self) -> None:
        self._open = False
        await self._emit_close()


@pytest.fixture
def fake_transport_class():
    return FakeTransport
