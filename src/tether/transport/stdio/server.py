import asyncio
import contextlib
import logging
import sys
from typing import Any, TextIO

from tether.transport.base import Transport
from tether.transport.stdio.shared import parse_json_message, serialize_message

logger = logging.getLogger(__name__)

# Large tool results arrive as single lines
STDIN_BUFFER_LIMIT = 16 * 1024 * 1024


class StdioServerTransport(Transport):
    """Stdio transport facing the local MCP client that launched us.

    Reads newline-delimited JSON from stdin and writes one JSON object per
    line to stdout. End of input closes the transport.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        """Initialize stdio server transport.

        Args:
            reader: Stream to read instead of the process stdin
            stdout: Stream to write instead of the process stdout
        """
        super().__init__()
        self._stdin_reader = reader
        self._stdout = stdout
        self._reader_task: asyncio.Task | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._reader_task is not None and not self._closed

    async def _setup_stdin_reader(self) -> None:
        """Set up async stdin reader using protocol."""
        if self._stdin_reader is not None:
            return

        self._stdin_reader = asyncio.StreamReader(limit=STDIN_BUFFER_LIMIT)
        protocol = asyncio.StreamReaderProtocol(self._stdin_reader)
        await asyncio.get_running_loop().connect_read_pipe(lambda: protocol, sys.stdin)

    async def start(self) -> None:
        if self._reader_task is not None:
            return
        await self._setup_stdin_reader()
        self._reader_task = asyncio.create_task(
            self._read_loop(), name="stdio-reader"
        )

    async def _read_loop(self) -> None:
        try:
            while True:
                line_bytes = await self._stdin_reader.readline()
                if not line_bytes:
                    logger.debug("stdin reached end of input")
                    break

                line = line_bytes.decode("utf-8", errors="replace")
                message = parse_json_message(line)
                if message is None:
                    if line.strip():
                        logger.warning(f"Invalid JSON received: {line.strip()}")
                    continue

                await self._emit_message(message)

        except (OSError, ValueError) as e:
            await self._emit_error(ConnectionError(f"Failed to read from stdin: {e}"))

        self._closed = True
        await self._emit_close()

    async def send(self, message: dict[str, Any]) -> None:
        """Write a message to stdout.

        Raises:
            ValueError: If message is not serializable
            ConnectionError: If the transport is closed or stdout fails
        """
        if self._closed:
            raise ConnectionError("Stdio transport is closed")

        json_str = serialize_message(message)
        try:
            print(json_str, file=self._stdout or sys.stdout, flush=True)
        except OSError as e:
            raise ConnectionError(f"Failed to send message: {e}") from e

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

        await self._emit_close()
