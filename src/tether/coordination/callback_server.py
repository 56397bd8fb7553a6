"""Loopback HTTP listener for OAuth redirects.

Serves two routes on 127.0.0.1:

- ``GET {callback_path}?code=...``: the authorization server redirect. The
  first code received completes the session; later calls get the same
  success page and change nothing.
- ``GET /wait-for-auth?poll=true|false``: lets other bridge processes
  wait for the login this process drives. 200 once completed; 202 while in
  progress, either immediately (``poll=false``) or after the long-poll
  timeout.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import sys
import time

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, PlainTextResponse, Response
from starlette.routing import Route

from tether.auth.client.models.errors import AuthorizationError
from tether.config import DEFAULT_CALLBACK_PATH

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"
WAIT_FOR_AUTH_PATH = "/wait-for-auth"

LONG_POLL_TIMEOUT = 30.0
SHUTDOWN_TIMEOUT = 5.0

AVAILABLE_PORT_START = 3000
MAX_PORT_ATTEMPTS = 10
PORT_SEARCH_TIMEOUT = 5.0

HTML_SUCCESS = """<!DOCTYPE html>
<html>
<head>
  <title>Tether - Authorization Successful</title>
  <style>
    body { font-family: system-ui, -apple-system, sans-serif; display: flex; justify-content: center; align-items: center; height: 100vh; margin: 0; }
    .container { text-align: center; padding: 2rem; }
    h1 { color: #16a34a; margin-bottom: 1rem; }
  </style>
</head>
<body>
  <div class="container">
    <h1>Authorization Successful</h1>
    <p>You may close this window and return to your MCP client.</p>
  </div>
  <script>setTimeout(() => window.close(), 2000);</script>
</body>
</html>"""


def html_error(error: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
  <title>Tether - Authorization Failed</title>
  <style>
    body {{ font-family: system-ui, -apple-system, sans-serif; display: flex; justify-content: center; align-items: center; height: 100vh; margin: 0; }}
    .container {{ text-align: center; padding: 2rem; }}
    h1 {{ color: #dc2626; margin-bottom: 1rem; }}
    .error {{ font-family: monospace; margin-top: 1rem; }}
  </style>
</head>
<body>
  <div class="container">
    <h1>Authorization Failed</h1>
    <div class="error">{error}</div>
  </div>
</body>
</html>"""


class PortUnavailableError(OSError):
    """Raised when no port could be bound for the callback listener."""


class AuthSession:
    """Completion latch for one login.

    One writer, any number of waiters. It fires once; waiters arriving
    after that return immediately.
    """

    def __init__(self):
        self.code: str | None = None
        self._completed = asyncio.Event()

    @property
    def completed(self) -> bool:
        return self._completed.is_set()

    def complete(self, code: str | None = None) -> bool:
        """Fire the latch. Returns False if it had already fired."""
        if self._completed.is_set():
            return False
        self.code = code
        self._completed.set()
        return True

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait for completion. Returns False on timeout."""
        if self._completed.is_set():
            return True
        try:
            await asyncio.wait_for(self._completed.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


class _ListenerServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the bridge."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class CallbackListener:
    """Starlette app plus the uvicorn server hosting it."""

    def __init__(
        self,
        port: int = 0,
        callback_path: str = DEFAULT_CALLBACK_PATH,
        host: str = LOOPBACK,
        long_poll_timeout: float = LONG_POLL_TIMEOUT,
    ):
        self.port = port
        self.callback_path = callback_path
        self.host = host
        self.long_poll_timeout = long_poll_timeout
        self.session = AuthSession()
        self.app = self._create_app()

        self._server: _ListenerServer | None = None
        self._serve_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._server is not None

    def _create_app(self) -> Starlette:
        routes = [
            Route(self.callback_path, self._handle_callback, methods=["GET"]),
            Route(WAIT_FOR_AUTH_PATH, self._handle_wait_for_auth, methods=["GET"]),
        ]
        return Starlette(routes=routes)

    async def _handle_callback(self, request: Request) -> Response:
        code = request.query_params.get("code")
        error = request.query_params.get("error")

        if self.session.completed:
            # Browsers may replay the redirect; the first code wins
            return HTMLResponse(HTML_SUCCESS)

        if error:
            description = request.query_params.get("error_description") or error
            logger.warning(f"Authorization server returned an error: {description}")
            return HTMLResponse(html_error(description), status_code=400)

        if not code:
            return HTMLResponse(
                html_error("No authorization code received"), status_code=400
            )

        logger.info("Auth code received, resolving promise")
        self.session.complete(code)
        return HTMLResponse(HTML_SUCCESS)

    async def _handle_wait_for_auth(self, request: Request) -> Response:
        if self.session.completed:
            return PlainTextResponse("Authentication completed", status_code=200)

        if request.query_params.get("poll") == "false":
            return PlainTextResponse("Authentication in progress", status_code=202)

        if await self.session.wait(self.long_poll_timeout):
            return PlainTextResponse("Authentication completed", status_code=200)
        return PlainTextResponse("Authentication in progress", status_code=202)

    async def start(self) -> int:
        """Bind and serve. Returns the bound port.

        Raises:
            OSError: If the port cannot be bound
        """
        sock = bind_socket(self.host, self.port)
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            self.app,
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=1,
        )
        self._server = _ListenerServer(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._serve_task.done():
                self._server = None
                sock.close()
                self._serve_task.result()
                raise OSError(f"Callback listener on port {self.port} failed to start")
            await asyncio.sleep(0.01)

        logger.info(f"OAuth callback server running at http://{self.host}:{self.port}")
        return self.port

    async def stop(self) -> None:
        if self._server is None:
            return

        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._serve_task, SHUTDOWN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Callback listener did not stop in time, cancelling")
            self._serve_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._serve_task
        finally:
            self._server = None
            self._serve_task = None

    async def wait_for_code(self) -> str:
        """Wait for the redirect and return its authorization code.

        Raises:
            AuthorizationError: The session completed without a code
        """
        await self.session.wait()
        if self.session.code is None:
            raise AuthorizationError(
                "Authentication completed without an authorization code"
            )
        return self.session.code

    def mark_complete(self) -> None:
        """Release waiting processes when no interactive login was needed."""
        if self.session.complete():
            logger.debug("Marked authentication complete without a callback")

    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{self.callback_path}"


def bind_socket(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        if sys.platform != "win32":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    return sock


def find_available_port(
    preferred: int | None = None,
    host: str = LOOPBACK,
    max_attempts: int = MAX_PORT_ATTEMPTS,
    timeout: float = PORT_SEARCH_TIMEOUT,
) -> int:
    """Linear search for a bindable port starting at ``preferred``.

    Raises:
        PortUnavailableError: After ``max_attempts`` ports or ``timeout``
            seconds without success
    """
    start = preferred or AVAILABLE_PORT_START
    deadline = time.monotonic() + timeout

    for port in range(start, start + max_attempts):
        if time.monotonic() > deadline:
            raise PortUnavailableError("Timeout finding available port")
        try:
            with contextlib.closing(bind_socket(host, port)) as sock:
                return sock.getsockname()[1]
        except OSError as e:
            logger.debug(f"Port {port} unavailable: {e}")

    raise PortUnavailableError(
        f"No available port in {start}-{start + max_attempts - 1}"
    )
