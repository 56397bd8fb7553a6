"""Sequencing of coordination, authentication and proxying for one process."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import ssl
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

from tether.auth.client.models.errors import UnauthorizedError
from tether.auth.client.oauth_client import OAuthClient
from tether.auth.client.presenter import BrowserPresenter, UrlPresenter
from tether.auth.storage import TOKENS_FILE, CredentialStore, FileCredentialStore
from tether.client import RemoteClient, RemoteError
from tether.config import BridgeConfig
from tether.coordination.callback_server import CallbackListener
from tether.coordination.liveness import PsutilProcessProbe
from tether.coordination.lock import AuthCoordination, LockCoordinator
from tether.proxy import TransportProxy
from tether.transport.base import Transport
from tether.transport.sse.client import AuthProvider, SseClientTransport
from tether.transport.stdio.server import StdioServerTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[..., Transport]

TLS_HINT = """You may be behind a VPN or a TLS-intercepting proxy.

The remote server presented a certificate that is not trusted. Point the
SSL_CERT_FILE environment variable at your CA certificate bundle. If the
bridge is launched from an MCP client configuration, this might look like:

{
  "mcpServers": {
    "remote": {
      "command": "tether",
      "args": ["proxy", "https://remote.mcp.server.example.com/sse"],
      "env": {
        "SSL_CERT_FILE": "/path/to/your/ca-certificate.pem"
      }
    }
  }
}"""


def is_certificate_error(error: BaseException) -> bool:
    """True if ``error`` or anything in its cause chain is a TLS verify failure."""
    current: BaseException | None = error
    while current is not None:
        if isinstance(current, ssl.SSLCertVerificationError):
            return True
        if "certificate verify failed" in str(current) or (
            "self-signed certificate" in str(current)
        ):
            return True
        current = current.__cause__ or current.__context__
    return False


@dataclass
class BridgeContext:
    """Per-process state, built once at start and passed down explicitly."""

    config: BridgeConfig
    store: CredentialStore
    coordinator: LockCoordinator
    presenter: UrlPresenter = field(default_factory=BrowserPresenter)
    _shutdown_installed: bool = False

    @classmethod
    def create(cls, config: BridgeConfig) -> BridgeContext:
        store = FileCredentialStore(config.config_dir)
        coordinator = LockCoordinator(
            store,
            PsutilProcessProbe(),
            listener_factory=lambda port: CallbackListener(
                port, callback_path=config.callback_path
            ),
            enabled=config.coordinate,
        )
        return cls(config=config, store=store, coordinator=coordinator)

    @property
    def fingerprint(self) -> str:
        return self.config.fingerprint

    def install_shutdown_hook(self, task: asyncio.Task | None = None) -> None:
        """Release the lock and cancel ``task`` on SIGINT or SIGTERM.

        Installed once per process; later calls are ignored.
        """
        if self._shutdown_installed:
            return
        self._shutdown_installed = True

        loop = asyncio.get_running_loop()
        task = task or asyncio.current_task()

        def shutdown(signame: str) -> None:
            logger.info(f"Received {signame}, shutting down...")
            self.coordinator.release_owned(self.fingerprint)
            if task is not None and not task.done():
                task.cancel()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                # Proactor loops on Windows: KeyboardInterrupt reaches the finally blocks
                logger.debug(f"Signal handler for {sig.name} not supported here")

    def oauth_client(
        self, coordination: AuthCoordination, http_client: httpx.AsyncClient
    ) -> OAuthClient:
        listener = coordination.listener
        return OAuthClient(
            self.config.server_url,
            self.store,
            self.presenter,
            redirect_uri=self.config.redirect_uri(listener.port if listener else None),
            client_name=self.config.client_name,
            read_only=listener is None,
            http_client=http_client,
        )

    async def aclose(self, coordination: AuthCoordination | None) -> None:
        if coordination is not None and coordination.listener is not None:
            await coordination.listener.stop()
        self.coordinator.release_owned(self.fingerprint)
        await self.coordinator.aclose()


async def _open_transport(
    config: BridgeConfig,
    auth: AuthProvider,
    transport_factory: TransportFactory,
    http_client: httpx.AsyncClient | None,
) -> Transport:
    transport = transport_factory(
        config.server_url,
        headers=config.headers,
        auth=auth,
        http_client=http_client,
    )
    await transport.start()
    return transport


async def authenticate(oauth: OAuthClient, coordination: AuthCoordination) -> None:
    """Obtain new tokens: interactively as leader, from disk as follower.

    Raises:
        UnauthorizedError: A follower saw no new tokens appear
        OAuth2Error: The interactive authorization failed
    """
    if coordination.listener is None:
        logger.info("Authentication required but skipping browser auth - using shared auth")
        tokens = await oauth.wait_for_token_update(oauth.last_access_token)
        if tokens is None:
            raise UnauthorizedError(
                f"Another process authenticated with {oauth.server_url}, but no "
                f"usable tokens appeared in "
                f"{oauth.store.path_for(oauth.fingerprint, TOKENS_FILE)}"
            )
        return

    logger.info("Authentication required. Waiting for authorization...")
    await oauth.begin_authorization()
    code = await coordination.listener.wait_for_code()

    logger.info("Completing authorization...")
    await oauth.finish_authorization(code)


async def connect_to_remote_server(
    config: BridgeConfig,
    oauth: OAuthClient,
    coordination: AuthCoordination,
    transport_factory: TransportFactory = SseClientTransport,
    http_client: httpx.AsyncClient | None = None,
) -> Transport:
    """Connect, authenticating on demand, and return a started transport.

    On 401 the stored tokens are refreshed when possible; otherwise a new
    authorization runs (or, as follower, the leader's tokens are awaited)
    and the connection is made once more with a new transport.

    Raises:
        UnauthorizedError: Still rejected after authenticating
        OAuth2Error: Authentication failed
        ConnectionError: The remote server is unreachable
    """
    logger.info(f"Connecting to remote server: {config.server_url}")
    try:
        transport = await _open_transport(config, oauth, transport_factory, http_client)
        logger.info("Connected to remote server")
        return transport
    except UnauthorizedError:
        logger.debug("Remote server requires authorization")
    except ConnectionError as e:
        if is_certificate_error(e):
            logger.error(TLS_HINT)
        raise

    if await oauth.handle_unauthorized():
        try:
            transport = await _open_transport(
                config, oauth, transport_factory, http_client
            )
            logger.info("Connected to remote server with refreshed credentials")
            return transport
        except UnauthorizedError:
            logger.info("Refreshed credentials were rejected")

    await authenticate(oauth, coordination)

    transport = await _open_transport(config, oauth, transport_factory, http_client)
    logger.info("Connected to remote server after authentication")
    return transport


async def run_proxy(
    config: BridgeConfig,
    context: BridgeContext | None = None,
    local: Transport | None = None,
) -> None:
    """Bridge stdio to the remote server until either side closes."""
    context = context or BridgeContext.create(config)
    context.install_shutdown_hook()
    coordination: AuthCoordination | None = None

    async with httpx.AsyncClient(timeout=30.0) as http_client:
        try:
            coordination = await context.coordinator.coordinate(
                context.fingerprint, config.callback_port
            )
            if coordination.skip_browser_auth:
                logger.info(
                    "Authentication was completed by another instance - will use "
                    "tokens from disk"
                )

            oauth = context.oauth_client(coordination, http_client)
            remote = await connect_to_remote_server(
                config, oauth, coordination, http_client=http_client
            )
            if coordination.listener is not None:
                coordination.listener.mark_complete()

            local = local or StdioServerTransport()
            proxy = TransportProxy(local, remote)
            await local.start()
            logger.info("Local STDIO server running")
            logger.info(
                f"Proxy established successfully between local STDIO and remote "
                f"{config.server_url}"
            )
            logger.info("Press Ctrl+C to exit")

            try:
                await proxy.wait_closed()
            finally:
                await proxy.close()
        finally:
            await context.aclose(coordination)


async def run_client(config: BridgeConfig, context: BridgeContext | None = None) -> None:
    """Connect, list the remote server's tools and resources, then listen."""
    context = context or BridgeContext.create(config)
    context.install_shutdown_hook()
    coordination: AuthCoordination | None = None

    async with httpx.AsyncClient(timeout=30.0) as http_client:
        try:
            coordination = await context.coordinator.coordinate(
                context.fingerprint, config.callback_port
            )
            oauth = context.oauth_client(coordination, http_client)
            remote = await connect_to_remote_server(
                config, oauth, coordination, http_client=http_client
            )
            if coordination.listener is not None:
                coordination.listener.mark_complete()

            closed = asyncio.Event()
            client = RemoteClient(remote, client_name=config.client_name)
            client_close = remote.on_close

            async def on_close() -> None:
                await client_close()
                closed.set()

            remote.on_close = on_close

            try:
                await run_diagnostics(client)
                logger.info("Listening for messages. Press Ctrl+C to exit.")
                await closed.wait()
            finally:
                await remote.close()
        finally:
            await context.aclose(coordination)


async def run_diagnostics(client: RemoteClient) -> None:
    result = await client.initialize()
    logger.info(f"Connected successfully! Server: {result.get('serverInfo')}")

    for label, request in (
        ("tools", client.list_tools),
        ("resources", client.list_resources),
    ):
        logger.info(f"Requesting {label} list...")
        try:
            listing = await request()
        except (RemoteError, ConnectionError, TimeoutError) as e:
            logger.error(f"Error requesting {label} list: {e}")
            continue
        logger.info(f"{label.capitalize()}: {json.dumps(listing, indent=2)}")
