"""Tests for connection sequencing: coordination, authentication, proxying."""

import asyncio
import logging
import signal
import ssl
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from tether.auth.client.models.errors import UnauthorizedError
from tether.auth.client.models.tokens import TokenSet
from tether.bridge import (
    TLS_HINT,
    BridgeContext,
    connect_to_remote_server,
    is_certificate_error,
    run_proxy,
)
from tether.config import BridgeConfig
from tether.coordination.lock import AuthCoordination

SERVER_URL = "https://mcp.example.com/sse"


def _oauth() -> MagicMock:
    oauth = MagicMock()
    oauth.server_url = SERVER_URL
    oauth.last_access_token = None
    oauth.handle_unauthorized = AsyncMock(return_value=False)
    oauth.begin_authorization = AsyncMock(return_value="https://auth.example.com/authorize?x")
    oauth.finish_authorization = AsyncMock()
    oauth.wait_for_token_update = AsyncMock(return_value=TokenSet(access_token="at"))
    return oauth


def _listener() -> MagicMock:
    listener = MagicMock()
    listener.port = 3334
    listener.wait_for_code = AsyncMock(return_value="code-1")
    listener.stop = AsyncMock()
    return listener


class TransportFactory:
    """Builds fake transports whose ``start`` fails with queued errors."""

    def __init__(self, transport_class, failures=()):
        self.transport_class = transport_class
        self.failures = list(failures)
        self.created = []

    def __call__(self, url, headers=None, auth=None, http_client=None):
        transport = self.transport_class()
        failure = self.failures.pop(0) if self.failures else None
        if failure is not None:
            transport.start = AsyncMock(side_effect=failure)
        transport.url = url
        transport.headers = headers
        transport.auth = auth
        self.created.append(transport)
        return transport


class TestConnectToRemoteServer:
    def setup_method(self):
        # Arrange
        self.config = BridgeConfig(
            server_url=SERVER_URL, callback_port=3334, headers={"X-Api-Key": "k"}
        )
        self.oauth = _oauth()

    async def test_connects_without_authentication(self, fake_transport_class):
        # Arrange
        factory = TransportFactory(fake_transport_class)
        coordination = AuthCoordination(listener=_listener(), skip_browser_auth=False)

        # Act
        transport = await connect_to_remote_server(
            self.config, self.oauth, coordination, transport_factory=factory
        )

        # Assert
        assert transport is factory.created[0]
        assert transport.started
        assert transport.url == SERVER_URL
        assert transport.headers == {"X-Api-Key": "k"}
        assert transport.auth is self.oauth
        self.oauth.begin_authorization.assert_not_awaited()

    async def test_refreshed_tokens_avoid_interactive_login(self, fake_transport_class):
        # Arrange
        factory = TransportFactory(fake_transport_class, [UnauthorizedError("401")])
        self.oauth.handle_unauthorized.return_value = True
        coordination = AuthCoordination(listener=_listener(), skip_browser_auth=False)

        # Act
        transport = await connect_to_remote_server(
            self.config, self.oauth, coordination, transport_factory=factory
        )

        # Assert
        assert transport is factory.created[1]
        self.oauth.begin_authorization.assert_not_awaited()

    async def test_leader_runs_interactive_login(self, fake_transport_class):
        # Arrange
        factory = TransportFactory(fake_transport_class, [UnauthorizedError("401")])
        listener = _listener()
        coordination = AuthCoordination(listener=listener, skip_browser_auth=False)

        # Act
        transport = await connect_to_remote_server(
            self.config, self.oauth, coordination, transport_factory=factory
        )

        # Assert
        assert transport is factory.created[1]
        self.oauth.begin_authorization.assert_awaited_once()
        listener.wait_for_code.assert_awaited_once()
        self.oauth.finish_authorization.assert_awaited_once_with("code-1")

    async def test_rejected_refresh_falls_back_to_login(self, fake_transport_class):
        # Arrange
        factory = TransportFactory(
            fake_transport_class, [UnauthorizedError("401"), UnauthorizedError("401")]
        )
        self.oauth.handle_unauthorized.return_value = True
        coordination = AuthCoordination(listener=_listener(), skip_browser_auth=False)

        # Act
        transport = await connect_to_remote_server(
            self.config, self.oauth, coordination, transport_factory=factory
        )

        # Assert
        assert transport is factory.created[2]
        self.oauth.finish_authorization.assert_awaited_once()

    async def test_follower_uses_leader_tokens(self, fake_transport_class):
        # Arrange
        factory = TransportFactory(fake_transport_class, [UnauthorizedError("401")])
        coordination = AuthCoordination(listener=None, skip_browser_auth=True)

        # Act
        transport = await connect_to_remote_server(
            self.config, self.oauth, coordination, transport_factory=factory
        )

        # Assert
        assert transport is factory.created[1]
        self.oauth.wait_for_token_update.assert_awaited_once()
        self.oauth.begin_authorization.assert_not_awaited()

    async def test_follower_without_new_tokens_fails(self, fake_transport_class):
        # Arrange
        factory = TransportFactory(fake_transport_class, [UnauthorizedError("401")])
        self.oauth.wait_for_token_update.return_value = None
        self.oauth.store.path_for.return_value = "/tmp/x_tokens.json"
        coordination = AuthCoordination(listener=None, skip_browser_auth=True)

        # Act & Assert
        with pytest.raises(UnauthorizedError, match="no usable tokens"):
            await connect_to_remote_server(
                self.config, self.oauth, coordination, transport_factory=factory
            )

    async def test_certificate_errors_log_a_hint(self, fake_transport_class, caplog):
        # Arrange
        cause = ssl.SSLCertVerificationError("certificate verify failed")
        error = ConnectionError("SSE connection failed")
        error.__cause__ = cause
        factory = TransportFactory(fake_transport_class, [error])
        coordination = AuthCoordination(listener=_listener(), skip_browser_auth=False)

        # Act & Assert
        with caplog.at_level(logging.ERROR, logger="tether.bridge"):
            with pytest.raises(ConnectionError):
                await connect_to_remote_server(
                    self.config, self.oauth, coordination, transport_factory=factory
                )
        assert TLS_HINT in caplog.text


class TestIsCertificateError:
    def test_walks_cause_chain(self):
        # Arrange
        inner = httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed")
        outer = ConnectionError("failed")
        outer.__cause__ = inner

        # Act & Assert
        assert is_certificate_error(outer)

    def test_other_errors(self):
        assert not is_certificate_error(ConnectionError("Connection refused"))


class TestBridgeContext:
    def test_follower_client_is_read_only(self, tmp_path):
        # Arrange
        config = BridgeConfig(server_url=SERVER_URL, callback_port=3334, config_dir=tmp_path)
        context = BridgeContext.create(config)

        # Act
        leader = context.oauth_client(
            AuthCoordination(listener=_listener(), skip_browser_auth=False),
            http_client=AsyncMock(),
        )
        follower = context.oauth_client(
            AuthCoordination(listener=None, skip_browser_auth=True),
            http_client=AsyncMock(),
        )

        # Assert
        assert not leader.read_only
        assert follower.read_only
        assert leader.redirect_uri == "http://127.0.0.1:3334/oauth/callback"

    def test_redirect_uses_the_bound_listener_port(self, tmp_path):
        # Arrange
        config = BridgeConfig(server_url=SERVER_URL, callback_port=3334, config_dir=tmp_path)
        context = BridgeContext.create(config)
        listener = _listener()
        listener.port = 3335

        # Act
        oauth = context.oauth_client(
            AuthCoordination(listener=listener, skip_browser_auth=False),
            http_client=AsyncMock(),
        )

        # Assert
        assert oauth.redirect_uri == "http://127.0.0.1:3335/oauth/callback"


class TestRunProxy:
    async def test_proxies_until_remote_closes(self, fake_transport_class, tmp_path):
        # Arrange
        config = BridgeConfig(server_url=SERVER_URL, callback_port=3334, config_dir=tmp_path)
        listener = _listener()
        coordination = AuthCoordination(listener=listener, skip_browser_auth=False)
        context = MagicMock()
        context.coordinator.coordinate = AsyncMock(return_value=coordination)
        context.aclose = AsyncMock()

        local = fake_transport_class()
        remote = fake_transport_class()
        await remote.start()

        async def close_remote_soon():
            while not local.started:
                await asyncio.sleep(0)
            await remote.receive({"jsonrpc": "2.0", "method": "notifications/ping"})
            await remote.remote_close()

        # Act
        with patch(
            "tether.bridge.connect_to_remote_server", AsyncMock(return_value=remote)
        ):
            closer = asyncio.create_task(close_remote_soon())
            await asyncio.wait_for(run_proxy(config, context=context, local=local), 2.0)
            await closer

        # Assert
        listener.mark_complete.assert_called_once()
        assert local.sent == [{"jsonrpc": "2.0", "method": "notifications/ping"}]
        assert local.close_calls == 1
        context.aclose.assert_awaited_once_with(coordination)


class TestShutdownHook:
    async def test_signal_releases_lock_and_cancels_task(self, tmp_path):
        # Arrange
        config = BridgeConfig(server_url=SERVER_URL, callback_port=3334, config_dir=tmp_path)
        context = BridgeContext.create(config)
        context.coordinator = MagicMock()
        loop = asyncio.get_running_loop()
        target = asyncio.create_task(asyncio.sleep(10))

        with patch.object(loop, "add_signal_handler") as add_handler:
            context.install_shutdown_hook(target)
            context.install_shutdown_hook(target)
        handlers = {call.args[0]: call.args[1:] for call in add_handler.call_args_list}

        # Act
        callback, signame = handlers[signal.SIGTERM]
        callback(signame)

        # Assert
        assert add_handler.call_count == 2
        assert set(handlers) == {signal.SIGINT, signal.SIGTERM}
        context.coordinator.release_owned.assert_called_once_with(context.fingerprint)
        with pytest.raises(asyncio.CancelledError):
            await target
