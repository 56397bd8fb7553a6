"""Tests for the persisted OAuth client state machine."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tether.auth.client.models.discovery import (
    AuthorizationServerMetadata,
    DiscoveryResult,
)
from tether.auth.client.models.errors import (
    CodeVerifierConsumedError,
    MissingCodeVerifierError,
    OAuth2Error,
    RegistrationError,
    TokenExchangeError,
    TokenRefreshError,
)
from tether.auth.client.models.registration import ClientInformation
from tether.auth.client.models.tokens import TokenResponse, TokenSet
from tether.auth.client.oauth_client import AuthState, OAuthClient
from tether.auth.storage import (
    CLIENT_INFO_FILE,
    CODE_VERIFIER_FILE,
    TOKENS_FILE,
    FileCredentialStore,
)

SERVER_URL = "https://mcp.example.com/sse"
REDIRECT_URI = "http://127.0.0.1:3334/oauth/callback"


def _discovery_result(registration_endpoint: str | None = "https://auth.example.com/register"):
    return DiscoveryResult(
        server_url=SERVER_URL,
        authorization_server_metadata=AuthorizationServerMetadata(
            issuer="https://auth.example.com",
            authorization_endpoint="https://auth.example.com/authorize",
            token_endpoint="https://auth.example.com/token",
            registration_endpoint=registration_endpoint,
        ),
        auth_server_url="https://auth.example.com",
    )


class OAuthClientTest:
    @pytest.fixture(autouse=True)
    def _client(self, tmp_path):
        # Arrange
        self.store = FileCredentialStore(tmp_path)
        self.presenter = MagicMock()
        self.presenter.present.return_value = True
        self.client = self._make_client()

    def _make_client(self, **overrides) -> OAuthClient:
        params = dict(
            redirect_uri=REDIRECT_URI,
            client_name="Tether MCP Proxy",
            http_client=AsyncMock(),
        )
        params.update(overrides)
        client = OAuthClient(SERVER_URL, self.store, self.presenter, **params)
        client.discovery = AsyncMock()
        client.discovery.discover.return_value = _discovery_result()
        client.registration = AsyncMock()
        client.registration.register_client.return_value = ClientInformation(
            client_id="client-123", redirect_uris=[REDIRECT_URI]
        )
        client.token_manager = AsyncMock()
        return client

    def _exists(self, name: str) -> bool:
        return self.store.path_for(self.client.fingerprint, name).exists()


class TestCodeVerifier(OAuthClientTest):
    def test_missing_verifier(self):
        # Act & Assert
        with pytest.raises(MissingCodeVerifierError) as exc_info:
            self.client.consume_code_verifier()

        assert str(self.store.path_for(self.client.fingerprint, CODE_VERIFIER_FILE)) in (
            str(exc_info.value)
        )

    def test_verifier_is_consumed_once(self):
        # Arrange
        self.client.save_code_verifier("abc123")

        # Act
        verifier = self.client.consume_code_verifier()

        # Assert
        assert verifier == "abc123"
        assert not self._exists(CODE_VERIFIER_FILE)
        with pytest.raises(CodeVerifierConsumedError):
            self.client.consume_code_verifier()

    def test_saving_a_new_verifier_resets_consumption(self):
        # Arrange
        self.client.save_code_verifier("abc123")
        self.client.consume_code_verifier()

        # Act
        self.client.save_code_verifier("def456")

        # Assert
        assert self.client.consume_code_verifier() == "def456"

    def test_missing_and_consumed_are_distinct(self):
        assert not issubclass(MissingCodeVerifierError, CodeVerifierConsumedError)
        assert not issubclass(CodeVerifierConsumedError, MissingCodeVerifierError)


class TestPersistence(OAuthClientTest):
    def test_tokens_round_trip_with_unknown_fields(self):
        # Arrange
        tokens = TokenSet.model_validate(
            {"access_token": "at", "refresh_token": "rt", "id_token": "x"}
        )

        # Act
        self.client.save_tokens(tokens)

        # Assert
        assert self.client.tokens() == tokens

    def test_invalid_tokens_file_reads_as_none(self):
        # Arrange
        self.store.write_json(self.client.fingerprint, TOKENS_FILE, {"token_type": "x"})

        # Act & Assert
        assert self.client.tokens() is None

    def test_client_information_round_trip(self):
        # Arrange
        info = ClientInformation.model_validate(
            {"client_id": "c", "redirect_uris": [REDIRECT_URI], "client_name": "n"}
        )

        # Act
        self.client.save_client_information(info)

        # Assert
        assert self.client.client_information() == info

    def test_authorization_headers(self):
        # Arrange
        assert self.client.authorization_headers() == {}
        self.client.save_tokens(TokenSet(access_token="at-1"))

        # Act
        headers = self.client.authorization_headers()

        # Assert
        assert headers == {"Authorization": "Bearer at-1"}
        assert self.client.last_access_token == "at-1"


class TestAuthorizationFlow(OAuthClientTest):
    async def test_full_flow_walks_the_state_machine(self):
        # Arrange
        assert self.client.state == AuthState.UNREGISTERED
        self.client.token_manager.exchange_code_for_token.return_value = TokenResponse(
            access_token="at", refresh_token="rt", expires_in=3600
        )

        # Act
        await self.client.ensure_registered()
        registered_state = self.client.state
        url = await self.client.begin_authorization()
        requested_state = self.client.state
        tokens = await self.client.finish_authorization("code-1")

        # Assert
        assert registered_state == AuthState.REGISTERED
        assert requested_state == AuthState.AUTHORIZATION_REQUESTED
        assert self.client.state == AuthState.TOKEN_ACQUIRED
        assert tokens.access_token == "at"
        assert self.client.tokens().refresh_token == "rt"
        assert not self._exists(CODE_VERIFIER_FILE)

        self.presenter.present.assert_called_once_with(url)
        request = self.client.token_manager.exchange_code_for_token.call_args[0][0]
        assert request.code == "code-1"
        assert request.redirect_uri == REDIRECT_URI
        assert request.client_id == "client-123"
        assert request.resource == SERVER_URL
        assert len(request.code_verifier) == 128

    async def test_presenter_failure_does_not_abort(self):
        # Arrange
        self.presenter.present.return_value = False

        # Act
        url = await self.client.begin_authorization()

        # Assert
        assert url.startswith("https://auth.example.com/authorize?")
        assert self._exists(CODE_VERIFIER_FILE)

    async def test_rejected_exchange(self):
        # Arrange
        await self.client.begin_authorization()
        self.client.token_manager.exchange_code_for_token.return_value = TokenResponse(
            error="invalid_grant", error_description="code expired"
        )

        # Act & Assert
        with pytest.raises(TokenExchangeError, match="code expired"):
            await self.client.finish_authorization("code-1")
        assert self.client.state == AuthState.REGISTERED

    async def test_code_without_stored_verifier(self):
        # Arrange
        await self.client.begin_authorization()
        self.store.delete(self.client.fingerprint, CODE_VERIFIER_FILE)

        # Act & Assert
        with pytest.raises(MissingCodeVerifierError):
            await self.client.finish_authorization("abc123")
        self.client.token_manager.exchange_code_for_token.assert_not_awaited()

    async def test_scope_is_requested(self):
        # Act
        url = await self.client.begin_authorization(scope="mcp:tools")

        # Assert
        assert "scope=mcp%3Atools" in url

    async def test_registration_is_reused(self):
        # Arrange
        await self.client.ensure_registered()

        # Act
        await self.client.ensure_registered()

        # Assert
        self.client.registration.register_client.assert_awaited_once()

    async def test_changed_redirect_uri_registers_again(self):
        # Arrange
        self.client.save_client_information(
            ClientInformation(
                client_id="old", redirect_uris=["http://127.0.0.1:4000/oauth/callback"]
            )
        )

        # Act
        info = await self.client.ensure_registered()

        # Assert
        assert info.client_id == "client-123"
        assert self.client.client_information().client_id == "client-123"
        metadata = self.client.registration.register_client.call_args[0][1]
        assert metadata.redirect_uris == [REDIRECT_URI]
        assert metadata.software_id == "tether"

    async def test_no_registration_endpoint(self):
        # Arrange
        self.client.discovery.discover.return_value = _discovery_result(None)

        # Act & Assert
        with pytest.raises(RegistrationError, match="dynamic client registration"):
            await self.client.ensure_registered()

    async def test_challenge_metadata_url_resets_discovery(self):
        # Arrange
        await self.client.discover()

        # Act
        self.client.set_resource_metadata_url("https://mcp.example.com/prm")
        await self.client.discover()

        # Assert
        assert self.client.discovery.discover.await_count == 2
        self.client.discovery.discover.assert_awaited_with(
            SERVER_URL, "https://mcp.example.com/prm"
        )


class TestRefresh(OAuthClientTest):
    def _seed(self, refresh_token: str | None = "rt-1"):
        self.client.save_client_information(
            ClientInformation(client_id="client-123", redirect_uris=[REDIRECT_URI])
        )
        self.client.save_tokens(TokenSet(access_token="at-1", refresh_token=refresh_token))

    async def test_refresh_keeps_old_refresh_token(self):
        # Arrange
        self._seed()
        self.client.token_manager.refresh_access_token.return_value = TokenResponse(
            access_token="at-2"
        )

        # Act
        tokens = await self.client.refresh()

        # Assert
        assert tokens.access_token == "at-2"
        assert tokens.refresh_token == "rt-1"
        assert self.client.tokens().refresh_token == "rt-1"

    async def test_revoked_refresh_token_regresses_to_registered(self):
        # Arrange
        self._seed()
        self.client.token_manager.refresh_access_token.return_value = TokenResponse(
            error="invalid_grant"
        )

        # Act & Assert
        with pytest.raises(TokenRefreshError):
            await self.client.refresh()
        assert not self._exists(TOKENS_FILE)
        assert self.client.state == AuthState.REGISTERED

    async def test_handle_unauthorized_refreshes(self):
        # Arrange
        self._seed()
        self.client.token_manager.refresh_access_token.return_value = TokenResponse(
            access_token="at-2", refresh_token="rt-2"
        )

        # Act & Assert
        assert await self.client.handle_unauthorized() is True
        assert self.client.tokens().access_token == "at-2"

    async def test_handle_unauthorized_without_refresh_token(self):
        # Arrange
        self._seed(refresh_token=None)

        # Act & Assert
        assert await self.client.handle_unauthorized() is False
        self.client.token_manager.refresh_access_token.assert_not_awaited()

    async def test_handle_unauthorized_after_failed_refresh(self):
        # Arrange
        self._seed()
        self.client.token_manager.refresh_access_token.return_value = TokenResponse(
            error="invalid_grant"
        )

        # Act & Assert
        assert await self.client.handle_unauthorized() is False
        assert self.client.tokens() is None


class TestReadOnly(OAuthClientTest):
    def test_writes_are_refused(self):
        # Arrange
        client = self._make_client(read_only=True)

        # Act & Assert
        with pytest.raises(OAuth2Error):
            client.save_tokens(TokenSet(access_token="at"))
        with pytest.raises(OAuth2Error):
            client.save_code_verifier("abc123")

    async def test_handle_unauthorized_only_notices_new_tokens(self):
        # Arrange
        writer = self.client
        follower = self._make_client(read_only=True)
        writer.save_tokens(TokenSet(access_token="at-1", refresh_token="rt"))
        follower.authorization_headers()

        # Act & Assert
        assert await follower.handle_unauthorized() is False
        writer.save_tokens(TokenSet(access_token="at-2", refresh_token="rt"))
        assert await follower.handle_unauthorized() is True
        follower.token_manager.refresh_access_token.assert_not_awaited()

    async def test_wait_for_token_update(self):
        # Arrange
        follower = self._make_client(read_only=True)

        async def write_later():
            await asyncio.sleep(0.05)
            self.client.save_tokens(TokenSet(access_token="at-new"))

        # Act
        writer_task = asyncio.create_task(write_later())
        tokens = await follower.wait_for_token_update(None, timeout=2.0, interval=0.01)
        await writer_task

        # Assert
        assert tokens.access_token == "at-new"

    async def test_wait_for_token_update_times_out(self):
        # Arrange
        follower = self._make_client(read_only=True)
        self.client.save_tokens(TokenSet(access_token="at-old"))

        # Act
        tokens = await follower.wait_for_token_update(
            "at-old", timeout=0.05, interval=0.01
        )

        # Assert
        assert tokens is None


class TestStorageLayout(OAuthClientTest):
    def test_files_are_named_by_fingerprint(self):
        # Arrange
        self.client.save_client_information(ClientInformation(client_id="c"))

        # Act
        path = self.store.path_for(self.client.fingerprint, CLIENT_INFO_FILE)

        # Assert
        assert path.name == f"{self.client.fingerprint}_client_info.json"
        assert path.exists()
