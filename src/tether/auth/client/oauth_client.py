"""OAuth 2.1 client for one remote MCP server.

Coordinates discovery, registration, authorization and token exchange,
persisting every artifact through a ``CredentialStore`` so a later process
can pick up where an earlier one left off.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

import httpx
from pydantic import ValidationError

from tether.auth.client.models.discovery import DiscoveryResult
from tether.auth.client.models.errors import (
    AuthorizationError,
    CodeVerifierConsumedError,
    MissingCodeVerifierError,
    OAuth2Error,
    RegistrationError,
    TokenError,
    TokenExchangeError,
    TokenRefreshError,
)
from tether.auth.client.models.registration import ClientInformation, ClientMetadata
from tether.auth.client.models.tokens import RefreshTokenRequest, TokenRequest, TokenSet
from tether.auth.client.presenter import UrlPresenter
from tether.auth.client.primitives.discovery import OAuth2Discovery
from tether.auth.client.services.flow import OAuth2FlowManager
from tether.auth.client.services.registration import OAuth2Registration
from tether.auth.client.services.tokens import OAuth2TokenManager
from tether.auth.storage import (
    CLIENT_INFO_FILE,
    CODE_VERIFIER_FILE,
    TOKENS_FILE,
    CredentialStore,
    server_fingerprint,
)
from tether.config import VERSION

logger = logging.getLogger(__name__)


class AuthState(Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    TOKEN_ACQUIRED = "token_acquired"


class OAuthClient:
    """Authorization-Code + PKCE client with persisted state.

    The state machine runs per server fingerprint:

    - ``UNREGISTERED`` -> ``REGISTERED``: dynamic client registration
    - ``REGISTERED`` -> ``AUTHORIZATION_REQUESTED``: verifier saved, URL shown
    - ``AUTHORIZATION_REQUESTED`` -> ``TOKEN_ACQUIRED``: code exchanged
    - ``TOKEN_ACQUIRED`` -> ``TOKEN_ACQUIRED``: refresh; a failed refresh
      drops the tokens and lands back in ``REGISTERED``

    A ``read_only`` client belongs to a follower process. It reads whatever
    the leader persisted and refuses every operation that would write.
    """

    def __init__(
        self,
        server_url: str,
        store: CredentialStore,
        presenter: UrlPresenter | None = None,
        *,
        redirect_uri: str,
        client_name: str = "Tether MCP Proxy",
        scope: str | None = None,
        read_only: bool = False,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize OAuth client.

        Args:
            server_url: Remote MCP server URL
            store: Persistence for registration, tokens and verifier
            presenter: Shows the authorization URL to the user
            redirect_uri: Loopback URI of the callback listener
            client_name: Name to use for dynamic client registration
            scope: Optional OAuth scope to request
            read_only: Never write OAuth state (follower processes)
            timeout: HTTP request timeout
            http_client: Shared client to use instead of creating one
        """
        self.server_url = server_url
        self.fingerprint = server_fingerprint(server_url)
        self.store = store
        self.presenter = presenter
        self.redirect_uri = redirect_uri
        self.client_name = client_name
        self.scope = scope
        self.read_only = read_only

        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

        self.discovery = OAuth2Discovery(timeout=timeout, http_client=self._http_client)
        self.registration = OAuth2Registration(
            timeout=timeout, http_client=self._http_client
        )
        self.token_manager = OAuth2TokenManager(
            timeout=timeout, http_client=self._http_client
        )
        self.flow_manager = OAuth2FlowManager()

        self._discovery_result: DiscoveryResult | None = None
        self._resource_metadata_url: str | None = None
        self._authorization_pending = False
        self._verifier_consumed = False
        self._last_access_token: str | None = None

    # ================================
    # Persisted state
    # ================================

    def client_information(self) -> ClientInformation | None:
        data = self.store.read_json(self.fingerprint, CLIENT_INFO_FILE)
        if data is None:
            return None
        try:
            return ClientInformation.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid {self._path(CLIENT_INFO_FILE)}: {e}")
            return None

    def save_client_information(self, client_info: ClientInformation) -> None:
        self._check_writable("save client information")
        self.store.write_json(
            self.fingerprint,
            CLIENT_INFO_FILE,
            client_info.model_dump(mode="json", exclude_none=True),
        )

    def tokens(self) -> TokenSet | None:
        data = self.store.read_json(self.fingerprint, TOKENS_FILE)
        if data is None:
            return None
        try:
            return TokenSet.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid {self._path(TOKENS_FILE)}: {e}")
            return None

    def save_tokens(self, tokens: TokenSet) -> None:
        self._check_writable("save tokens")
        self.store.write_json(
            self.fingerprint, TOKENS_FILE, tokens.model_dump(mode="json", exclude_none=True)
        )

    def forget_tokens(self) -> None:
        self._check_writable("delete tokens")
        self.store.delete(self.fingerprint, TOKENS_FILE)

    def save_code_verifier(self, code_verifier: str) -> None:
        self._check_writable("save the code verifier")
        self.store.write_text(self.fingerprint, CODE_VERIFIER_FILE, code_verifier)
        self._verifier_consumed = False

    def consume_code_verifier(self) -> str:
        """Read the pending verifier once and delete it.

        Raises:
            CodeVerifierConsumedError: The verifier was already used
            MissingCodeVerifierError: No verifier was saved, or it was removed
        """
        path = self._path(CODE_VERIFIER_FILE)
        if self._verifier_consumed:
            raise CodeVerifierConsumedError(
                f"Code verifier for {self.server_url} was already used. The "
                f"authorization flow ran out of order; start it again ({path})"
            )

        code_verifier = self.store.read_text(self.fingerprint, CODE_VERIFIER_FILE)
        if code_verifier is None or not code_verifier.strip():
            raise MissingCodeVerifierError(
                f"No code verifier saved for {self.server_url}. Expected it at "
                f"{path}; start the authorization again"
            )

        self.store.delete(self.fingerprint, CODE_VERIFIER_FILE)
        self._verifier_consumed = True
        return code_verifier.strip()

    @property
    def state(self) -> AuthState:
        if self.tokens() is not None:
            return AuthState.TOKEN_ACQUIRED
        if self._authorization_pending:
            return AuthState.AUTHORIZATION_REQUESTED
        if self.client_information() is not None:
            return AuthState.REGISTERED
        return AuthState.UNREGISTERED

    @property
    def last_access_token(self) -> str | None:
        """Access token most recently handed out in request headers."""
        return self._last_access_token

    # ================================
    # Flow
    # ================================

    def set_resource_metadata_url(self, resource_metadata_url: str | None) -> None:
        """Remember the metadata URL a 401 challenge pointed at."""
        if resource_metadata_url and resource_metadata_url != self._resource_metadata_url:
            self._resource_metadata_url = resource_metadata_url
            self._discovery_result = None

    async def discover(self) -> DiscoveryResult:
        if self._discovery_result is None:
            self._discovery_result = await self.discovery.discover(
                self.server_url, self._resource_metadata_url
            )
        return self._discovery_result

    async def ensure_registered(self) -> ClientInformation:
        """Return a registration usable with the current redirect URI.

        Registers again, replacing the stored record, when none is stored,
        the stored one has expired or it does not list our redirect URI.

        Raises:
            RegistrationError: If registration is impossible or fails
        """
        client_info = self.client_information()
        if client_info is not None:
            if not client_info.supports_redirect_uri(self.redirect_uri):
                logger.info(
                    f"Stored client registration does not allow {self.redirect_uri}, "
                    f"registering again"
                )
            elif client_info.is_expired():
                logger.info("Stored client registration has expired, registering again")
            else:
                return client_info

        self._check_writable("register a client")
        discovery_result = await self.discover()
        endpoint = discovery_result.authorization_server_metadata.registration_endpoint
        if not endpoint:
            raise RegistrationError(
                f"{self.server_url} does not support dynamic client registration "
                f"and no usable client is stored at {self._path(CLIENT_INFO_FILE)}"
            )

        metadata = ClientMetadata(
            client_name=self.client_name,
            redirect_uris=[self.redirect_uri],
            scope=self.scope,
            software_id="tether",
            software_version=VERSION,
        )
        client_info = await self.registration.register_client(endpoint, metadata)
        self.save_client_information(client_info)
        return client_info

    async def begin_authorization(self, scope: str | None = None) -> str:
        """Start an interactive authorization and return its URL.

        ``scope`` overrides the scope given at construction. The URL is
        handed to the presenter; if that fails the user is asked to open it
        by hand. Either way the flow continues.
        """
        self._check_writable("start an authorization")
        client_info = await self.ensure_registered()
        discovery_result = await self.discover()

        authorization_url, pkce_params = self.flow_manager.start_authorization_flow(
            discovery_result, client_info, self.redirect_uri, scope or self.scope
        )
        self.save_code_verifier(pkce_params.code_verifier)
        self._authorization_pending = True

        logger.info(
            f"\nPlease authorize this client by visiting:\n{authorization_url}\n"
        )
        if self.presenter is not None and self.presenter.present(authorization_url):
            logger.info("Browser opened automatically.")
        else:
            logger.info(
                "Could not open browser automatically. Please copy and paste the "
                "URL above into your browser."
            )
        return authorization_url

    async def finish_authorization(self, code: str) -> TokenSet:
        """Exchange an authorization code for tokens and persist them.

        Raises:
            AuthorizationError: No registration is stored
            MissingCodeVerifierError: No verifier is stored
            CodeVerifierConsumedError: The verifier was already used
            TokenExchangeError: The token endpoint rejected the exchange
        """
        self._check_writable("finish an authorization")
        client_info = self.client_information()
        if client_info is None:
            raise AuthorizationError(
                f"No client registration for {self.server_url} at "
                f"{self._path(CLIENT_INFO_FILE)}"
            )

        try:
            code_verifier = self.consume_code_verifier()
        finally:
            self._authorization_pending = False

        discovery_result = await self.discover()
        token_request = TokenRequest(
            token_endpoint=discovery_result.authorization_server_metadata.token_endpoint,
            code=code,
            redirect_uri=self.redirect_uri,
            client_id=client_info.client_id,
            code_verifier=code_verifier,
            client_secret=client_info.client_secret,
            resource=discovery_result.get_resource_url(),
        )

        try:
            token_response = await self.token_manager.exchange_code_for_token(
                token_request
            )
        except TokenError as e:
            raise TokenExchangeError(
                f"Token exchange with {self.server_url} failed: {e}"
            ) from e

        if not token_response.is_success():
            raise TokenExchangeError(
                f"Token exchange with {self.server_url} failed: "
                f"{token_response.describe_error()}"
            )

        tokens = token_response.to_token_set()
        self.save_tokens(tokens)
        logger.info(f"Authorization with {self.server_url} completed")
        return tokens

    async def refresh(self) -> TokenSet:
        """Refresh the stored access token.

        Any failure deletes the stored tokens so the next attempt starts a
        new interactive authorization. The refresh itself is never retried.

        Raises:
            TokenRefreshError: If there is nothing to refresh or refresh fails
        """
        self._check_writable("refresh tokens")
        tokens_path = self._path(TOKENS_FILE)
        tokens = self.tokens()
        if tokens is None or not tokens.can_refresh():
            raise TokenRefreshError(
                f"No refresh token stored for {self.server_url} ({tokens_path})"
            )

        client_info = self.client_information()
        if client_info is None:
            self.forget_tokens()
            raise TokenRefreshError(
                f"No client registration for {self.server_url} at "
                f"{self._path(CLIENT_INFO_FILE)}; removed {tokens_path}"
            )

        try:
            discovery_result = await self.discover()
            token_response = await self.token_manager.refresh_access_token(
                RefreshTokenRequest(
                    token_endpoint=(
                        discovery_result.authorization_server_metadata.token_endpoint
                    ),
                    refresh_token=tokens.refresh_token,
                    client_id=client_info.client_id,
                    client_secret=client_info.client_secret,
                    resource=discovery_result.get_resource_url(),
                )
            )
        except OAuth2Error as e:
            self.forget_tokens()
            raise TokenRefreshError(
                f"Token refresh for {self.server_url} failed: {e}. "
                f"Removed {tokens_path}"
            ) from e

        if not token_response.is_success():
            self.forget_tokens()
            raise TokenRefreshError(
                f"Token refresh for {self.server_url} failed: "
                f"{token_response.describe_error()}. Removed {tokens_path}"
            )

        new_tokens = token_response.to_token_set()
        if new_tokens.refresh_token is None:
            # RFC 6749 Section 6: the old refresh token stays valid
            new_tokens = new_tokens.model_copy(
                update={"refresh_token": tokens.refresh_token}
            )
        self.save_tokens(new_tokens)
        logger.info("Successfully refreshed access token")
        return new_tokens

    async def handle_unauthorized(self) -> bool:
        """React to a 401 from the remote server.

        Returns:
            True if a retry with fresh credentials is worthwhile, False if an
            interactive authorization is needed first
        """
        tokens = self.tokens()

        if self.read_only:
            # Followers only notice tokens the leader has written since
            return tokens is not None and tokens.access_token != self._last_access_token

        if tokens is None or not tokens.can_refresh():
            return False

        try:
            await self.refresh()
        except TokenRefreshError as e:
            logger.warning(str(e))
            return False
        return True

    async def wait_for_token_update(
        self,
        previous_access_token: str | None,
        timeout: float = 10.0,
        interval: float = 0.25,
    ) -> TokenSet | None:
        """Wait until stored tokens differ from ``previous_access_token``.

        Returns:
            The new tokens, or None if nothing changed before the timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            tokens = self.tokens()
            if tokens is not None and tokens.access_token != previous_access_token:
                return tokens
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(interval)

    def authorization_headers(self) -> dict[str, str]:
        tokens = self.tokens()
        if tokens is None:
            return {}
        self._last_access_token = tokens.access_token
        return {"Authorization": f"Bearer {tokens.access_token}"}

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()

    def _path(self, name: str) -> str:
        return str(self.store.path_for(self.fingerprint, name))

    def _check_writable(self, operation: str) -> None:
        if self.read_only:
            raise OAuth2Error(
                f"Cannot {operation} for {self.server_url}: another process owns "
                f"authentication for this server"
            )
