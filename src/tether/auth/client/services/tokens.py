"""OAuth 2.1 token exchange and refresh service.

Implements RFC 6749 token endpoint interactions with PKCE (RFC 7636)
and Resource Indicators (RFC 8707).
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from tether.auth.client.models.errors import TokenError
from tether.auth.client.models.tokens import (
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
)

logger = logging.getLogger(__name__)

_FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class OAuth2TokenManager:
    """Talks to the token endpoint.

    Both grants return a ``TokenResponse`` whether the server accepted the
    request or answered with an OAuth error; callers decide what an error
    response means. ``TokenError`` is reserved for transport and parsing
    failures.
    """

    def __init__(
        self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None
    ):
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def exchange_code_for_token(
        self, token_request: TokenRequest
    ) -> TokenResponse:
        """Exchange authorization code for access token (RFC 6749 4.1.3).

        Raises:
            TokenError: If token exchange fails due to network/parsing issues
        """
        logger.debug(f"Exchanging authorization code at {token_request.token_endpoint}")
        form_data = token_request.to_form_data()

        # Log request details (without sensitive data)
        logger.debug(
            f"Token request: grant_type={form_data['grant_type']}, "
            f"client_id={form_data['client_id']}, "
            f"resource={form_data.get('resource', 'none')}"
        )

        try:
            response = await self._http_client.post(
                token_request.token_endpoint, data=form_data, headers=_FORM_HEADERS
            )
        except httpx.HTTPError as e:
            raise TokenError(f"HTTP error during token exchange: {e}") from e

        return self._parse_token_response(response)

    async def refresh_access_token(
        self, refresh_request: RefreshTokenRequest
    ) -> TokenResponse:
        """Refresh an access token using a refresh token (RFC 6749 Section 6).

        Raises:
            TokenError: If token refresh fails due to network/parsing issues
        """
        logger.debug(f"Refreshing access token at {refresh_request.token_endpoint}")
        form_data = refresh_request.to_form_data()

        try:
            response = await self._http_client.post(
                refresh_request.token_endpoint, data=form_data, headers=_FORM_HEADERS
            )
        except httpx.HTTPError as e:
            raise TokenError(f"HTTP error during token refresh: {e}") from e

        return self._parse_token_response(response)

    def _parse_token_response(self, response: httpx.Response) -> TokenResponse:
        """Parse a token endpoint response (RFC 6749 Section 5).

        Raises:
            TokenError: If response cannot be parsed
        """
        try:
            response_data = response.json()
        except ValueError as e:
            raise TokenError(
                f"Invalid token response format (HTTP {response.status_code}): {e}"
            ) from e

        if not isinstance(response_data, dict):
            raise TokenError(f"Invalid token response format: {response_data!r}")

        if response.status_code == 200 and "access_token" not in response_data:
            raise TokenError("Token response missing required access_token")

        try:
            token_response = TokenResponse.model_validate(response_data)
        except ValidationError as e:
            raise TokenError(f"Invalid token response format: {e}") from e

        if response.status_code != 200:
            # Error response (RFC 6749 Section 5.2)
            if token_response.error is None:
                token_response.error = f"http_{response.status_code}"
            logger.warning(
                f"Token request failed with {response.status_code}: "
                f"{token_response.describe_error()}"
            )

        return token_response

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()
