"""OAuth 2.1 dynamic client registration service.

Implements RFC 7591 (OAuth 2.0 Dynamic Client Registration Protocol)
so the bridge never needs a pre-provisioned client id.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from tether.auth.client.models.errors import RegistrationError
from tether.auth.client.models.registration import ClientInformation, ClientMetadata

logger = logging.getLogger(__name__)


class OAuth2Registration:
    """Registers the bridge as a public client with an authorization server."""

    def __init__(
        self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None
    ):
        """Initialize OAuth registration.

        Args:
            timeout: HTTP request timeout in seconds
            http_client: Shared client to use instead of creating one
        """
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def register_client(
        self,
        registration_endpoint: str,
        client_metadata: ClientMetadata,
    ) -> ClientInformation:
        """Register a new OAuth client with the authorization server.

        Args:
            registration_endpoint: Client registration endpoint URL
            client_metadata: Client metadata to register

        Returns:
            The metadata we sent merged with what the server issued

        Raises:
            RegistrationError: If registration fails
        """
        logger.debug(f"Registering client at {registration_endpoint}")

        try:
            response = await self._http_client.post(
                registration_endpoint,
                json=client_metadata.model_dump(exclude_none=True, mode="json"),
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as e:
            raise RegistrationError(f"HTTP error during registration: {e}") from e

        # Some servers answer 200 instead of the 201 RFC 7591 asks for
        if response.status_code in (200, 201):
            return self._handle_successful_registration(
                response, registration_endpoint, client_metadata
            )
        self._handle_registration_error(response)

    def _handle_successful_registration(
        self,
        response: httpx.Response,
        registration_endpoint: str,
        original_metadata: ClientMetadata,
    ) -> ClientInformation:
        try:
            response_data = response.json()
        except ValueError as e:
            raise RegistrationError(f"Invalid registration response format: {e}") from e

        if not isinstance(response_data, dict) or "client_id" not in response_data:
            raise RegistrationError("Registration response missing required client_id")

        merged = {
            **original_metadata.model_dump(exclude_none=True, mode="json"),
            **response_data,
        }
        try:
            client_info = ClientInformation.model_validate(merged)
        except ValidationError as e:
            raise RegistrationError(f"Invalid registration response format: {e}") from e

        logger.info(
            f"Registered client {client_info.client_id} at {registration_endpoint}"
        )
        return client_info

    def _handle_registration_error(self, response: httpx.Response) -> None:
        """Raise a RegistrationError describing a failed registration."""
        try:
            error_data = response.json()
            error_code = error_data.get("error", "unknown_error")
            error_description = error_data.get(
                "error_description", "No description provided"
            )
        except (ValueError, AttributeError):
            # Non-JSON error responses
            raise RegistrationError(
                f"Registration failed with HTTP {response.status_code}: {response.text}"
            ) from None

        logger.error(
            f"Client registration failed with {response.status_code}: "
            f"{error_code} - {error_description}"
        )

        if error_code == "invalid_client_metadata":
            raise RegistrationError(f"Invalid client metadata: {error_description}")
        elif error_code == "invalid_redirect_uri":
            raise RegistrationError(f"Invalid redirect URI: {error_description}")
        elif response.status_code == 401:
            raise RegistrationError(
                "Registration endpoint requires authentication "
                "(initial access token)"
            )
        elif response.status_code == 403:
            raise RegistrationError(
                "Registration forbidden - check authorization server policy"
            )
        raise RegistrationError(
            f"Registration failed ({response.status_code}): {error_code} - "
            f"{error_description}"
        )

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()
