"""Exception hierarchy for OAuth 2.1 authentication errors.

Provides specific exception types for different failure modes to enable
precise error handling and recovery strategies.
"""

from __future__ import annotations


class OAuth2Error(Exception):
    """Base exception for all OAuth 2.1 related errors."""

    pass


class DiscoveryError(OAuth2Error):
    """Raised when OAuth server discovery fails."""

    pass


class ProtectedResourceMetadataError(DiscoveryError):
    """Raised when Protected Resource Metadata discovery fails."""

    pass


class AuthorizationServerMetadataError(DiscoveryError):
    """Raised when Authorization Server Metadata discovery fails."""

    pass


class RegistrationError(OAuth2Error):
    """Raised when dynamic client registration fails."""

    pass


class TokenError(OAuth2Error):
    """Raised when token operations fail."""

    pass


class TokenRefreshError(TokenError):
    """Raised when token refresh fails.

    The stored tokens are discarded before this is raised, so the next
    attempt starts a fresh interactive authorization.
    """

    pass


class TokenExchangeError(TokenError):
    """Raised when authorization code to token exchange fails."""

    pass


class AuthorizationError(OAuth2Error):
    """Raised when user authorization fails."""

    pass


class PKCEError(OAuth2Error):
    """Raised when PKCE parameter generation fails."""

    pass


class CodeVerifierError(AuthorizationError):
    """Raised when the PKCE code verifier cannot be used for an exchange."""

    pass


class MissingCodeVerifierError(CodeVerifierError):
    """Raised when no code verifier was ever saved for this server.

    Usually the verifier file was deleted while a login was in flight.
    """

    pass


class CodeVerifierConsumedError(CodeVerifierError):
    """Raised when a code verifier is read a second time.

    A verifier is single use. Reading it again means the flow ran out of
    order and the persisted state can no longer be trusted.
    """

    pass


class UnauthorizedError(OAuth2Error):
    """Raised when the remote server rejects our credentials with 401."""

    def __init__(self, message: str, resource_metadata_url: str | None = None):
        super().__init__(message)
        self.resource_metadata_url = resource_metadata_url
