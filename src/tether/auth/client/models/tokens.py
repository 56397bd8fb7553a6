"""Token models for OAuth 2.1.

Contains the persisted token set, token endpoint responses and the
request parameter objects for the two grants we use.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict


class TokenSet(BaseModel):
    """Tokens issued for one remote server, persisted between runs."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: str = "Bearer"
    expires_in: int | None = None  # Seconds, as issued
    refresh_token: str | None = None
    scope: str | None = None

    def can_refresh(self) -> bool:
        """Check if token can be refreshed."""
        return bool(self.refresh_token)


class TokenResponse(BaseModel):
    """OAuth 2.1 token response (RFC 6749 Section 5).

    Represents the response from a token endpoint, including both
    successful responses (Section 5.1) and error responses (Section 5.2).
    """

    model_config = ConfigDict(extra="allow")

    # Success response fields (RFC 6749 Section 5.1)
    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None  # Seconds until expiry
    refresh_token: str | None = None
    scope: str | None = None

    # Error response fields (RFC 6749 Section 5.2)
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        """Check if token response indicates success."""
        return self.error is None and self.access_token is not None

    def describe_error(self) -> str:
        if self.error_description:
            return f"{self.error} - {self.error_description}"
        return self.error or "no access_token in response"

    def to_token_set(self) -> TokenSet:
        """Convert successful token response to a persistable TokenSet.

        Raises:
            ValueError: If response is not successful
        """
        if not self.is_success():
            raise ValueError("Cannot convert error response to TokenSet")

        return TokenSet.model_validate(
            self.model_dump(
                exclude_none=True,
                exclude={"error", "error_description", "error_uri"},
            )
        )


@dataclass(frozen=True)
class TokenRequest:
    """OAuth 2.1 token exchange request parameters (RFC 6749 Section 4.1.3).

    Immutable request parameters for exchanging authorization codes for access tokens.
    Includes PKCE code_verifier (RFC 7636) and resource parameter (RFC 8707).
    """

    # Required fields first
    token_endpoint: str
    code: str
    redirect_uri: str
    client_id: str
    code_verifier: str  # RFC 7636 PKCE

    # Optional fields with defaults last
    grant_type: str = "authorization_code"
    client_secret: str | None = None
    resource: str | None = None  # RFC 8707 Resource Indicators
    scope: str | None = None

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request.

        Token requests must use form encoding, not JSON (RFC 6749 Section 4.1.3).

        Returns:
            Dictionary suitable for httpx data parameter
        """
        data = {
            "grant_type": self.grant_type,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": self.code_verifier,
        }

        # Add optional parameters
        if self.client_secret:
            data["client_secret"] = self.client_secret
        if self.resource:
            data["resource"] = self.resource
        if self.scope:
            data["scope"] = self.scope

        return data


@dataclass(frozen=True)
class RefreshTokenRequest:
    """OAuth 2.1 refresh token request parameters (RFC 6749 Section 6).

    Immutable request parameters for refreshing access tokens.
    """

    # Required fields first
    token_endpoint: str
    refresh_token: str
    client_id: str

    # Optional fields with defaults last
    grant_type: str = "refresh_token"
    client_secret: str | None = None
    resource: str | None = None  # RFC 8707 Resource Indicators
    scope: str | None = None

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request."""
        data = {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
        }

        if self.client_secret:
            data["client_secret"] = self.client_secret
        if self.resource:
            data["resource"] = self.resource
        if self.scope:
            data["scope"] = self.scope

        return data
