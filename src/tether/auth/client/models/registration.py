"""Client registration models for OAuth 2.0 Dynamic Client Registration.

Contains models for client metadata (RFC 7591) and the persisted
registration result.
"""

from __future__ import annotations

import time
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

LOOPBACK_REDIRECT_HOSTS = ("localhost", "127.0.0.1", "::1")


class ClientMetadata(BaseModel):
    """OAuth 2.0 Client Metadata for dynamic registration (RFC 7591)."""

    client_name: str
    redirect_uris: list[str] = Field(min_length=1)

    # Optional metadata
    client_uri: str | None = None
    scope: str | None = None
    software_id: str | None = None
    software_version: str | None = None

    # OAuth 2.1 specific
    token_endpoint_auth_method: str = "none"  # Public client
    grant_types: list[str] = Field(default=["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default=["code"])

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v: list[str]) -> list[str]:
        """Validate redirect URIs meet OAuth 2.1 security requirements."""
        for uri in v:
            parsed = urlparse(uri)
            # Must be HTTPS or loopback
            if (
                parsed.scheme == "http"
                and parsed.hostname not in LOOPBACK_REDIRECT_HOSTS
            ):
                raise ValueError(f"Redirect URI must use HTTPS or loopback: {uri}")
        return v

    @field_validator("client_uri")
    @classmethod
    def validate_https_uris(cls, v: str | None) -> str | None:
        """Validate optional URIs use HTTPS when provided."""
        if v is not None and not v.startswith("https://"):
            raise ValueError(f"URI must use HTTPS: {v}")
        return v


class ClientInformation(BaseModel):
    """Registered client as issued by the authorization server.

    Stored as the union of the metadata we sent and the registration
    response. Fields the server added beyond the ones modelled here are kept
    so the stored record round-trips unchanged.
    """

    model_config = ConfigDict(extra="allow")

    client_id: str
    client_secret: str | None = None
    redirect_uris: list[str] | None = None
    grant_types: list[str] | None = None
    client_id_issued_at: int | None = None
    client_secret_expires_at: int | None = None

    def is_expired(self) -> bool:
        """Check if client credentials have expired."""
        if not self.client_secret_expires_at:
            return False
        return time.time() >= self.client_secret_expires_at

    def supports_redirect_uri(self, redirect_uri: str) -> bool:
        """True unless the registration explicitly lists other redirect URIs."""
        if self.redirect_uris is None:
            return True
        return redirect_uri in self.redirect_uris
