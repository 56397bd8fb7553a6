"""Discovery-related models for OAuth 2.1 server metadata.

Contains models for Protected Resource Metadata (RFC 9728) and
Authorization Server Metadata (RFC 8414) discovery.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urljoin, urlparse

from pydantic import BaseModel, Field, field_validator


class ProtectedResourceMetadata(BaseModel):
    """OAuth 2.0 Protected Resource Metadata (RFC 9728).

    Metadata returned by MCP servers to indicate their authorization servers
    and resource configuration.
    """

    resource: str | None = None
    authorization_servers: list[str] = Field(min_length=1)

    # Optional fields from RFC 9728
    bearer_methods_supported: list[str] | None = None
    scopes_supported: list[str] | None = None
    resource_documentation: str | None = None


class AuthorizationServerMetadata(BaseModel):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414).

    Metadata returned by authorization servers describing their endpoints
    and supported capabilities.
    """

    issuer: str
    response_types_supported: list[str] = Field(default=["code"])

    # Required for authorization code flow (our use case)
    authorization_endpoint: str
    token_endpoint: str

    # PKCE support (required for OAuth 2.1)
    code_challenge_methods_supported: list[str] = Field(default=["S256"])

    # Dynamic registration (RFC 7591)
    registration_endpoint: str | None = None

    # Optional but commonly used
    revocation_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    grant_types_supported: list[str] = Field(
        default=["authorization_code", "refresh_token"]
    )

    @field_validator("code_challenge_methods_supported")
    @classmethod
    def validate_pkce_support(cls, v: list[str]) -> list[str]:
        if "S256" not in v:
            raise ValueError("Authorization server must support S256 PKCE method")
        return v

    @classmethod
    def defaults_for(cls, auth_server_url: str) -> AuthorizationServerMetadata:
        """Conventional endpoints used when the server publishes no metadata.

        Mirrors the MCP 2024-11-05 fallback: ``/authorize``, ``/token`` and
        ``/register`` relative to the authorization server origin.
        """
        parsed = urlparse(auth_server_url)
        base_url = f"{parsed.scheme}://{parsed.netloc}"
        return cls(
            issuer=base_url,
            authorization_endpoint=urljoin(base_url, "/authorize"),
            token_endpoint=urljoin(base_url, "/token"),
            registration_endpoint=urljoin(base_url, "/register"),
        )


@dataclass(frozen=True)
class DiscoveryResult:
    """Complete discovery results for an MCP server.

    ``protected_resource_metadata`` is ``None`` when the server does not
    publish RFC 9728 metadata and its own origin is used as the
    authorization server.
    """

    server_url: str
    authorization_server_metadata: AuthorizationServerMetadata
    auth_server_url: str
    protected_resource_metadata: ProtectedResourceMetadata | None = None

    def get_resource_url(self) -> str:
        """Get the resource URL for RFC 8707 resource parameter.

        Uses the most specific URI (the actual server URL) following MCP authorization
        guidance to provide the most specific URI possible.
        """
        # Canonicalize the server URL per RFC 3986
        parsed = urlparse(self.server_url)
        canonical = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"
        if parsed.path and parsed.path != "/":
            canonical += parsed.path.rstrip("/")  # Preserve case, remove trailing slash

        return canonical
