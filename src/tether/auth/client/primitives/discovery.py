"""OAuth 2.1 server discovery primitive.

Implements RFC 9728 (Protected Resource Metadata) and RFC 8414
(Authorization Server Metadata) discovery to find OAuth endpoints for a
remote MCP server. Servers that publish neither document are still usable:
the server's own origin is treated as the authorization server and the
conventional ``/authorize``, ``/token`` and ``/register`` endpoints are
assumed.
"""

from __future__ import annotations

import logging
import re
from urllib.parse import urljoin, urlparse

import httpx
from pydantic import ValidationError

from tether.auth.client.models.discovery import (
    AuthorizationServerMetadata,
    DiscoveryResult,
    ProtectedResourceMetadata,
)
from tether.auth.client.models.errors import (
    AuthorizationServerMetadataError,
    ProtectedResourceMetadataError,
)

logger = logging.getLogger(__name__)

# Matches resource_metadata="url" or resource_metadata=url (unquoted)
_RESOURCE_METADATA_PATTERN = re.compile(r'resource_metadata=(?:"([^"]+)"|([^\s,]+))')


def extract_resource_metadata_url(www_authenticate: str | None) -> str | None:
    """Extract the RFC 9728 ``resource_metadata`` parameter from a challenge.

    Args:
        www_authenticate: Value of a ``WWW-Authenticate`` response header

    Returns:
        Resource metadata URL if present, None otherwise
    """
    if not www_authenticate:
        return None

    match = _RESOURCE_METADATA_PATTERN.search(www_authenticate)
    if match:
        return match.group(1) or match.group(2)
    return None


class OAuth2Discovery:
    """Finds the authorization server and its endpoints for an MCP server.

    Discovery runs in two steps:
    1. Protected Resource Metadata (RFC 9728) names the authorization server
    2. Authorization Server Metadata (RFC 8414, then OIDC) lists endpoints

    Each step degrades instead of failing: a missing resource document means
    the server origin is the authorization server, and a missing server
    document means the default endpoint layout.
    """

    def __init__(
        self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None
    ):
        """Initialize OAuth discovery.

        Args:
            timeout: HTTP request timeout in seconds
            http_client: Shared client to use instead of creating one
        """
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def discover(
        self, server_url: str, resource_metadata_url: str | None = None
    ) -> DiscoveryResult:
        """Discover OAuth configuration for an MCP server URL.

        Args:
            server_url: MCP server URL to discover OAuth config for
            resource_metadata_url: Metadata URL advertised in a 401 challenge,
                if one was received

        Returns:
            Complete discovery results
        """
        prm: ProtectedResourceMetadata | None
        try:
            if resource_metadata_url:
                logger.debug(
                    f"Using resource metadata URL from WWW-Authenticate: "
                    f"{resource_metadata_url}"
                )
                prm = await self._fetch_protected_resource_metadata(
                    resource_metadata_url
                )
            else:
                prm = await self._discover_protected_resource_metadata(server_url)
        except ProtectedResourceMetadataError as e:
            logger.debug(f"No protected resource metadata, using server origin: {e}")
            prm = None

        if prm is not None:
            auth_server_url = str(prm.authorization_servers[0])
        else:
            parsed = urlparse(server_url)
            auth_server_url = f"{parsed.scheme}://{parsed.netloc}"

        try:
            asm = await self._discover_authorization_server_metadata(auth_server_url)
        except AuthorizationServerMetadataError as e:
            logger.debug(f"{e}. Falling back to default endpoints")
            asm = AuthorizationServerMetadata.defaults_for(auth_server_url)

        return DiscoveryResult(
            server_url=server_url,
            protected_resource_metadata=prm,
            authorization_server_metadata=asm,
            auth_server_url=auth_server_url,
        )

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()

    async def _discover_protected_resource_metadata(
        self, server_url: str
    ) -> ProtectedResourceMetadata:
        """Fetch metadata from /.well-known/oauth-protected-resource (RFC 9728)."""
        parsed = urlparse(server_url)
        base_url = f"{parsed.scheme}://{parsed.netloc}"
        metadata_url = urljoin(base_url, "/.well-known/oauth-protected-resource")

        return await self._fetch_protected_resource_metadata(metadata_url)

    async def _fetch_protected_resource_metadata(
        self, metadata_url: str
    ) -> ProtectedResourceMetadata:
        """Fetch and parse protected resource metadata.

        Raises:
            ProtectedResourceMetadataError: If fetch or parsing fails
        """
        try:
            logger.debug(f"Fetching protected resource metadata from: {metadata_url}")
            response = await self._http_client.get(metadata_url)
            response.raise_for_status()

            metadata = ProtectedResourceMetadata.model_validate_json(response.text)

            logger.debug(
                f"Discovered protected resource metadata: "
                f"{len(metadata.authorization_servers)} auth servers"
            )
            return metadata

        except httpx.HTTPStatusError as e:
            raise ProtectedResourceMetadataError(
                f"Failed to fetch protected resource metadata from {metadata_url}: {e}"
            ) from e
        except httpx.RequestError as e:
            raise ProtectedResourceMetadataError(
                f"Network error fetching protected resource metadata: {e}"
            ) from e
        except ValidationError as e:
            raise ProtectedResourceMetadataError(
                f"Invalid protected resource metadata from {metadata_url}: {e}"
            ) from e

    async def _discover_authorization_server_metadata(
        self, auth_server_url: str
    ) -> AuthorizationServerMetadata:
        """Discover authorization server metadata.

        Raises:
            AuthorizationServerMetadataError: If no candidate URL yields
                valid metadata
        """
        discovery_urls = self._build_discovery_urls(auth_server_url)

        for url in discovery_urls:
            try:
                logger.debug(f"Trying authorization server metadata discovery: {url}")
                response = await self._http_client.get(url)

                if response.status_code == 200:
                    metadata = AuthorizationServerMetadata.model_validate_json(
                        response.text
                    )
                    logger.debug(f"Discovered authorization server metadata at {url}")
                    return metadata
                elif response.status_code >= 500:
                    # Server error - don't try other URLs
                    break

            except ValidationError:
                # Invalid metadata - try next URL
                continue
            except httpx.RequestError:
                # Network error - try next URL
                continue

        raise AuthorizationServerMetadataError(
            f"No authorization server metadata for {auth_server_url}. "
            f"Tried URLs: {discovery_urls}"
        )

    def _build_discovery_urls(self, auth_server_url: str) -> list[str]:
        """Build ordered list of discovery URLs to try.

        RFC 8414 Section 3: path-aware discovery first, then root, then the
        same two for OpenID Connect.
        """
        parsed = urlparse(auth_server_url)
        base_url = f"{parsed.scheme}://{parsed.netloc}"
        path = parsed.path.rstrip("/")
        urls = []

        if path:
            urls.append(urljoin(base_url, f"/.well-known/oauth-authorization-server{path}"))
        urls.append(urljoin(base_url, "/.well-known/oauth-authorization-server"))

        if path:
            urls.append(urljoin(base_url, f"/.well-known/openid-configuration{path}"))
        urls.append(urljoin(base_url, "/.well-known/openid-configuration"))

        return urls
