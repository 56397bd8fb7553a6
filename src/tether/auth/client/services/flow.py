"""OAuth 2.1 authorization flow service.

Builds the authorization URL for the code flow with PKCE and the RFC 8707
resource indicator.
"""

from __future__ import annotations

import logging

from tether.auth.client.models.discovery import DiscoveryResult
from tether.auth.client.models.errors import AuthorizationError, PKCEError
from tether.auth.client.models.flow import AuthorizationRequest
from tether.auth.client.models.registration import ClientInformation
from tether.auth.client.models.security import PKCEParameters
from tether.auth.client.primitives.pkce import PKCEManager

logger = logging.getLogger(__name__)


class OAuth2FlowManager:
    """Starts authorization code flows.

    The code comes back through the local callback listener, so this class
    only produces the URL and the PKCE parameters that must be kept for the
    token exchange.
    """

    def __init__(self, pkce_manager: PKCEManager | None = None):
        self._pkce_manager = pkce_manager or PKCEManager()

    def start_authorization_flow(
        self,
        discovery_result: DiscoveryResult,
        client_info: ClientInformation,
        redirect_uri: str,
        scope: str | None = None,
    ) -> tuple[str, PKCEParameters]:
        """Start an OAuth 2.1 authorization flow.

        Args:
            discovery_result: OAuth server discovery results
            client_info: Registered client
            redirect_uri: URI to redirect to after authorization
            scope: Optional scope to request

        Returns:
            Tuple of (authorization_url, pkce_parameters)

        Raises:
            AuthorizationError: If flow setup fails
        """
        try:
            pkce_params = self._pkce_manager.generate_parameters()
        except PKCEError as e:
            raise AuthorizationError(f"Failed to start authorization flow: {e}") from e

        resource_url = discovery_result.get_resource_url()
        logger.debug(
            f"Starting authorization flow for client {client_info.client_id} "
            f"with resource {resource_url}"
        )

        auth_request = AuthorizationRequest(
            authorization_endpoint=(
                discovery_result.authorization_server_metadata.authorization_endpoint
            ),
            client_id=client_info.client_id,
            redirect_uri=redirect_uri,
            code_challenge=pkce_params.code_challenge,
            code_challenge_method=pkce_params.code_challenge_method,
            resource=resource_url,
            scope=scope,
        )

        return auth_request.build_authorization_url(), pkce_params
