"""Tests for building authorization URLs."""

from unittest.mock import Mock
from urllib.parse import parse_qs, urlparse

import pytest

from tether.auth.client.models.discovery import (
    AuthorizationServerMetadata,
    DiscoveryResult,
)
from tether.auth.client.models.errors import AuthorizationError, PKCEError
from tether.auth.client.models.registration import ClientInformation
from tether.auth.client.primitives.pkce import PKCEManager
from tether.auth.client.services.flow import OAuth2FlowManager

REDIRECT_URI = "http://127.0.0.1:3334/oauth/callback"


class TestStartAuthorizationFlow:
    def setup_method(self):
        # Arrange
        self.flow_manager = OAuth2FlowManager()
        self.discovery_result = DiscoveryResult(
            server_url="https://mcp.example.com/sse",
            authorization_server_metadata=AuthorizationServerMetadata(
                issuer="https://auth.example.com",
                authorization_endpoint="https://auth.example.com/authorize",
                token_endpoint="https://auth.example.com/token",
            ),
            auth_server_url="https://auth.example.com",
        )
        self.client_info = ClientInformation(client_id="client-123")

    def test_authorization_url_parameters(self):
        # Act
        url, pkce_params = self.flow_manager.start_authorization_flow(
            self.discovery_result, self.client_info, REDIRECT_URI, scope="mcp"
        )

        # Assert
        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            "https://auth.example.com/authorize"
        )
        assert params["response_type"] == ["code"]
        assert params["client_id"] == ["client-123"]
        assert params["redirect_uri"] == [REDIRECT_URI]
        assert params["code_challenge"] == [pkce_params.code_challenge]
        assert params["code_challenge_method"] == ["S256"]
        assert params["resource"] == ["https://mcp.example.com/sse"]
        assert params["scope"] == ["mcp"]

    def test_no_state_parameter(self):
        # Act
        url, _ = self.flow_manager.start_authorization_flow(
            self.discovery_result, self.client_info, REDIRECT_URI
        )

        # Assert
        params = parse_qs(urlparse(url).query)
        assert "state" not in params
        assert "scope" not in params

    def test_endpoint_with_existing_query(self):
        # Arrange
        metadata = self.discovery_result.authorization_server_metadata.model_copy(
            update={"authorization_endpoint": "https://auth.example.com/authorize?tenant=a"}
        )
        discovery_result = DiscoveryResult(
            server_url="https://mcp.example.com/sse",
            authorization_server_metadata=metadata,
            auth_server_url="https://auth.example.com",
        )

        # Act
        url, _ = self.flow_manager.start_authorization_flow(
            discovery_result, self.client_info, REDIRECT_URI
        )

        # Assert
        assert url.startswith("https://auth.example.com/authorize?tenant=a&")

    def test_fresh_pkce_for_every_flow(self):
        # Act
        _, first = self.flow_manager.start_authorization_flow(
            self.discovery_result, self.client_info, REDIRECT_URI
        )
        _, second = self.flow_manager.start_authorization_flow(
            self.discovery_result, self.client_info, REDIRECT_URI
        )

        # Assert
        assert first.code_verifier != second.code_verifier

    def test_pkce_failure_becomes_authorization_error(self):
        # Arrange
        pkce_manager = Mock(spec=PKCEManager)
        pkce_manager.generate_parameters.side_effect = PKCEError("no entropy")
        flow_manager = OAuth2FlowManager(pkce_manager)

        # Act & Assert
        with pytest.raises(AuthorizationError, match="no entropy"):
            flow_manager.start_authorization_flow(
                self.discovery_result, self.client_info, REDIRECT_URI
            )
