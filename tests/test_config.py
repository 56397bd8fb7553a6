from pathlib import Path

import pytest

from tether.config import (
    VERSION,
    BridgeConfig,
    ConfigurationError,
    parse_callback_port,
    parse_headers,
    resolve_config_dir,
    validate_server_url,
)


class TestValidateServerUrl:
    def test_https_is_accepted(self):
        assert validate_server_url("https://mcp.example.com/sse") == (
            "https://mcp.example.com/sse"
        )

    @pytest.mark.parametrize(
        "url", ["http://localhost:8080/sse", "http://127.0.0.1/sse", "http://[::1]/sse"]
    )
    def test_http_to_loopback_is_accepted(self, url):
        assert validate_server_url(url) == url

    def test_http_to_remote_host_needs_flag(self):
        # Act & Assert
        with pytest.raises(ConfigurationError, match="--allow-http"):
            validate_server_url("http://mcp.example.com/sse")
        assert validate_server_url("http://mcp.example.com/sse", allow_http=True)

    @pytest.mark.parametrize("url", ["not a url", "ftp://example.com", "https://"])
    def test_malformed(self, url):
        with pytest.raises(ConfigurationError, match="Invalid URL"):
            validate_server_url(url)


class TestParseCallbackPort:
    def test_absent(self):
        assert parse_callback_port(None) is None

    def test_valid(self):
        assert parse_callback_port("4000") == 4000

    @pytest.mark.parametrize("raw", ["abc", "0", "65536", "-1"])
    def test_invalid(self, raw):
        with pytest.raises(ConfigurationError, match="Invalid port number"):
            parse_callback_port(raw)


class TestParseHeaders:
    def test_plain_header(self):
        assert parse_headers(["X-Api-Key: secret"], environ={}) == {
            "X-Api-Key": "secret"
        }

    def test_environment_substitution(self):
        # Act
        headers = parse_headers(
            ["Authorization: Bearer ${TOKEN}", "X-Missing: a${NOPE}b"],
            environ={"TOKEN": "t-1"},
        )

        # Assert
        assert headers == {"Authorization": "Bearer t-1", "X-Missing": "ab"}

    def test_malformed_headers_are_skipped(self):
        assert parse_headers(["no colon here", "Bad Name: x"], environ={}) == {}

    def test_value_may_contain_colons(self):
        assert parse_headers(["X-Url: https://a.example:8443"], environ={}) == {
            "X-Url": "https://a.example:8443"
        }


class TestBridgeConfig:
    def test_config_dir_from_environment(self, tmp_path):
        # Act
        config_dir = resolve_config_dir({"TETHER_CONFIG_DIR": str(tmp_path)})

        # Assert
        assert config_dir == tmp_path / f"tether-{VERSION}"

    def test_default_config_dir(self):
        assert resolve_config_dir({}) == Path.home() / ".mcp-auth" / f"tether-{VERSION}"

    def test_redirect_uri_and_fingerprint(self, tmp_path):
        # Arrange
        config = BridgeConfig(
            server_url="https://mcp.example.com/sse",
            callback_port=3334,
            config_dir=tmp_path,
        )

        # Act & Assert
        assert config.redirect_uri() == "http://127.0.0.1:3334/oauth/callback"
        assert config.redirect_uri(4001) == "http://127.0.0.1:4001/oauth/callback"
        assert len(config.fingerprint) == 32
