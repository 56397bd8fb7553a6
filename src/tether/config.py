"""Bridge configuration.

A ``BridgeConfig`` is built once from the command line and passed down
explicitly; nothing below the CLI reads the environment on its own.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from tether.auth.storage import server_fingerprint

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

CONFIG_DIR_ENV = "TETHER_CONFIG_DIR"
DEFAULT_CONFIG_ROOT = Path.home() / ".mcp-auth"

DEFAULT_CALLBACK_PATH = "/oauth/callback"
PROXY_CALLBACK_PORT = 3334
CLIENT_CALLBACK_PORT = 3333

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

_HEADER_PATTERN = re.compile(r"^([A-Za-z0-9_-]+):(.*)$")
_ENV_REFERENCE = re.compile(r"\$\{([^}]+)\}")


class ConfigurationError(ValueError):
    """Raised for invalid command line input, before any I/O happens."""


def resolve_config_dir(environ: Mapping[str, str] | None = None) -> Path:
    """Directory holding all persisted state for this version of the bridge.

    The version subdirectory keeps on-disk formats of different releases
    apart.
    """
    environ = os.environ if environ is None else environ
    base = environ.get(CONFIG_DIR_ENV)
    root = Path(base).expanduser() if base else DEFAULT_CONFIG_ROOT
    return root / f"tether-{VERSION}"


def validate_server_url(server_url: str, allow_http: bool = False) -> str:
    """Reject malformed URLs and plain HTTP to anything but loopback."""
    parsed = urlparse(server_url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ConfigurationError(f"Invalid URL format: {server_url}")

    if (
        parsed.scheme == "http"
        and parsed.hostname not in LOOPBACK_HOSTS
        and not allow_http
    ):
        raise ConfigurationError(
            "Non-HTTPS URLs are only allowed for localhost or when --allow-http "
            "is provided"
        )

    return server_url


def parse_callback_port(raw: str | None) -> int | None:
    if raw is None:
        return None

    try:
        port = int(raw, 10)
    except ValueError:
        raise ConfigurationError(f"Invalid port number: {raw}") from None

    if not 0 < port < 65536:
        raise ConfigurationError(f"Invalid port number: {raw}")
    return port


def parse_headers(
    values: Iterable[str], environ: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Parse ``Name: Value`` arguments.

    ``${VAR}`` references in values are replaced from the environment;
    unknown variables become empty strings. Malformed arguments are skipped
    with a warning.
    """
    environ = os.environ if environ is None else environ
    headers: dict[str, str] = {}

    for raw in values:
        match = _HEADER_PATTERN.match(raw)
        if not match:
            logger.warning(f"Ignoring invalid header argument: {raw}")
            continue

        name, value = match.group(1), match.group(2).strip()

        def substitute(reference: re.Match[str]) -> str:
            variable = reference.group(1)
            replacement = environ.get(variable)
            if replacement is None:
                logger.warning(
                    f"Environment variable '{variable}' not found for header "
                    f"'{name}'"
                )
                return ""
            logger.debug(f"Replacing {reference.group(0)} in header '{name}'")
            return replacement

        headers[name] = _ENV_REFERENCE.sub(substitute, value)

    return headers


@dataclass(frozen=True)
class BridgeConfig:
    """Everything one bridge process needs to know about its job."""

    server_url: str
    callback_port: int
    headers: dict[str, str] = field(default_factory=dict)
    config_dir: Path = field(default_factory=resolve_config_dir)
    callback_path: str = DEFAULT_CALLBACK_PATH
    client_name: str = "Tether MCP Proxy"
    coordinate: bool = True

    @property
    def fingerprint(self) -> str:
        return server_fingerprint(self.server_url)

    def redirect_uri(self, port: int | None = None) -> str:
        return f"http://127.0.0.1:{port or self.callback_port}{self.callback_path}"
