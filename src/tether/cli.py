"""Command line entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable
from typing import List, Optional

import typer
from dotenv import load_dotenv

from tether.auth.client.models.errors import OAuth2Error
from tether.bridge import run_client, run_proxy
from tether.client import RemoteError
from tether.config import (
    CLIENT_CALLBACK_PORT,
    PROXY_CALLBACK_PORT,
    VERSION,
    BridgeConfig,
    ConfigurationError,
    parse_callback_port,
    parse_headers,
    validate_server_url,
)
from tether.coordination.callback_server import PortUnavailableError, find_available_port

logger = logging.getLogger("tether")

app = typer.Typer(
    name="tether",
    help="Bridge a local stdio MCP client to a remote MCP server, with OAuth.",
    no_args_is_help=True,
    add_completion=False,
)


def version_callback(value: bool):
    if value:
        typer.echo(f"tether {VERSION}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
):
    """Tether - remote MCP servers for stdio-only clients."""
    load_dotenv()


def configure_logging(debug: bool = False) -> None:
    """Send all logging to stderr; stdout belongs to the MCP client."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(process)d] %(message)s"))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


def build_config(
    server_url: str,
    callback_port: str | None,
    headers: list[str] | None,
    allow_http: bool,
    default_port: int,
    client_name: str,
) -> BridgeConfig:
    """Validate arguments into a ``BridgeConfig``.

    Raises:
        ConfigurationError: Invalid URL, port or header
        PortUnavailableError: No port given and none free near the default
    """
    validate_server_url(server_url, allow_http)
    port = parse_callback_port(callback_port)
    parsed_headers = parse_headers(headers or [])

    if port is None:
        port = find_available_port(default_port)
        logger.debug(f"Using callback port {port}")

    return BridgeConfig(
        server_url=server_url,
        callback_port=port,
        headers=parsed_headers,
        client_name=client_name,
    )


def _load_config(*args, **kwargs) -> BridgeConfig:
    try:
        return build_config(*args, **kwargs)
    except (ConfigurationError, PortUnavailableError) as e:
        logger.error(f"Error: {e}")
        raise typer.Exit(code=1)


def _run(main_coro: Awaitable[None]) -> None:
    try:
        asyncio.run(main_coro)
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Shutting down...")
    except (OAuth2Error, RemoteError, ConnectionError, OSError) as e:
        logger.error(f"Fatal error: {e}")
        raise typer.Exit(code=1)


@app.command()
def proxy(
    server_url: str = typer.Argument(..., help="URL of the remote MCP server (SSE)"),
    callback_port: Optional[str] = typer.Argument(
        None, help="Port for the OAuth callback listener"
    ),
    header: Optional[List[str]] = typer.Option(
        None, "--header", "-H", help="Extra request header as 'Name: Value'"
    ),
    allow_http: bool = typer.Option(
        False, "--allow-http", help="Allow plain HTTP to non-loopback hosts"
    ),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """Proxy stdio MCP traffic to a remote server."""
    configure_logging(debug)
    config = _load_config(
        server_url,
        callback_port,
        header,
        allow_http,
        default_port=PROXY_CALLBACK_PORT,
        client_name="Tether MCP Proxy",
    )
    _run(run_proxy(config))


@app.command()
def client(
    server_url: str = typer.Argument(..., help="URL of the remote MCP server (SSE)"),
    callback_port: Optional[str] = typer.Argument(
        None, help="Port for the OAuth callback listener"
    ),
    header: Optional[List[str]] = typer.Option(
        None, "--header", "-H", help="Extra request header as 'Name: Value'"
    ),
    allow_http: bool = typer.Option(
        False, "--allow-http", help="Allow plain HTTP to non-loopback hosts"
    ),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """Connect to a remote server, list its tools and resources, then listen."""
    configure_logging(debug)
    config = _load_config(
        server_url,
        callback_port,
        header,
        allow_http,
        default_port=CLIENT_CALLBACK_PORT,
        client_name="Tether MCP Client",
    )
    _run(run_client(config))


if __name__ == "__main__":
    app()
