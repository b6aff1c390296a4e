#!/usr/bin/env python3
"""Command line entry point for the browser relay using Typer."""

import asyncio
import json
import logging
import socket
from pathlib import Path
from typing import Annotated, List, Optional

import typer
import uvicorn

from .. import __version__
from ..config import load_config
from ..discovery import DiscoveryService
from ..errors import DiscoveryFailed

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="browser-relay",
    help="Browser Relay - bridge between a DevTools capture agent and tool clients",
    add_completion=False,
    rich_markup_mode="rich"
)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def port_is_free(host: str, port: int) -> bool:
    """Check whether ``port`` can be bound on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def choose_port(host: str, start: int, count: int) -> Optional[int]:
    """First free port of ``start .. start + count - 1``."""
    for port in range(start, start + count):
        if port_is_free(host, port):
            return port
        logger.info(f"Port {port} is in use, trying the next one")
    return None


@app.callback()
def main():
    """
    Browser Relay - bridge between a DevTools capture agent and tool clients.
    """


@app.command(name="version")
def show_version():
    """Show version information."""
    typer.echo(f"Browser Relay v{__version__}")


@app.command()
def serve(
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to relay YAML configuration")
    ] = None,
    host: Annotated[
        Optional[str],
        typer.Option("--host", help="Interface to bind (default from config)")
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Preferred port (default from config)")
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    ] = None,
):
    """Run the relay HTTP server on the first free port of the configured range."""
    config = load_config(config_path)
    if host:
        config.server.host = host
    if port:
        config.server.port = port
    if log_level:
        config.server.log_level = log_level.upper()

    configure_logging(config.server.log_level)

    selected = choose_port(config.server.host, config.server.port, config.server.port_range)
    if selected is None:
        last = config.server.port + config.server.port_range - 1
        typer.echo(f"No free port in {config.server.port}-{last}", err=True)
        raise typer.Exit(1)

    from ..api import create_app

    typer.echo(f"Browser Relay v{__version__} listening on http://{config.server.host}:{selected}")
    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=selected,
        log_level=config.server.log_level.lower(),
    )


@app.command()
def discover(
    hosts: Annotated[
        Optional[List[str]],
        typer.Option("--host", help="Candidate host (repeatable)")
    ] = None,
    port_start: Annotated[
        Optional[int],
        typer.Option("--port-start", help="First candidate port")
    ] = None,
    port_count: Annotated[
        Optional[int],
        typer.Option("--port-count", help="Number of candidate ports")
    ] = None,
    timeout: Annotated[
        Optional[float],
        typer.Option("--timeout", help="Per-attempt timeout in seconds")
    ] = None,
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to relay YAML configuration")
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log every probe")
    ] = False,
):
    """Locate a running relay and print its endpoint as JSON."""
    config = load_config(config_path)
    configure_logging("DEBUG" if verbose else "WARNING")

    settings = config.discovery
    candidate_hosts = hosts or settings.hosts
    start = port_start or settings.port_start
    count = port_count or settings.port_count
    service = DiscoveryService(expected_name=settings.expected_name)

    try:
        endpoint = asyncio.run(service.locate(
            candidate_hosts,
            list(range(start, start + count)),
            per_attempt_timeout=timeout or settings.probe_timeout
        ))
    except DiscoveryFailed as e:
        typer.echo(json.dumps(e.to_info(), indent=2), err=True)
        raise typer.Exit(1)

    typer.echo(json.dumps({**endpoint.model_dump(), "base_url": endpoint.base_url}, indent=2))


if __name__ == "__main__":
    app()
