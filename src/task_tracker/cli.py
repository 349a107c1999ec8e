"""
Command line entry point for the Task Tracker service.

    task-tracker serve [--host HOST] [--port PORT] [--config FILE] [--log-level LEVEL]
    task-tracker init-db [--config FILE]
"""

import logging
import socket
import sys
from typing import Optional

import click
import uvicorn

from .api import create_app
from .backend import BackendClient
from .config import ConfigurationError, Settings, load_settings
from .logging_setup import configure_logging
from .store import RecordStoreError

logger = logging.getLogger(__name__)


class PortConflictError(Exception):
    """Requested port is already bound."""


def check_port_available(host: str, port: int) -> bool:
    """True when ``port`` can be bound on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def print_startup_banner(settings: Settings) -> None:
    click.echo("Task Tracker")
    click.echo(f"  API:     http://{settings.host}:{settings.port}/api")
    click.echo(f"  Health:  http://{settings.host}:{settings.port}/healthz")
    click.echo(f"  Docs:    http://{settings.host}:{settings.port}/docs")


def _load(config_file: Optional[str], **overrides) -> Settings:
    try:
        settings = load_settings(config_file)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    updates = {k: v for k, v in overrides.items() if v is not None}
    if updates:
        settings = settings.model_copy(update=updates)
    return settings


@click.group()
def main():
    """Personal task tracker service."""


@main.command()
@click.option("--host", default=None, help="Interface to bind (default from settings)")
@click.option("--port", type=int, default=None, help="Port to bind (default from settings)")
@click.option("--config", "config_file", type=click.Path(dir_okay=False), default=None,
              help="YAML settings file")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              default=None, help="Logging level")
def serve(host, port, config_file, log_level):
    """Run the HTTP API with uvicorn."""
    settings = _load(config_file, host=host, port=port, log_level=log_level.upper() if log_level else None)
    configure_logging(settings.log_level)

    if not check_port_available(settings.host, settings.port):
        raise click.ClickException(str(PortConflictError(f"Port {settings.port} is already in use")))

    print_startup_banner(settings)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


@main.command("init-db")
@click.option("--config", "config_file", type=click.Path(dir_okay=False), default=None,
              help="YAML settings file")
def init_db(config_file):
    """Create the record store schema and exit."""
    settings = _load(config_file)
    configure_logging(settings.log_level)
    try:
        with BackendClient(settings):
            pass
    except (RecordStoreError, ConfigurationError) as e:
        raise click.ClickException(f"Failed to initialize database: {e}")
    click.echo(f"Database ready: {settings.database_path}")


if __name__ == "__main__":
    main()
