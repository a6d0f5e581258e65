"""Shared helpers for CLI commands."""

from __future__ import annotations

import sys
from collections.abc import Generator
from contextlib import contextmanager

import click

from clouddeck.config.loader import ConfigLoader
from clouddeck.lib.errors import CloudDeckError, ConfigurationError
from clouddeck.lib.logging_config import get_logger
from clouddeck.models.config import PlatformConfig

logger = get_logger(__name__)


def load_platform_config(config_path: str | None) -> PlatformConfig:
    """Load configuration from a path or the default file in the working dir.

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    loader = ConfigLoader()
    path = config_path or loader.find_config(".")
    if path is None:
        logger.debug("No clouddeck.yaml found; using environment and defaults")
    return loader.load(path)


@contextmanager
def handle_cli_errors() -> Generator[None, None, None]:
    """Context manager for consistent error handling in CLI commands.

    Exit codes:
        2: Configuration error
        3: Deployment/execution error
    """
    try:
        yield
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(2)
    except CloudDeckError as e:
        logger.error(f"Command failed: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(3)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(3)
