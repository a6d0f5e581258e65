"""CLI command running the CloudDeck HTTP API under uvicorn."""

from __future__ import annotations

import asyncio
import sys
from typing import Any

import click

from clouddeck.cli.utils import load_platform_config
from clouddeck.lib.errors import ConfigurationError
from clouddeck.lib.logging_config import get_logger, setup_logging
from clouddeck.models.config import PlatformConfig

logger = get_logger(__name__)

ENDPOINTS = (
    ("POST", "/deployments", "Start a deployment"),
    ("GET", "/deployments/{id}", "Deployment status"),
    ("POST", "/webhooks/providers/{provider}", "Provider status callbacks"),
    ("POST", "/webhooks/git/{provider}/{project}", "Git push and PR events"),
    ("GET", "/health", "Health check"),
    ("GET", "/docs", "API reference"),
)


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Configuration file (default: ./clouddeck.yaml)",
)
@click.option("--host", "-h", default="127.0.0.1", show_default=True)
@click.option("--port", "-p", type=int, default=8000, show_default=True)
@click.option(
    "--workers",
    type=click.IntRange(1, 64),
    default=None,
    help="Deployment worker threads (overrides max_workers)",
)
@click.option(
    "--state-path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Persist builds and deployments to this JSON file",
)
@click.option(
    "--cors-origins",
    default="http://localhost:3000",
    show_default=True,
    help="Comma-separated list of allowed CORS origins",
)
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def serve(
    config_path: str | None,
    host: str,
    port: int,
    workers: int | None,
    state_path: str | None,
    cors_origins: str,
    debug: bool,
) -> None:
    """Serve the deployment engine over HTTP.

    Builds and provider calls run on background worker threads; the API
    returns as soon as a deployment is recorded.

    Example:

        clouddeck serve --port 9000 --state-path .clouddeck/state.json
    """
    setup_logging(verbose=debug, quiet=False)

    try:
        config = apply_overrides(
            load_platform_config(config_path),
            max_workers=workers,
            state_path=state_path,
        )
    except ConfigurationError as e:
        click.secho("Error: Invalid configuration", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(2)

    origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    logger.info(
        f"Serving {len(config.projects)} project(s) on {host}:{port} "
        f"with {config.max_workers} worker(s)"
    )
    try:
        asyncio.run(_run_server(config, host, port, origins, debug))
    except KeyboardInterrupt:
        click.secho("\nServer stopped.", fg="yellow")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Server crashed: {e}", exc_info=True)
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)


def apply_overrides(config: PlatformConfig, **overrides: Any) -> PlatformConfig:
    """Return a copy of the configuration with the set command line values."""
    updates = {k: v for k, v in overrides.items() if v is not None}
    if not updates:
        return config
    return PlatformConfig.model_validate({**config.model_dump(), **updates})


async def _run_server(
    config: PlatformConfig,
    host: str,
    port: int,
    cors_origins: list[str],
    debug: bool,
) -> None:
    import uvicorn

    from clouddeck.serve.server import DeploymentServer

    server = DeploymentServer(
        config, host=host, port=port, cors_origins=cors_origins, debug=debug
    )
    app = server.create_app()
    await server.start()
    _print_banner(config, host, port)

    uvicorn_server = uvicorn.Server(
        uvicorn.Config(
            app=app,
            host=host,
            port=port,
            log_level="debug" if debug else "info",
        )
    )
    try:
        await uvicorn_server.serve()
    finally:
        await server.stop()


def _print_banner(config: PlatformConfig, host: str, port: int) -> None:
    click.echo()
    click.secho(f"CloudDeck listening on http://{host}:{port}", fg="cyan", bold=True)
    click.echo()
    if config.projects:
        click.secho("  Projects", bold=True)
        for project in config.projects:
            provider = project.provider or config.default_provider
            click.echo(
                f"    {project.id:<20} {provider:<8} {project.repository.branch}"
            )
        click.echo()
    click.secho("  Endpoints", bold=True)
    for method, path, description in ENDPOINTS:
        click.echo(f"    {method:<5}{path:<38}{description}")
    click.echo()
    click.secho("  Press Ctrl+C to stop", fg="yellow")
    click.echo()
