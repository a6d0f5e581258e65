"""CLI command listing hosting providers and their configuration state."""

from __future__ import annotations

import click

from clouddeck.cli.utils import handle_cli_errors, load_platform_config
from clouddeck.deploy.registry import AdapterRegistry
from clouddeck.models.config import PlatformConfig


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Configuration file (default: ./clouddeck.yaml)",
)
def providers(config_path: str | None) -> None:
    """List supported hosting providers.

    Shows whether an API credential and a webhook secret are configured for
    each provider.
    """
    with handle_cli_errors():
        config = load_platform_config(config_path)
        click.echo()
        click.secho("Providers", bold=True)
        for name in AdapterRegistry.supported_providers():
            credential, secret = provider_settings(config, name)
            default = " (default)" if name == config.default_provider else ""
            click.echo(f"  {name:<8}{default}")
            _echo_flag("credential", credential)
            _echo_flag("webhook secret", secret)
        click.echo()


def provider_settings(config: PlatformConfig, name: str) -> tuple[bool, bool]:
    """Return whether a provider has a credential and a webhook secret."""
    settings = getattr(config.providers, name)
    credential = getattr(settings, "token", None) or getattr(settings, "api_key", None)
    return bool(credential), bool(settings.webhook_secret)


def _echo_flag(label: str, present: bool) -> None:
    click.echo(f"    {label + ':':<16}", nl=False)
    if present:
        click.secho("configured", fg="green")
    else:
        click.secho("missing", fg="yellow")
