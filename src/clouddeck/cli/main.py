"""CloudDeck command line entry point."""

from __future__ import annotations

import click

from clouddeck import __version__
from clouddeck.cli.commands.deploy import deploy
from clouddeck.cli.commands.providers import providers
from clouddeck.cli.commands.serve import serve
from clouddeck.config.env_loader import load_env_file


@click.group()
@click.version_option(version=__version__, prog_name="clouddeck")
@click.option(
    "--env-file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Load environment variables from this file (default: ./.env)",
)
def main(env_file: str | None) -> None:
    """CloudDeck - multi-cloud deployment orchestration."""
    load_env_file(env_file)


main.add_command(deploy)
main.add_command(providers)
main.add_command(serve)


if __name__ == "__main__":
    main()
