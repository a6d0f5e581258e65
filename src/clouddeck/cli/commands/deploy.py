"""CLI commands for CloudDeck deployments.

Implements the 'clouddeck deploy' command group. Subcommands talk to a
running ``clouddeck serve`` over HTTP; ``deploy run --local`` runs the whole
build and deploy sequence in-process instead.
"""

from __future__ import annotations

import sys
from typing import Any

import click

from clouddeck.cli.client import DEFAULT_SERVER_URL, ApiClient
from clouddeck.cli.utils import handle_cli_errors, load_platform_config
from clouddeck.lib.logging_config import get_logger, setup_logging
from clouddeck.models.build import LogEntry
from clouddeck.models.deployment import DeploymentStatus, Environment

logger = get_logger(__name__)

ENVIRONMENTS = [env.value for env in Environment]

STATUS_COLORS = {
    DeploymentStatus.RUNNING.value: "green",
    DeploymentStatus.FAILED.value: "red",
    DeploymentStatus.CANCELLED.value: "yellow",
    DeploymentStatus.ROLLED_BACK.value: "yellow",
}


@click.group(name="deploy", invoke_without_command=True)
@click.option(
    "--server",
    envvar="CLOUDDECK_SERVER_URL",
    default=DEFAULT_SERVER_URL,
    show_default=True,
    help="CloudDeck server URL",
)
@click.option(
    "--user",
    "user_id",
    envvar="CLOUDDECK_USER_ID",
    default=None,
    help="User id recorded on created deployments",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose debug logging")
@click.option("--quiet", "-q", is_flag=True, help="Only print identifiers")
@click.pass_context
def deploy(
    ctx: click.Context,
    server: str,
    user_id: str | None,
    verbose: bool,
    quiet: bool,
) -> None:
    """Deploy projects and manage deployments.

    Subcommands:

        run       Start a deployment
        status    Show a deployment
        logs      Show provider logs of a deployment
        cancel    Cancel an unfinished deployment
        rollback  Redeploy a previous deployment's content
        promote   Deploy a running deployment into another environment

    Example:

        clouddeck deploy run web --env staging

        clouddeck deploy rollback 01J9Z3... --reason "broken checkout"
    """
    ctx.ensure_object(dict)
    ctx.obj.update(server=server, user_id=user_id, quiet=quiet)
    if not quiet:
        setup_logging(verbose=verbose, quiet=quiet)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@deploy.command()
@click.argument("project_id")
@click.option(
    "--env",
    "environment",
    type=click.Choice(ENVIRONMENTS),
    default=Environment.PRODUCTION.value,
    show_default=True,
    help="Target environment",
)
@click.option("--provider", default=None, help="Hosting provider override")
@click.option("--branch", default=None, help="Branch to deploy")
@click.option("--commit", "commit_sha", default=None, help="Commit to deploy")
@click.option(
    "--local",
    is_flag=True,
    help="Run the build and deploy in this process instead of on a server",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Configuration file for --local (default: ./clouddeck.yaml)",
)
@click.option(
    "--timeout",
    type=float,
    default=1800.0,
    show_default=True,
    help="Seconds to wait for a --local deployment",
)
@click.pass_context
def run(
    ctx: click.Context,
    project_id: str,
    environment: str,
    provider: str | None,
    branch: str | None,
    commit_sha: str | None,
    local: bool,
    config_path: str | None,
    timeout: float,
) -> None:
    """Start a deployment of PROJECT_ID."""
    quiet = ctx.obj["quiet"]
    with handle_cli_errors():
        if local:
            data = _run_local(
                config_path,
                project_id,
                environment=environment,
                provider=provider,
                branch=branch,
                commit_sha=commit_sha,
                user_id=ctx.obj["user_id"],
                timeout=timeout,
                quiet=quiet,
            )
        else:
            data = _client(ctx).post(
                "/deployments",
                {
                    "project_id": project_id,
                    "environment": environment,
                    "provider": provider,
                    "branch": branch,
                    "commit_sha": commit_sha,
                },
            )

        if quiet:
            click.echo(data["id"])
            return
        heading = "Deployment Finished" if local else "Deployment Started"
        _print_deployment(data, heading)
        if local and data["status"] != DeploymentStatus.RUNNING.value:
            sys.exit(3)


@deploy.command()
@click.argument("deployment_id")
@click.option("--refresh", is_flag=True, help="Ask the provider for fresh status")
@click.pass_context
def status(ctx: click.Context, deployment_id: str, refresh: bool) -> None:
    """Show a deployment."""
    with handle_cli_errors():
        client = _client(ctx)
        if refresh:
            data = client.post(f"/deployments/{deployment_id}/refresh")
        else:
            data = client.get(f"/deployments/{deployment_id}")

        if ctx.obj["quiet"]:
            click.echo(data["status"])
            return
        _print_deployment(data, "Deployment Status")


@deploy.command()
@click.argument("deployment_id")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--offset", type=int, default=0, show_default=True)
@click.pass_context
def logs(ctx: click.Context, deployment_id: str, limit: int, offset: int) -> None:
    """Show provider logs of a deployment."""
    with handle_cli_errors():
        data = _client(ctx).get(
            f"/deployments/{deployment_id}/logs", limit=limit, offset=offset
        )
        for item in data["logs"]:
            _echo_log(LogEntry.model_validate(item))
        if data.get("has_more") and not ctx.obj["quiet"]:
            click.secho(
                f"... more available (--offset {offset + limit})", fg="bright_black"
            )


@deploy.command()
@click.argument("deployment_id")
@click.pass_context
def cancel(ctx: click.Context, deployment_id: str) -> None:
    """Cancel an unfinished deployment."""
    with handle_cli_errors():
        data = _client(ctx).post(f"/deployments/{deployment_id}/cancel")
        if ctx.obj["quiet"]:
            click.echo(data["status"])
            return
        _print_deployment(data, "Deployment Cancelled")


@deploy.command()
@click.argument("deployment_id")
@click.option("--reason", default=None, help="Why the rollback is needed")
@click.pass_context
def rollback(ctx: click.Context, deployment_id: str, reason: str | None) -> None:
    """Redeploy DEPLOYMENT_ID's content as a new deployment."""
    with handle_cli_errors():
        data = _client(ctx).post(
            f"/deployments/{deployment_id}/rollback", {"reason": reason}
        )
        if ctx.obj["quiet"]:
            click.echo(data["id"])
            return
        _print_deployment(data, "Rollback Started")


@deploy.command()
@click.argument("deployment_id")
@click.option(
    "--to",
    "target_environment",
    type=click.Choice(ENVIRONMENTS),
    required=True,
    help="Environment to promote into",
)
@click.pass_context
def promote(ctx: click.Context, deployment_id: str, target_environment: str) -> None:
    """Deploy DEPLOYMENT_ID's build into another environment."""
    with handle_cli_errors():
        data = _client(ctx).post(
            f"/deployments/{deployment_id}/promote",
            {"target_environment": target_environment},
        )
        if ctx.obj["quiet"]:
            click.echo(data["id"])
            return
        _print_deployment(data, "Promotion Started")


def _client(ctx: click.Context) -> ApiClient:
    return ApiClient(ctx.obj["server"], user_id=ctx.obj["user_id"])


def _run_local(
    config_path: str | None,
    project_id: str,
    *,
    environment: str,
    provider: str | None,
    branch: str | None,
    commit_sha: str | None,
    user_id: str | None,
    timeout: float,
    quiet: bool,
) -> dict[str, Any]:
    """Deploy in-process and wait for the result."""
    from clouddeck.deploy.services import DeploymentServices

    config = load_platform_config(config_path)
    services = DeploymentServices.from_config(config)
    if not quiet:
        services.pipeline.add_log_listener(lambda _build_id, entry: _echo_log(entry))
    try:
        deployment = services.orchestrator.deploy(
            project_id,
            environment=environment,
            provider=provider,
            branch=branch,
            commit_sha=commit_sha,
            user_id=user_id,
        )
        if not quiet:
            click.echo(f"Deployment {deployment.id} started")
        deployment = services.orchestrator.wait(deployment.id, timeout=timeout)
    finally:
        services.shutdown()
    return deployment.model_dump(mode="json")


def _echo_log(entry: LogEntry) -> None:
    timestamp = entry.timestamp.strftime("%H:%M:%S")
    line = f"[{timestamp}] {entry.message}"
    if entry.level.value == "error":
        click.secho(line, fg="red")
    elif entry.level.value == "warn":
        click.secho(line, fg="yellow")
    else:
        click.echo(line)


def _print_deployment(data: dict[str, Any], heading: str) -> None:
    status_value = data.get("status", "")
    click.echo()
    click.secho(heading, bold=True)
    click.echo(f"  ID:          {data['id']}")
    click.echo(f"  Project:     {data['project_id']}")
    click.echo(f"  Environment: {data['environment']}")
    click.echo(f"  Provider:    {data['provider']}")
    click.echo(f"  Branch:      {data['branch']}")
    click.echo("  Status:      ", nl=False)
    click.secho(status_value, fg=STATUS_COLORS.get(status_value))
    if data.get("url"):
        click.echo(f"  URL:         {data['url']}")
    if data.get("build_id"):
        click.echo(f"  Build:       {data['build_id']}")
    if data.get("rollback_from_id"):
        click.echo(f"  Rollback of: {data['rollback_from_id']}")
    if data.get("promoted_from_id"):
        click.echo(f"  Promoted:    {data['promoted_from_id']}")
    if data.get("error_message"):
        click.secho(f"  Error:       {data['error_message']}", fg="red")
    click.echo()
