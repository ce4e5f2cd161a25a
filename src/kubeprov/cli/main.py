"""Main CLI entry point for kubeprov."""

from __future__ import annotations

import asyncio
import sys
from typing import TYPE_CHECKING

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from kubeprov import __version__
from kubeprov.core.exceptions import ConfigurationError, KubeprovError, ProvisioningFailure

if TYPE_CHECKING:
    from kubeprov.core.config import KubeprovConfig
    from kubeprov.deploy.flow import Deployment

console = Console()


class KubeprovContext:
    """Shared context for CLI commands with lazy initialization."""

    def __init__(self, config_path: str):
        """Initialize context with config path.

        Args:
            config_path: Path to configuration file
        """
        self.config_path = config_path
        self._config: KubeprovConfig | None = None
        self._deployment: Deployment | None = None

    @property
    def config(self) -> KubeprovConfig:
        """Get or create config lazily; configures logging on first load."""
        if self._config is None:
            from kubeprov.core.config import KubeprovConfig
            from kubeprov.utils.logging import setup_logging

            self._config = KubeprovConfig.from_file(self.config_path)
            setup_logging(
                level=self._config.logging.level,
                format=self._config.logging.format,
                output=self._config.logging.output,
            )
        return self._config

    @property
    def deployment(self) -> Deployment:
        """Get or create the deployment lazily."""
        if self._deployment is None:
            from kubeprov.deploy.flow import Deployment

            self._deployment = Deployment(self.config)
        return self._deployment


def _fail(error: KubeprovError) -> None:
    """Print a failure and exit non-zero."""
    if isinstance(error, ProvisioningFailure):
        console.print(f"[red]✗ {error.kind.value}: {error.message}[/red]")
    else:
        console.print(f"[red]✗ {type(error).__name__}: {error}[/red]")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    type=click.Path(),
    default="~/.kubeprov/config.yaml",
    help="Path to configuration file",
)
@click.pass_context
def cli(ctx: click.Context, config: str) -> None:
    """kubeprov - provision an EKS control plane and read back cluster state."""
    ctx.obj = KubeprovContext(config_path=config)


@cli.command()
@click.pass_context
def deploy(ctx: click.Context) -> None:
    """Provision the cluster, bind access and report the output."""
    kp_ctx: KubeprovContext = ctx.obj

    try:
        config = kp_ctx.config
        console.print(f"[bold blue]Deploying {config.cluster.name}[/bold blue]")
        console.print(f"Region: {config.aws.region}")
        console.print(f"VPC: {config.network.vpc_id}")
        console.print(f"Version: {config.cluster.version}\n")

        report = asyncio.run(kp_ctx.deployment.deploy())
    except KubeprovError as e:
        _fail(e)
        return

    console.print(f"[green]✓ Cluster {report.cluster.name} is {report.cluster.phase.value}[/green]")
    console.print(f"  Endpoint: {report.cluster.endpoint}")
    console.print(f"  Subnets: {', '.join(report.subnet_ids)}")
    console.print(f"  Automation role: {report.automation_identity.role_arn}")
    console.print(f"[bold]{report.output.key}[/bold] = {report.output.value}")


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def destroy(ctx: click.Context, yes: bool) -> None:
    """Delete the cluster, its access entry and both roles."""
    kp_ctx: KubeprovContext = ctx.obj

    try:
        name = kp_ctx.config.cluster.name
        if not yes:
            click.confirm(f"Destroy cluster {name} and its roles?", abort=True)

        state = asyncio.run(kp_ctx.deployment.destroy())
    except KubeprovError as e:
        _fail(e)
        return

    console.print(f"[green]✓ Cluster {state.name} is {state.phase.value}[/green]")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the cluster's lifecycle phase."""
    kp_ctx: KubeprovContext = ctx.obj

    try:
        state = asyncio.run(kp_ctx.deployment.status())
    except KubeprovError as e:
        _fail(e)
        return

    table = Table(title=f"Cluster {state.name}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Phase", state.phase.value)
    table.add_row("Version", state.version or "-")
    table.add_row("Endpoint", state.endpoint or "-")
    table.add_row("ARN", state.arn or "-")
    if state.failure_reason:
        table.add_row("Failure", state.failure_reason)
    console.print(table)


@cli.command(name="get-object")
@click.option("--type", "object_type", help="Object kind (default from config)")
@click.option("--name", help="Object name (default from config)")
@click.option("--namespace", help="Namespace (default from config)")
@click.option("--path", "json_path", help="Field path, e.g. $.metadata.uid")
@click.option("--timeout", type=float, help="Timeout in seconds")
@click.option("--api-version", help="Group/version when the kind is ambiguous, e.g. apps/v1")
@click.pass_context
def get_object(
    ctx: click.Context,
    object_type: str | None,
    name: str | None,
    namespace: str | None,
    json_path: str | None,
    timeout: float | None,
    api_version: str | None,
) -> None:
    """Read one field from an object on the deployed cluster."""
    kp_ctx: KubeprovContext = ctx.obj

    from kubeprov.core.models import ExecutionRequest

    try:
        request = kp_ctx.config.execution.request()
        overrides = {
            "object_type": object_type,
            "name": name,
            "namespace": namespace,
            "json_path": json_path,
            "timeout_seconds": timeout,
            "api_version": api_version,
        }
        try:
            request = ExecutionRequest.model_validate(
                {**request.model_dump(), **{k: v for k, v in overrides.items() if v is not None}}
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid read request: {e}") from e

        result = asyncio.run(kp_ctx.deployment.read_object(request))
    except KubeprovError as e:
        _fail(e)
        return

    if not result.success:
        console.print(f"[red]✗ {result.failure.value}: {result.message}[/red]")
        sys.exit(1)

    click.echo(result.value)


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate configuration and AWS connectivity."""
    kp_ctx: KubeprovContext = ctx.obj

    console.print("[bold]1. Configuration File[/bold]")
    try:
        config = kp_ctx.config
    except KubeprovError as e:
        console.print(f"  [red]✗ {e}[/red]")
        sys.exit(1)
    console.print("  [green]✓ Config file valid[/green]\n")

    console.print("[bold]2. AWS Connectivity[/bold]")
    try:
        account = asyncio.run(kp_ctx.deployment.account_id())
        console.print(f"  [green]✓ Authenticated to account {account}[/green]\n")
    except KubeprovError as e:
        console.print(f"  [red]✗ AWS connection failed: {e}[/red]")
        sys.exit(1)

    console.print("[bold]3. Network[/bold]")
    try:
        subnet_ids = kp_ctx.deployment.resolver.select_subnets(
            config.network.vpc_id, config.network.selection()
        )
        console.print(f"  [green]✓ {len(subnet_ids)} subnet(s) selected[/green]\n")
    except KubeprovError as e:
        console.print(f"  [red]✗ {e}[/red]")
        sys.exit(1)

    console.print("[bold green]✓ Validation complete![/bold green]")


if __name__ == "__main__":
    cli()
