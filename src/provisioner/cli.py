"""AppRun provisioner CLI (apprun-provisioner).

Usage:
    apprun-provisioner -c cluster.yaml plan
    apprun-provisioner -c cluster.yaml apply [--activate] [-y]
    apprun-provisioner -c cluster.yaml versions -a APP
    apprun-provisioner -c cluster.yaml diff -a APP [--from N] [--to N]
    apprun-provisioner -c cluster.yaml activate -a APP [-t N]
    apprun-provisioner dump CLUSTER
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from .config import Config, ConfigurationError
from .diff_normalizer import ComparisonError
from .executor import ApplyError, ApplyOptions
from .gateway import Gateway, GatewayError, HttpGateway, ResolutionError
from .models import ClusterConfig
from .planner import ActionType, Plan, PlannedAction
from .reconciler import Reconciler
from .spec_loader import SpecLoadError, dump_config, load_config
from .state import JsonFileLedgerStore, LedgerError, SecretVersionLedger
from .versions import (
    VersionDiff,
    VersionList,
    activate_version,
    diff_versions,
    dump_cluster,
    list_versions,
)

T = TypeVar("T")

IMAGE_COLUMN_WIDTH = 30
CREATED_FORMAT = "%Y-%m-%d %H:%M:%S"

# Errors reported to the operator as a one-line failure instead of a traceback
OPERATOR_ERRORS = (
    ConfigurationError,
    SpecLoadError,
    LedgerError,
    GatewayError,
    ResolutionError,
    ApplyError,
    ComparisonError,
)


def create_gateway(config: Config) -> Gateway:
    """Build the HTTP gateway for the configured endpoint."""
    return HttpGateway(config)


def run_with_gateway(operation: Callable[[Gateway, Config], Awaitable[T]], failure: str) -> T:
    """Run an async operation against a fresh gateway, mapping errors to click."""

    async def runner() -> T:
        config = Config.from_env()
        gateway = create_gateway(config)
        try:
            return await operation(gateway, config)
        finally:
            gateway.close()

    try:
        return asyncio.run(runner())
    except OPERATOR_ERRORS as e:
        raise click.ClickException(f"{failure}: {e}") from e


def require_config(ctx: click.Context) -> tuple[Path, ClusterConfig]:
    config_path: Path | None = ctx.obj["config_path"]
    if config_path is None:
        raise click.ClickException("--config (-c) is required")
    try:
        return config_path, load_config(config_path)
    except SpecLoadError as e:
        raise click.ClickException(f"failed to load config: {e}") from e


def truncate(value: str, max_len: int) -> str:
    """Shorten from the left; the image tag is the informative end."""
    if len(value) <= max_len:
        return value
    return "..." + value[len(value) - (max_len - 3) :]


# =============================================================================
# Rendering
# =============================================================================


def _echo_changes(action: PlannedAction) -> None:
    for change in action.changes:
        click.echo(f"    {change}")


def render_plan(plan: Plan) -> None:
    click.echo(f"Cluster: {plan.cluster.name} ({plan.cluster.cluster_id})")
    click.echo()

    if plan.cluster_action is not None:
        click.echo("=== Cluster Settings ===")
        if plan.cluster_action.action == ActionType.UPDATE:
            click.echo(f"~ {plan.cluster.name} (update)")
            for change in plan.cluster_action.changes:
                click.echo(f"    {change}")
        else:
            click.echo(f"  {plan.cluster.name} (no changes)")
        click.echo()

    if plan.asg_actions:
        click.echo("=== Auto Scaling Groups ===")
        for asg in plan.asg_actions:
            if asg.action == ActionType.CREATE:
                click.secho(f"+ {asg.name} (create)", fg="green")
                _echo_changes(asg)
            elif asg.action == ActionType.DELETE:
                click.secho(f"- {asg.name} (delete)", fg="red")
            elif asg.action == ActionType.RECREATE:
                click.secho(f"~ {asg.name} (recreate - settings changed)", fg="yellow")
                _echo_changes(asg)
            elif asg.action == ActionType.SKIP:
                click.echo(f"  {asg.name} (not in YAML, skipping)")
            else:
                click.echo(f"  {asg.name} (no changes)")
        click.echo()

    if plan.lb_actions:
        click.echo("=== Load Balancers ===")
        for lb in plan.lb_actions:
            if lb.action == ActionType.CREATE:
                click.secho(f"+ {lb.name} (create, ASG: {lb.asg_name})", fg="green")
                _echo_changes(lb)
            elif lb.action == ActionType.DELETE:
                click.secho(f"- {lb.name} (delete, ASG: {lb.asg_name})", fg="red")
            elif lb.action == ActionType.RECREATE:
                click.secho(
                    f"~ {lb.name} (recreate, ASG: {lb.asg_name} - settings changed)", fg="yellow"
                )
                _echo_changes(lb)
            elif lb.action == ActionType.SKIP:
                click.echo(f"  {lb.name} (not in YAML, skipping, ASG: {lb.asg_name})")
            else:
                click.echo(f"  {lb.name} (no changes, ASG: {lb.asg_name})")
        click.echo()

    if plan.app_actions:
        click.echo("=== Applications ===")
        for app in plan.app_actions:
            if app.action == ActionType.CREATE:
                click.secho(f"+ {app.name} (create)", fg="green")
                _echo_changes(app)
            elif app.action == ActionType.UPDATE:
                click.secho(f"~ {app.name} (update)", fg="yellow")
                _echo_changes(app)
            else:
                click.echo(f"  {app.name} (no changes)")

    for warning in plan.warnings:
        click.secho(f"Warning: {warning}", fg="yellow", err=True)

    click.echo()
    click.echo("Plan Summary:")
    for label, actions in (("ASG", plan.asg_actions), ("LB", plan.lb_actions)):
        create = plan.count(actions, ActionType.CREATE)
        delete = plan.count(actions, ActionType.DELETE)
        recreate = plan.count(actions, ActionType.RECREATE)
        if create + delete + recreate > 0:
            click.echo(
                f"  {label}: {create} to create, {delete} to delete, {recreate} to recreate"
            )
    click.echo(
        f"  Applications: {plan.count(plan.app_actions, ActionType.CREATE)} to create, "
        f"{plan.count(plan.app_actions, ActionType.UPDATE)} to update, "
        f"{plan.count(plan.app_actions, ActionType.NOOP)} unchanged"
    )


def render_version_list(versions: VersionList) -> None:
    click.echo(f"Application: {versions.application_name} ({versions.application_id})")
    click.echo()

    if not versions.versions:
        click.echo("No versions found.")
        return

    click.echo(f"{'VERSION':<8} {'IMAGE':<30} {'CREATED':<20} {'NODES':<6} STATUS")
    for v in reversed(versions.versions):
        status = "active" if v.is_active else ""
        image = truncate(v.image, IMAGE_COLUMN_WIDTH)
        created = v.created.strftime(CREATED_FORMAT)
        click.echo(f"{v.version:<8} {image:<30} {created:<20} {v.active_nodes:<6} {status}")

    click.echo()
    click.echo(f"Total: {len(versions.versions)} versions")
    if versions.active_version is not None:
        click.echo(f"Active version: {versions.active_version}")
    else:
        click.echo("Active version: (none)")
    if versions.latest_version is not None:
        click.echo(f"Latest version: {versions.latest_version}")


def render_version_diff(app_name: str, diff: VersionDiff) -> None:
    click.echo(f"Application: {app_name}")
    click.echo(f"Comparing version {diff.from_version} → {diff.to_version}")
    click.echo()

    if not diff.changes:
        click.echo("No differences found.")
    else:
        for change in diff.changes:
            click.echo(f"  {change}")

    for caveat in diff.caveats:
        click.echo()
        click.echo(f"Note: {caveat}")


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="apprun-provisioner")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to config file",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Provision AppRun dedicated applications from YAML configuration.

    Credentials come from SAKURA_ACCESS_TOKEN and SAKURA_ACCESS_TOKEN_SECRET
    (or their SAKURACLOUD_ prefixed fallbacks).
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.command()
@click.pass_context
def plan(ctx: click.Context) -> None:
    """Show execution plan without making changes."""
    config_path, desired = require_config(ctx)

    async def operation(gateway: Gateway, config: Config) -> Plan:
        ledger = SecretVersionLedger(JsonFileLedgerStore.for_config(config_path))
        return await Reconciler(gateway, ledger).plan(desired)

    render_plan(run_with_gateway(operation, "failed to create plan"))


@cli.command()
@click.option("--activate", is_flag=True, help="Activate the created/updated version after apply")
@click.option(
    "--auto-approve", "-y", is_flag=True, help="Skip interactive approval of plan before applying"
)
@click.pass_context
def apply(ctx: click.Context, activate: bool, auto_approve: bool) -> None:
    """Apply the configuration changes."""
    config_path, desired = require_config(ctx)

    async def operation(gateway: Gateway, config: Config) -> bool:
        ledger = SecretVersionLedger(JsonFileLedgerStore.for_config(config_path))
        reconciler = Reconciler(gateway, ledger, ApplyOptions.from_config(config))
        computed = await reconciler.plan(desired)
        render_plan(computed)

        if not computed.has_changes:
            click.echo()
            click.echo("No changes to apply.")
            return False

        if not auto_approve:
            answer = click.prompt(
                "\nDo you want to apply these changes? [y/N]",
                default="",
                show_default=False,
            )
            if answer.strip().lower() not in ("y", "yes"):
                click.echo("Apply cancelled.")
                return False

        click.echo()
        click.echo("Applying changes...")
        await reconciler.apply(desired, computed, activate=activate)
        return True

    if run_with_gateway(operation, "failed to apply plan"):
        click.echo()
        click.secho("Apply complete!", fg="green")


@cli.command()
@click.option("--app", "-a", "app_name", required=True, help="Application name")
@click.pass_context
def versions(ctx: click.Context, app_name: str) -> None:
    """List application versions."""
    _, desired = require_config(ctx)

    async def operation(gateway: Gateway, config: Config) -> VersionList:
        return await list_versions(gateway, desired.cluster_name, app_name)

    render_version_list(run_with_gateway(operation, "failed to list versions"))


@cli.command()
@click.option("--app", "-a", "app_name", required=True, help="Application name")
@click.option(
    "--from", "from_version", type=int, default=0, help="Source version (default: active version)"
)
@click.option(
    "--to", "to_version", type=int, default=0, help="Target version (default: latest version)"
)
@click.pass_context
def diff(ctx: click.Context, app_name: str, from_version: int, to_version: int) -> None:
    """Show diff between two versions."""
    _, desired = require_config(ctx)

    async def operation(gateway: Gateway, config: Config) -> VersionDiff:
        return await diff_versions(
            gateway, desired.cluster_name, app_name, from_version, to_version
        )

    render_version_diff(app_name, run_with_gateway(operation, "failed to get version diff"))


@cli.command()
@click.option("--app", "-a", "app_name", required=True, help="Application name")
@click.option(
    "--target",
    "-t",
    "target_version",
    type=int,
    default=0,
    help="Version to activate (default: latest)",
)
@click.pass_context
def activate(ctx: click.Context, app_name: str, target_version: int) -> None:
    """Activate a version."""
    _, desired = require_config(ctx)

    async def operation(gateway: Gateway, config: Config) -> int:
        return await activate_version(gateway, desired.cluster_name, app_name, target_version)

    version = run_with_gateway(operation, "failed to activate version")
    click.echo(f'Successfully activated version {version} for application "{app_name}"')


@cli.command()
@click.argument("cluster_name")
def dump(cluster_name: str) -> None:
    """Dump current cluster configuration as YAML."""

    async def operation(gateway: Gateway, config: Config) -> dict[str, Any]:
        return await dump_cluster(gateway, cluster_name)

    click.echo(dump_config(run_with_gateway(operation, "failed to dump cluster config")), nl=False)
