"""Cluster network CLI (clusternet).

One-shot access to the operator's passes, plus a local run of the loop.

Usage:
    clusternet reconcile cluster.yaml            # Converge once, print status
    clusternet delete cluster.yaml               # Tear down LB, groups, owned FIP
    clusternet member add cluster.yaml NAME IP   # Add a control plane machine
    clusternet member remove cluster.yaml NAME   # Remove it again
    clusternet run demo --specs-dir ./specs      # Run the operator loop locally
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

import click
import yaml

from .config import (
    DEFAULT_RECONCILE_INTERVAL_SECONDS,
    DEFAULT_WAIT_INTERVAL_SECONDS,
    DEFAULT_WAIT_STEPS,
    Config,
    ConfigurationError,
    WaitConfig,
)
from .exceptions import BackendError
from .models import ClusterDocument, Machine
from .reconciler import ClusterReconciler, ReconcileResult
from .spec_loader import SpecLoadError, load_cluster_document


@dataclass(frozen=True)
class CliContext:
    """Options shared by every subcommand."""

    cloud: str
    wait: WaitConfig


def build_reconciler(
    ctx: CliContext, spec_file: Path, status_dir: Path | None
) -> tuple[ClusterReconciler, ClusterDocument]:
    """Load a cluster document and build a reconciler for it.

    Raises:
        click.ClickException: If the document, configuration or connection is invalid.
    """
    try:
        document = load_cluster_document(spec_file)
        config = Config(
            cluster_name=document.name,
            cloud=ctx.cloud,
            specs_dir=spec_file.parent,
            status_dir=status_dir,
            wait=ctx.wait,
        )
        return ClusterReconciler(config), document
    except (SpecLoadError, ConfigurationError, BackendError) as e:
        raise click.ClickException(str(e)) from e


def finish(reconciler: ClusterReconciler, result: ReconcileResult) -> None:
    """Persist and print the resulting status, failing on pass errors."""
    try:
        reconciler.save_status(result.status)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    click.echo(yaml.safe_dump(result.status.to_dict(), sort_keys=False), nl=False)
    if result.changes.total:
        click.echo(f"# {result.changes.total} change(s): {result.changes.by_kind()}", err=True)
    if result.error is not None:
        raise click.ClickException(f"{result.operation} failed: {result.error}")


def find_machine(document: ClusterDocument, name: str) -> Machine:
    # Machines not listed in the document are assumed to be control plane
    for machine in document.machines:
        if machine.name == name:
            return machine
    return Machine(name=name, control_plane=True)


spec_file_argument = click.argument(
    "spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
status_dir_option = click.option(
    "--status-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    envvar="STATUS_DIR",
    help="Directory holding <cluster>.status.yaml (read before, written after)",
)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="clusternet")
@click.option("--cloud", envvar="OS_CLOUD", required=True, help="clouds.yaml entry")
@click.option(
    "--wait-steps",
    type=click.IntRange(min=1),
    default=DEFAULT_WAIT_STEPS,
    show_default=True,
    help="Status probes before a wait gives up",
)
@click.option(
    "--wait-interval",
    type=click.FloatRange(min=0),
    default=DEFAULT_WAIT_INTERVAL_SECONDS,
    show_default=True,
    help="Seconds between status probes",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(
    ctx: click.Context, cloud: str, wait_steps: int, wait_interval: float, verbose: bool
) -> None:
    """Cluster network CLI (clusternet).

    Converges the network, subnet, security groups and API server load
    balancer of a cluster on OpenStack.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = CliContext(
        cloud=cloud,
        wait=WaitConfig(steps=wait_steps, interval_seconds=wait_interval),
    )


@cli.command()
@spec_file_argument
@status_dir_option
@click.pass_obj
def reconcile(obj: CliContext, spec_file: Path, status_dir: Path | None) -> None:
    """Converge the cluster described by SPEC_FILE once."""
    reconciler, document = build_reconciler(obj, spec_file, status_dir)
    finish(reconciler, reconciler.reconcile(document))


@cli.command()
@spec_file_argument
@status_dir_option
@click.confirmation_option(prompt="Delete the cluster's load balancer and security groups?")
@click.pass_obj
def delete(obj: CliContext, spec_file: Path, status_dir: Path | None) -> None:
    """Tear down the cluster described by SPEC_FILE."""
    reconciler, document = build_reconciler(obj, spec_file, status_dir)
    finish(reconciler, reconciler.delete(document))


# =============================================================================
# Membership Commands
# =============================================================================


@cli.group()
def member() -> None:
    """Load balancer membership of control plane machines."""
    pass


@member.command("add")
@spec_file_argument
@click.argument("machine_name")
@click.argument("address")
@click.option(
    "--status-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    envvar="STATUS_DIR",
    required=True,
    help="Directory holding <cluster>.status.yaml from a previous reconcile",
)
@click.pass_obj
def member_add(
    obj: CliContext, spec_file: Path, machine_name: str, address: str, status_dir: Path
) -> None:
    """Add MACHINE_NAME at ADDRESS to every load balancer pool."""
    reconciler, document = build_reconciler(obj, spec_file, status_dir)
    machine = find_machine(document, machine_name)
    finish(reconciler, reconciler.reconcile_member(document, machine, address))


@member.command("remove")
@spec_file_argument
@click.argument("machine_name")
@status_dir_option
@click.pass_obj
def member_remove(
    obj: CliContext, spec_file: Path, machine_name: str, status_dir: Path | None
) -> None:
    """Remove MACHINE_NAME from every load balancer pool."""
    reconciler, document = build_reconciler(obj, spec_file, status_dir)
    machine = find_machine(document, machine_name)
    finish(reconciler, reconciler.delete_member(document, machine))


# =============================================================================
# Run Command
# =============================================================================


@cli.command()
@click.argument("cluster_name")
@click.option(
    "--specs-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path("specs"),
    show_default=True,
    help="Directory holding <cluster>.yaml",
)
@status_dir_option
@click.option(
    "--interval",
    type=int,
    default=DEFAULT_RECONCILE_INTERVAL_SECONDS,
    show_default=True,
    help="Seconds between passes",
)
@click.pass_obj
def run(
    obj: CliContext,
    cluster_name: str,
    specs_dir: Path,
    status_dir: Path | None,
    interval: int,
) -> None:
    """Run the operator loop locally for CLUSTER_NAME."""
    from .main import run as run_operator

    env = {
        "CLUSTER_NAME": cluster_name,
        "OS_CLOUD": obj.cloud,
        "SPECS_DIR": str(specs_dir.resolve()),
        "RECONCILE_INTERVAL": str(interval),
        "WAIT_STEPS": str(obj.wait.steps),
        "WAIT_INTERVAL_SECONDS": str(obj.wait.interval_seconds),
    }
    if status_dir is not None:
        env["STATUS_DIR"] = str(status_dir.resolve())

    click.echo(f"Running operator for cluster {cluster_name}...")
    click.echo(f"  Cloud: {obj.cloud}")
    click.echo(f"  Specs: {specs_dir}")
    click.echo(f"  Interval: {interval}s")

    os.environ.update(env)
    run_operator()


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
