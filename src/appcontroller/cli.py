"""Application controller CLI (appctl).

Usage:
    appctl run --namespace demo --no-in-cluster   # Run the controller locally
    appctl revision-hash app.yaml                 # Print revision hashes
    appctl check-config                           # Validate environment config
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import click

from .config import CONTROLLER_VERSION, ConfigurationError, ControllerConfig
from .revision import RevisionError, compute_revision_hash


@click.group()
@click.version_option(version=CONTROLLER_VERSION, prog_name="appctl")
def cli() -> None:
    """Application controller CLI (appctl).

    \b
    Quick Start:
        appctl check-config            # Validate configuration
        appctl run --no-in-cluster     # Run against the current kubeconfig
    """
    pass


@cli.command()
@click.option("--namespace", "-n", help="Only watch applications in this namespace")
@click.option("--context", "kube_context", help="kubeconfig context (implies --no-in-cluster)")
@click.option("--in-cluster/--no-in-cluster", default=None, help="Use in-cluster credentials")
@click.option("--workers", "-w", type=int, help="Concurrent reconciles")
@click.pass_context
def run(
    ctx: click.Context,
    namespace: str | None,
    kube_context: str | None,
    in_cluster: bool | None,
    workers: int | None,
) -> None:
    """Run the controller until interrupted.

    Options override the matching environment variables.
    """
    from .main import main

    if namespace:
        os.environ["WATCH_NAMESPACE"] = namespace
    if kube_context:
        os.environ["KUBE_CONTEXT"] = kube_context
        if in_cluster is None:
            in_cluster = False
    if in_cluster is not None:
        os.environ["IN_CLUSTER"] = "true" if in_cluster else "false"
    if workers is not None:
        os.environ["CONCURRENT_RECONCILES"] = str(workers)

    ctx.exit(asyncio.run(main()))


@cli.command("revision-hash")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
def revision_hash(files: tuple[str, ...]) -> None:
    """Print the revision hash of each YAML or JSON document."""
    for name in files:
        try:
            digest = compute_revision_hash(Path(name).read_text(encoding="utf-8"))
        except RevisionError as e:
            raise click.ClickException(f"{name}: {e}") from e
        click.echo(f"{digest}  {name}")


@cli.command("check-config")
def check_config() -> None:
    """Validate the controller configuration from the environment."""
    try:
        config = ControllerConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"controller version:   {config.controller_version}")
    click.echo(f"concurrent reconciles: {config.concurrent_reconciles}")
    click.echo(f"revision limit:       {config.app_revision_limit}")
    click.echo(f"reconcile timeout:    {config.reconcile_timeout_seconds}s")
    click.echo(f"resync period:        {config.resync_period_seconds}s")
    click.echo(f"watch namespace:      {config.watch_namespace or '*'}")
    click.secho("✓ Configuration valid", fg="green")


if __name__ == "__main__":
    cli()
