"""Hub provisioner CLI (hubprov).

Usage:
    hubprov validate hub.yaml           # Offline: validate parameters and show stages
    hubprov plan hub.yaml -o json       # Dry-run against live state
    hubprov apply hub.yaml              # Apply stage by stage
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .errors import ProvisioningError
from .graph import build_graph
from .main import EXIT_PREFLIGHT, execute, setup_logging
from .models import ResourceScope
from .scheduler import schedule
from .spec_loader import SpecLoadError, load_params
from .topology import build_hub_nodes

OUTPUT_FORMATS = ("yaml", "json")

# Placeholder scope for offline validation; ids are never sent anywhere
OFFLINE_SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000000"
OFFLINE_RESOURCE_GROUP = "rg-validate"

params_argument = click.argument(
    "params_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)


def _azure_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    fn = click.option(
        "--subscription", "-s", envvar="AZURE_SUBSCRIPTION_ID", help="Azure subscription ID"
    )(fn)
    fn = click.option(
        "--resource-group", "-g", envvar="AZURE_RESOURCE_GROUP", help="Target resource group"
    )(fn)
    fn = click.option("--location", "-l", envvar="AZURE_LOCATION", help="Default Azure region")(fn)
    return fn


def _export_env(subscription: str | None, resource_group: str | None, location: str | None) -> None:
    """Make CLI options visible to Config.from_env()."""
    for key, value in (
        ("AZURE_SUBSCRIPTION_ID", subscription),
        ("AZURE_RESOURCE_GROUP", resource_group),
        ("AZURE_LOCATION", location),
    ):
        if value:
            os.environ[key] = value


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="hubprov")
def cli() -> None:
    """Hub network provisioner (hubprov).

    Applies a hub network (virtual network, subnets, public IPs, IP groups,
    firewall policy and firewall) to Azure in dependency-safe stages.

    \b
    Quick Start:
        hubprov validate hub.yaml
        hubprov plan hub.yaml
        hubprov apply hub.yaml
    """
    pass


@cli.command()
@params_argument
@click.option("--output", "-o", type=click.Choice(OUTPUT_FORMATS), default="yaml")
@click.option("--location", "-l", envvar="AZURE_LOCATION", help="Default Azure region")
def validate(params_file: Path, output: str, location: str | None) -> None:
    """Validate parameters and print the stage listing, without calling Azure."""
    try:
        spec = load_params(params_file)
        scope = ResourceScope(OFFLINE_SUBSCRIPTION_ID, OFFLINE_RESOURCE_GROUP)
        plan = schedule(build_graph(build_hub_nodes(spec, scope, default_location=location)))
    except (SpecLoadError, ProvisioningError) as e:
        click.secho(str(e), fg="red", err=True)
        sys.exit(EXIT_PREFLIGHT)

    click.echo(plan.render(output))
    click.secho(
        f"✓ {len(plan.node_ids)} resources in {len(plan.stages)} stages", fg="green", err=True
    )


@cli.command()
@params_argument
@click.option("--output", "-o", type=click.Choice(OUTPUT_FORMATS), default="yaml")
@_azure_options
def plan(
    params_file: Path,
    output: str,
    subscription: str | None,
    resource_group: str | None,
    location: str | None,
) -> None:
    """Show what apply would do: stages and per-resource create/update/no-op."""
    setup_logging()
    _export_env(subscription, resource_group, location)
    sys.exit(asyncio.run(execute(params_file, dry_run=True, output_format=output)))


@cli.command()
@params_argument
@_azure_options
def apply(
    params_file: Path,
    subscription: str | None,
    resource_group: str | None,
    location: str | None,
) -> None:
    """Apply the hub to Azure. Re-running is safe and converges."""
    setup_logging()
    _export_env(subscription, resource_group, location)
    sys.exit(asyncio.run(execute(params_file, dry_run=False)))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
