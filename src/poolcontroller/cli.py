"""Machine Pool Operator CLI (mpo).

Usage:
    mpo run --cluster prod --region eu-west-1     # Run operator locally
    mpo plan-subnets --cidr 10.0.0.0/16 --zones a,b,c
    mpo diff pool.yaml observed.yaml              # Show pending ASG changes
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import click
import yaml
from pydantic import ValidationError

from .differ import needs_update, process_delta
from .models import (
    PRIVATE_ROLE_TAG_VALUE,
    PUBLIC_ROLE_TAG_VALUE,
    AutoScalingGroup,
    AZSelectionScheme,
    IPv6Spec,
    MachinePool,
    VPCSpec,
)
from .spec_loader import SpecLoadError, load_spec_file
from .subnets import (
    DEFAULT_MAX_NUM_AZS,
    NetworkConfigurationError,
    plan_default_subnets,
    select_zones,
)


@click.group()
@click.version_option(version="0.1.0", prog_name="mpo")
def cli() -> None:
    """Machine Pool Operator CLI (mpo).

    \b
    Quick Start:
        mpo plan-subnets --cidr 10.0.0.0/16 --zones us-east-1a,us-east-1b
        mpo run --cluster prod --region us-east-1
    """
    pass


@cli.command()
@click.option("--cluster", "cluster_name", required=True, help="Cluster to manage")
@click.option("--region", required=True, help="AWS region")
@click.option(
    "--specs-dir",
    default="./specs",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory holding Cluster and MachinePool specs",
)
@click.option(
    "--bootstrap-dir",
    default="./bootstrap",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory holding bootstrap data files",
)
@click.option("--interval", default=300, show_default=True, help="Resync interval in seconds")
def run(
    cluster_name: str,
    region: str,
    specs_dir: Path,
    bootstrap_dir: Path,
    interval: int,
) -> None:
    """Run the operator locally against a specs directory.

    \b
    Examples:
        mpo run --cluster prod --region eu-west-1
        mpo run --cluster dev --region us-east-1 --specs-dir ./examples
    """
    if not specs_dir.is_dir():
        raise click.ClickException(f"Specs directory not found: {specs_dir}")

    os.environ.update(
        {
            "CLUSTER_NAME": cluster_name,
            "AWS_REGION": region,
            "SPECS_DIR": str(specs_dir),
            "BOOTSTRAP_DATA_DIR": str(bootstrap_dir),
            "RECONCILE_INTERVAL": str(interval),
        }
    )

    from .main import main

    click.echo(f"Running operator for cluster {cluster_name} in {region}...")
    sys.exit(asyncio.run(main()))


@cli.command("plan-subnets")
@click.option("--cidr", default="10.0.0.0/16", show_default=True, help="VPC IPv4 CIDR block")
@click.option("--ipv6-cidr", default=None, help="VPC IPv6 CIDR block (enables dual stack)")
@click.option("--zones", required=True, help="Comma separated availability zones")
@click.option(
    "--limit", default=DEFAULT_MAX_NUM_AZS, show_default=True, type=click.IntRange(min=1)
)
@click.option(
    "--selection",
    type=click.Choice([s.value for s in AZSelectionScheme]),
    default=AZSelectionScheme.ORDERED.value,
    show_default=True,
)
def plan_subnets(
    cidr: str, ipv6_cidr: str | None, zones: str, limit: int, selection: str
) -> None:
    """Print the default public/private subnet layout for a VPC."""
    zone_list = [z.strip() for z in zones.split(",") if z.strip()]
    try:
        vpc = VPCSpec(
            cidr_block=cidr,
            ipv6=IPv6Spec(cidr_block=ipv6_cidr) if ipv6_cidr else None,
        )
        selected = select_zones(zone_list, limit, AZSelectionScheme(selection))
        subnets = plan_default_subnets(vpc, selected)
    except (ValidationError, NetworkConfigurationError) as e:
        raise click.ClickException(str(e)) from e

    for subnet in subnets:
        role = PUBLIC_ROLE_TAG_VALUE if subnet.is_public else PRIVATE_ROLE_TAG_VALUE
        line = f"{subnet.availability_zone:<16} {role:<8} {subnet.cidr_block}"
        if subnet.ipv6_cidr_block:
            line += f"  {subnet.ipv6_cidr_block}"
        click.echo(line)


@cli.command()
@click.argument("pool_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("observed_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def diff(pool_file: Path, observed_file: Path) -> None:
    """Compare a MachinePool spec with an observed ASG snapshot."""
    try:
        spec_file = load_spec_file(pool_file)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    pools = [o for o in spec_file.objects if isinstance(o, MachinePool)]
    if not pools:
        raise click.ClickException(f"No MachinePool found in {pool_file}")

    try:
        raw = yaml.safe_load(observed_file.read_text(encoding="utf-8"))
        asg = AutoScalingGroup.model_validate(raw or {})
    except (yaml.YAMLError, ValidationError) as e:
        raise click.ClickException(f"Invalid ASG snapshot {observed_file}: {e}") from e

    pool = pools[0]
    to_suspend, to_resume = process_delta(pool, asg)
    click.echo(f"pool:           {pool.metadata.key}")
    click.echo(f"needs update:   {'yes' if needs_update(pool, asg) else 'no'}")
    click.echo(f"suspend:        {', '.join(to_suspend) or '-'}")
    click.echo(f"resume:         {', '.join(to_resume) or '-'}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
