"""Deployer CLI (aca-deploy).

Usage:
    aca-deploy names              # Print derived resource names
    aca-deploy plan               # Print submission order
    aca-deploy plan --template    # Print the rendered ARM template
    aca-deploy infra              # Phase 1: declarative apply
    aca-deploy app                # Phase 2: build, rotate token, update, configure
    aca-deploy up                 # Both phases

Every command reads AZURE_SUBSCRIPTION_ID, RESOURCE_GROUP_NAME and
AZURE_LOCATION (plus optional settings) from the environment, optionally
layered with ``--config FILE``.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from .config import Config, ConfigurationError
from .errors import DeploymentError
from .main import PHASE_ALL, PHASE_APP, PHASE_INFRA, run_phase, setup_logging
from .naming import NameResolver, ResourceRole, seed_for
from .resource_graph import declare_graph, render_template
from .spec_loader import SpecLoadError, load_config

F = TypeVar("F", bound=Callable[..., Any])


def config_options(func: F) -> F:
    """Attach the options shared by every command."""
    options = [
        click.option(
            "--config",
            "config_file",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            help="YAML deployment file layered over environment variables",
        ),
        click.option("--subscription", "-s", help="Azure subscription ID"),
        click.option("--resource-group", "-g", help="Target resource group (the naming seed)"),
        click.option("--location", "-l", help="Azure location"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_config(
    config_file: Path | None,
    subscription: str | None,
    resource_group: str | None,
    location: str | None,
) -> Config:
    """Load and validate configuration, converting errors for click."""
    try:
        return load_config(
            config_file,
            subscription_id=subscription,
            resource_group_name=resource_group,
            location=location,
        )
    except (ConfigurationError, SpecLoadError) as e:
        raise click.ClickException(str(e)) from e


def run_and_exit(ctx: click.Context, config: Config, phase: str) -> None:
    code = run_phase(config, phase, click.echo)
    if code != 0:
        ctx.exit(code)


@click.group()
@click.version_option(version="0.1.0", prog_name="aca-deploy")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """Deploy a gateway to Azure Container Apps with an NFS data share.

    \b
    Quick Start:
        az login
        export AZURE_SUBSCRIPTION_ID=... RESOURCE_GROUP_NAME=... AZURE_LOCATION=...
        aca-deploy up
    """
    # Logs go to stderr so stdout only carries results
    setup_logging(logging.DEBUG if verbose else logging.INFO, stream=sys.stderr)


@cli.command()
@config_options
def names(
    config_file: Path | None,
    subscription: str | None,
    resource_group: str | None,
    location: str | None,
) -> None:
    """Print the deterministic resource names for the target."""
    config = build_config(config_file, subscription, resource_group, location)
    seed = seed_for(config.subscription_id, config.resource_group_name)
    resolver = NameResolver(seed)

    click.echo(f"Seed: {seed}")
    try:
        for role in ResourceRole:
            click.echo(f"  {role.name.lower():<22} {resolver.name_for(role)}")
    except DeploymentError as e:
        raise click.ClickException(str(e)) from e


@cli.command()
@config_options
@click.option("--template", "show_template", is_flag=True, help="Print the ARM template as JSON")
def plan(
    config_file: Path | None,
    subscription: str | None,
    resource_group: str | None,
    location: str | None,
    show_template: bool,
) -> None:
    """Print the resource submission order without calling Azure."""
    config = build_config(config_file, subscription, resource_group, location)
    try:
        resource_names = NameResolver(
            seed_for(config.subscription_id, config.resource_group_name)
        ).resolve_all()
        graph = declare_graph(config, resource_names)
        if show_template:
            template = render_template(graph, config.subscription_id, config.resource_group_name)
            click.echo(json.dumps(template, indent=2))
            return
        ordered = graph.topological_sort()
    except DeploymentError as e:
        raise click.ClickException(str(e)) from e

    for position, node in enumerate(ordered, start=1):
        deps = ", ".join(dep.value for dep in node.depends_on) or "-"
        click.echo(f"{position:>2}. {node.kind.value:<26} {node.name}  <- {deps}")


@cli.command()
@config_options
@click.pass_context
def infra(
    ctx: click.Context,
    config_file: Path | None,
    subscription: str | None,
    resource_group: str | None,
    location: str | None,
) -> None:
    """Phase 1: apply the declarative resource graph."""
    config = build_config(config_file, subscription, resource_group, location)
    run_and_exit(ctx, config, PHASE_INFRA)


@cli.command()
@config_options
@click.option("--image-tag", help="Image tag (default: UTC timestamp)")
@click.pass_context
def app(
    ctx: click.Context,
    config_file: Path | None,
    subscription: str | None,
    resource_group: str | None,
    location: str | None,
    image_tag: str | None,
) -> None:
    """Phase 2: build the image, rotate the token and configure the app."""
    config = build_config(config_file, subscription, resource_group, location)
    if image_tag:
        config = _with_image_tag(config, image_tag)
    run_and_exit(ctx, config, PHASE_APP)


@cli.command()
@config_options
@click.option("--image-tag", help="Image tag (default: UTC timestamp)")
@click.pass_context
def up(
    ctx: click.Context,
    config_file: Path | None,
    subscription: str | None,
    resource_group: str | None,
    location: str | None,
    image_tag: str | None,
) -> None:
    """Run phase 1 followed by phase 2."""
    config = build_config(config_file, subscription, resource_group, location)
    if image_tag:
        config = _with_image_tag(config, image_tag)
    run_and_exit(ctx, config, PHASE_ALL)


def _with_image_tag(config: Config, image_tag: str) -> Config:
    try:
        return config.with_overrides(image_tag=image_tag)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
