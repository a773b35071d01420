"""Bootstrapper CLI.

Usage:
    bootstrapper                      # Same as `bootstrapper deploy`
    bootstrapper deploy --yes         # Converge everything, deploy applications
    bootstrapper deploy --dry-run     # Log mutating commands without running them
    bootstrapper plan --probe         # Show order, current state and planned actions
    bootstrapper validate             # Validate configuration and registry only

Options override the corresponding environment variables.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any

import click

from .config import ApplicationsMode, Config, ConfigurationError, ExposureMethod
from .dependency import order_resources
from .executor import ActionExecutor
from .main import PrerequisiteError, build_clients, check_prerequisites, main, setup_logging
from .models import ResourceKind, ResourceTier
from .prober import StateProber
from .registry import RegistryError, ResourceRegistry, build_registry

VERSION = "0.1.0"


def load_config(**overrides: Any) -> Config:
    """Environment configuration with CLI overrides applied.

    Raises:
        click.ClickException: If the resulting configuration is invalid.
    """
    try:
        config = Config.from_env()
        changes = {key: value for key, value in overrides.items() if value is not None}
        return dataclasses.replace(config, **changes) if changes else config
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def load_registry(config: Config) -> ResourceRegistry:
    try:
        return build_registry(config)
    except RegistryError as e:
        raise click.ClickException(str(e)) from e


registry_option = click.option(
    "--registry",
    "registry_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML registry replacing the built-in resources.",
)
charts_option = click.option(
    "--charts-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory holding the local charts.",
)
namespace_option = click.option("--namespace", "-n", help="Target namespace.")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group(invoke_without_command=True)
@click.version_option(version=VERSION, prog_name="bootstrapper")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Bootstrap the automation-assessment environment with helm and kubectl.

    \b
    Quick Start:
        bootstrapper validate       # Check configuration and registry
        bootstrapper plan --probe   # See what would change
        bootstrapper deploy         # Converge the cluster
    """
    if ctx.invoked_subcommand is None:
        ctx.invoke(deploy)


@cli.command()
@namespace_option
@click.option(
    "--exposure",
    type=click.Choice([method.value for method in ExposureMethod]),
    help="How to expose Argo CD (default: ask).",
)
@click.option("--port", type=click.IntRange(1, 65535), help="Local port for port-forwarding.")
@registry_option
@charts_option
@click.option(
    "--yes", "deploy_apps", is_flag=True, help="Deploy the applications without asking."
)
@click.option("--no-apps", "skip_apps", is_flag=True, help="Skip the application deployment.")
@click.option("--dry-run", is_flag=True, help="Log mutating commands only.")
@click.pass_context
def deploy(
    ctx: click.Context,
    namespace: str | None = None,
    exposure: str | None = None,
    port: int | None = None,
    registry_file: Path | None = None,
    charts_dir: Path | None = None,
    deploy_apps: bool = False,
    skip_apps: bool = False,
    dry_run: bool = False,
) -> None:
    """Converge the cluster, expose Argo CD and deploy the applications."""
    if deploy_apps and skip_apps:
        raise click.UsageError("--yes and --no-apps are mutually exclusive")

    applications = None
    if deploy_apps:
        applications = ApplicationsMode.YES
    elif skip_apps:
        applications = ApplicationsMode.NO

    config = load_config(
        namespace=namespace,
        exposure_method=ExposureMethod(exposure) if exposure else None,
        port_forward_port=port,
        registry_file=registry_file,
        charts_dir=charts_dir,
        deploy_applications=applications,
        dry_run=True if dry_run else None,
    )
    ctx.exit(main(config))


@cli.command()
@namespace_option
@registry_option
@charts_option
@click.option(
    "--probe",
    is_flag=True,
    help="Query the cluster (read-only) and show the action each resource needs.",
)
def plan(
    namespace: str | None,
    registry_file: Path | None,
    charts_dir: Path | None,
    probe: bool,
) -> None:
    """Show the reconciliation order, optionally with current state."""
    config = load_config(namespace=namespace, registry_file=registry_file, charts_dir=charts_dir)
    registry = load_registry(config)

    prober = None
    if probe:
        setup_logging(json_output=config.log_json, level=config.log_level)
        try:
            check_prerequisites(config)
        except PrerequisiteError as e:
            raise click.ClickException(str(e)) from e
        kubectl, helm = build_clients(config)
        prober = StateProber(kubectl, helm, config.namespace)

    for tier in ResourceTier:
        resources = order_resources(registry.by_tier(tier))
        if not resources:
            continue
        click.secho(f"{tier.value}:", bold=True)
        for resource in resources:
            line = f"  {resource.name} ({resource.kind.value})"
            if resource.depends_on:
                line += f" after {', '.join(resource.depends_on)}"
            if prober is not None:
                state = prober.probe(resource)
                action = ActionExecutor.plan_action(resource, state)
                line += f": {state.value} -> {action.value}"
            click.echo(line)


@cli.command()
@namespace_option
@registry_option
@charts_option
def validate(
    namespace: str | None,
    registry_file: Path | None,
    charts_dir: Path | None,
) -> None:
    """Validate configuration and the resource registry without cluster access."""
    config = load_config(namespace=namespace, registry_file=registry_file, charts_dir=charts_dir)
    registry = load_registry(config)

    missing_files = [
        resource.name
        for resource in registry.list()
        if resource.kind == ResourceKind.SECRET and not resource.secret.source_path.is_file()
    ]

    click.secho(f"✓ Registry valid: {len(registry)} resources", fg="green")
    click.echo(f"  infrastructure: {', '.join(r.name for r in registry.infrastructure())}")
    click.echo(f"  application:    {', '.join(r.name for r in registry.applications())}")
    for name in missing_files:
        click.secho(f"  warning: secret source file for {name} not found", fg="yellow")


if __name__ == "__main__":
    cli()
