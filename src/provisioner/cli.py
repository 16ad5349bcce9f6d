"""Azure provisioner CLI (azp).

Usage:
    azp provision-infrastructure -g rg-expenses -l uksouth
    azp provision-infrastructure -g rg-expenses -l uksouth --enable-genai
    azp provision-infrastructure -g rg-expenses -l uksouth --show-plan
    azp deploy-application -g rg-expenses -l uksouth --package ./publish
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .app_deployment import DEFAULT_PACKAGE_PATH
from .config import DEFAULT_BASE_NAME, Config, ConfigurationError
from .dependency import DependencyError, ExecutionPlan, ModulePhase
from .main import provision, run_app_deployment, setup_logging
from .orchestrator import build_plan
from .spec_loader import SpecLoadError

VERSION = "0.1.0"

# Conventional status for a run stopped with Ctrl+C
EXIT_INTERRUPTED = 130


def common_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by both stages."""
    decorators = [
        click.option(
            "--resource-group", "-g", required=True, help="Target resource group name"
        ),
        click.option("--location", "-l", required=True, help="Azure region, e.g. uksouth"),
        click.option(
            "--base-name",
            default=DEFAULT_BASE_NAME,
            show_default=True,
            help="Prefix for resource names",
        ),
        click.option(
            "--enable-genai/--no-enable-genai",
            default=None,
            help="Deploy the generative AI account and its settings "
            "(default: PROVISIONER_ENABLE_GENAI, else off)",
        ),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def build_config(
    resource_group: str, location: str, base_name: str, enable_genai: bool | None
) -> Config:
    try:
        return Config.from_options(
            resource_group=resource_group,
            location=location,
            base_name=base_name,
            enable_extended_features=enable_genai,
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def format_plan(plan: ExecutionPlan) -> str:
    lines = ["Execution plan:"]
    for index, node in enumerate(plan.nodes, start=1):
        notes = []
        if node.phase != ModulePhase.WHOLE:
            notes.append(f"{node.phase.value} phase of {node.source_module}")
        if node.condition:
            notes.append(f"only when {node.condition}")
        if node.depends_on:
            notes.append(f"after {', '.join(sorted(node.depends_on))}")
        suffix = f"  ({'; '.join(notes)})" if notes else ""
        lines.append(f"  {index}. {node.name}{suffix}")
    return "\n".join(lines)


@click.group()
@click.version_option(version=VERSION, prog_name="azp")
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="json",
    show_default=True,
    help="Format of diagnostics written to stderr",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(log_format: str, verbose: bool) -> None:
    """Provision and deploy the expense management application on Azure.

    \b
    Run provision-infrastructure first; it writes .deployment-context.json,
    which deploy-application reads.
    """
    setup_logging(log_format, verbose)


@cli.command("provision-infrastructure")
@common_options
@click.option(
    "--show-plan", is_flag=True, help="Print the module execution order and exit"
)
def provision_infrastructure(
    resource_group: str,
    location: str,
    base_name: str,
    enable_genai: bool | None,
    show_plan: bool,
) -> None:
    """Provision infrastructure, bind identities and write the deployment context."""
    config = build_config(resource_group, location, base_name, enable_genai)

    if show_plan:
        try:
            plan = build_plan(config)
        except (SpecLoadError, DependencyError) as e:
            raise click.ClickException(str(e)) from e
        click.echo(format_plan(plan))
        return

    sys.exit(provision(config))


@cli.command("deploy-application")
@common_options
@click.option(
    "--package",
    "package",
    type=click.Path(path_type=Path),
    default=DEFAULT_PACKAGE_PATH,
    show_default=True,
    help="Published application directory or .zip file",
)
def deploy_application_command(
    resource_group: str,
    location: str,
    base_name: str,
    enable_genai: bool | None,
    package: Path,
) -> None:
    """Deploy the application package to the provisioned web app."""
    config = build_config(resource_group, location, base_name, enable_genai)
    sys.exit(run_app_deployment(config, package))


def main() -> None:
    """Entry point for the CLI."""
    try:
        cli(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except (click.Abort, KeyboardInterrupt):
        click.echo("Interrupted", err=True)
        sys.exit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    main()
