# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Org Bootstrap CLI - Main Command Line Interface

Command-line tool that provisions the AWS organization, member accounts,
GitHub OIDC deployment roles and Terraform state backends.
"""

import functools
import logging
import signal
import sys
from typing import List, Optional

import click
from rich.console import Console

from . import __version__, display
from .aws import ControlPlane
from .config import BootstrapConfig, load_config
from .exceptions import BootstrapError, InterruptedRun
from .pipeline import BootstrapReport, RunContext
from .workflows import Workflows

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)


COMMON_OPTIONS = [
    click.option("--config", "config_file", type=click.Path(exists=True), help="YAML config file"),
    click.option("--region", help="AWS region (default: AWS_DEFAULT_REGION or us-east-1)"),
    click.option("--profile", help="AWS named profile"),
    click.option("--output-dir", type=click.Path(), help="Directory for reports and descriptors"),
    click.option("--dry-run", is_flag=True, help="Report actions without making changes"),
    click.option("--verbose", is_flag=True, help="Enable debug logging"),
]

# Unset flags must not mask DRY_RUN=true and friends from the environment
FLAG_OPTIONS = ("dry_run", "verbose", "skip_verification", "recreate_backends")


def common_options(func):
    """Options shared by every command"""
    for option in reversed(COMMON_OPTIONS):
        func = option(func)
    return func


def _raise_interrupt(signum, frame):
    raise InterruptedRun(f"Received signal {signum}")


def _parse_filter(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def _setup(profile: Optional[str], **options) -> RunContext:
    for flag in FLAG_OPTIONS:
        if options.get(flag) is False:
            options[flag] = None
    config = load_config(**options)
    if config.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    signal.signal(signal.SIGTERM, _raise_interrupt)

    plane = ControlPlane(region=config.region, dry_run=config.dry_run, profile=profile)
    if config.dry_run:
        console.print("[blue]DRY RUN: no changes will be made[/blue]")
    return RunContext(config=config, plane=plane, console=console)


def _check_filter(config: BootstrapConfig, environments: Optional[List[str]]) -> None:
    unknown = set(environments or []) - set(config.environments)
    if unknown:
        raise BootstrapError(f"Unknown environment(s) in filter: {', '.join(sorted(unknown))}")


def _finish(report: BootstrapReport) -> None:
    if report.resources:
        console.print(display.create_outcome_table(report.resources))
    console.print(display.create_summary_panel(report.model_dump()))
    if report.status != "success":
        err_console.print(f"[red]✗ {report.failed_stage}: {report.error}[/red]")
        sys.exit(1)


def _run(command):
    """Map errors and interrupts to exit codes"""

    @functools.wraps(command)
    def wrapper(*args, **kwargs):
        try:
            return command(*args, **kwargs)
        except InterruptedRun as e:
            err_console.print(f"[red]✗ Interrupted: {e}. Partial state is resolved by re-running.[/red]")
            sys.exit(130)
        except KeyboardInterrupt:
            err_console.print("[red]✗ Interrupted[/red]")
            sys.exit(130)
        except BootstrapError as e:
            logger.debug("Fatal error", exc_info=True)
            err_console.print(f"[red]✗ Error: {e}[/red]")
            sys.exit(1)

    return wrapper


@click.group()
@click.version_option(version=__version__)
def cli():
    """
    Org Bootstrap - multi-account AWS foundation for GitHub Actions deployments

    Run the commands in order:
    - organization: organization, OUs and member accounts
    - foundation: OIDC providers, deployment roles and state backends
    - verify: read-only verification
    - destroy: remove what foundation created
    """
    pass


@cli.command()
@common_options
@_run
def organization(config_file, region, profile, output_dir, dry_run, verbose):
    """Create the organization, OU path and one member account per environment"""
    ctx = _setup(
        profile,
        config_file=config_file,
        region=region,
        output_dir=output_dir,
        dry_run=dry_run,
        verbose=verbose,
    )
    console.print("[bold blue]Bootstrapping organization[/bold blue]")

    workflows = Workflows(ctx)
    report = workflows.run("organization", workflows.organization_stages())

    if ctx.accounts:
        console.print(display.create_accounts_table(ctx.accounts, {}))
    _finish(report)


@cli.command()
@common_options
@click.option("--skip-verification", is_flag=True, help="Skip the verification stage")
@click.option(
    "--recreate-backends",
    is_flag=True,
    help="Delete and recreate backends found in the wrong region (destroys state)",
)
@_run
def foundation(
    config_file,
    region,
    profile,
    output_dir,
    dry_run,
    verbose,
    skip_verification,
    recreate_backends,
):
    """Create OIDC providers, deployment roles and Terraform state backends"""
    ctx = _setup(
        profile,
        config_file=config_file,
        region=region,
        output_dir=output_dir,
        dry_run=dry_run,
        verbose=verbose,
        skip_verification=skip_verification,
        recreate_backends=recreate_backends,
    )
    if ctx.config.recreate_backends:
        console.print("[bold red]⚠️  Mismatched backends will be drained and recreated[/bold red]")

    workflows = Workflows(ctx)
    report = workflows.run("foundation", workflows.foundation_stages())

    if ctx.accounts:
        console.print(display.create_accounts_table(ctx.accounts, ctx.role_arns))
    if ctx.console_urls:
        console.print("\n[bold]Console URLs:[/bold]")
        for environment, url in ctx.console_urls.items():
            console.print(f"  {environment}: {url}")
    _finish(report)


@cli.command()
@common_options
@_run
def verify(config_file, region, profile, output_dir, dry_run, verbose):
    """Verify organization, accounts, roles and backends without changing anything"""
    ctx = _setup(
        profile,
        config_file=config_file,
        region=region,
        output_dir=output_dir,
        dry_run=dry_run,
        verbose=verbose,
    )
    workflows = Workflows(ctx)
    report = workflows.run("verify", workflows.verify_stages())
    checks = report.details.get("verification", {}).get("checks")
    if checks:
        console.print(display.create_verification_table(checks))
    _finish(report)


@cli.command()
@common_options
@click.option("--force", is_flag=True, help="Skip confirmation prompts")
@click.option(
    "--close-accounts",
    is_flag=True,
    help="Also close member accounts (irreversible for 90 days)",
)
@click.option("--account-filter", help="Comma-separated environments, e.g. dev,staging")
@_run
def destroy(
    config_file,
    region,
    profile,
    output_dir,
    dry_run,
    verbose,
    force,
    close_accounts,
    account_filter,
):
    """Delete backends, roles and OIDC providers; optionally close accounts"""
    ctx = _setup(
        profile,
        config_file=config_file,
        region=region,
        output_dir=output_dir,
        dry_run=dry_run,
        verbose=verbose,
    )
    environments = _parse_filter(account_filter)
    _check_filter(ctx.config, environments)
    targets = environments or ctx.config.environments

    if not force and not ctx.dry_run:
        console.print(
            f"[bold red]⚠️  This deletes state buckets (with all state), lock tables, roles "
            f"and OIDC providers for: {', '.join(targets)}[/bold red]"
        )
        if not click.confirm("Are you sure you want to destroy these resources?", default=False):
            console.print("[yellow]Destroy cancelled[/yellow]")
            return
        if not click.confirm("Are you ABSOLUTELY sure? State cannot be recovered.", default=False):
            console.print("[yellow]Destroy cancelled[/yellow]")
            return

    if close_accounts and not ctx.dry_run:
        console.print(
            "[bold red]⚠️  Closed accounts cannot be reopened after 90 days and their "
            "email addresses cannot be reused[/bold red]"
        )
        if not click.confirm(f"Close member accounts for: {', '.join(targets)}?", default=False):
            console.print("[yellow]Account closure cancelled[/yellow]")
            close_accounts = False

    workflows = Workflows(ctx, environments=environments)
    report = workflows.run("destroy", workflows.destroy_stages(close_accounts=close_accounts))
    _finish(report)


def main():
    """Main entry point for the CLI"""
    cli()


if __name__ == "__main__":
    main()
