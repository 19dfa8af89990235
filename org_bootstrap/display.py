# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Display Module

Rich UI components for stage progress, run summaries and closure results.
"""

from typing import Dict, Iterable, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()


def show_stage_header(index: int, total: int, name: str, out: Optional[Console] = None):
    (out or console).print(f"\n[bold blue][{index}/{total}] {name}[/bold blue]")


def show_stage_result(name: str, status: str, error: str = "", out: Optional[Console] = None):
    out = out or console
    if status == "passed":
        out.print(f"[green]✓ {name}[/green]")
    elif status == "warned":
        out.print(f"[yellow]⚠ {name}: {error}[/yellow]")
    else:
        out.print(f"[red]✗ {name}: {error}[/red]")


def create_outcome_table(outcomes: Iterable[Dict]) -> Table:
    """
    Create table of reconciled resources

    Args:
        outcomes: Dicts with kind, key and outcome

    Returns:
        Rich Table object
    """
    table = Table(title="Resources", show_header=True, header_style="bold cyan")
    table.add_column("Kind", style="cyan")
    table.add_column("Resource")
    table.add_column("Outcome")

    styles = {
        "Found": "dim",
        "Created": "green",
        "Adopted": "yellow",
        "WouldCreate": "blue",
        "Conflict": "red",
        "Failed": "red",
    }
    for entry in outcomes:
        outcome = entry["outcome"]
        table.add_row(entry["kind"], entry["key"], outcome, style=styles.get(outcome))
    return table


def create_summary_panel(report: Dict) -> Panel:
    """
    Create final run summary panel

    Args:
        report: Bootstrap report dictionary

    Returns:
        Rich Panel object
    """
    success = report["status"] == "success"
    lines = [
        f"[bold]Run:[/bold] {report['run']}",
        f"[bold]Status:[/bold] {'[green]success[/green]' if success else '[red]failure[/red]'}",
        f"[bold]Duration:[/bold] {report['duration_seconds']:.1f}s",
        f"[bold]Stages:[/bold] {report['stages_completed']} passed, "
        f"{report['stages_warned']} warned, {report['stages_failed']} failed "
        f"of {report['stages_total']}",
    ]
    if report.get("dry_run"):
        lines.append("[blue]Dry run: no changes were made[/blue]")
    if report.get("failed_stage"):
        lines.append(f"[red]Failed stage:[/red] {report['failed_stage']}")
    if report.get("warnings"):
        lines.append(f"[yellow]Warnings:[/yellow] {len(report['warnings'])}")
        lines.extend(f"  • {w}" for w in report["warnings"])

    return Panel(
        "\n".join(lines),
        title="Bootstrap Summary",
        border_style="green" if success else "red",
    )


def create_accounts_table(accounts: Dict[str, str], role_arns: Dict[str, str]) -> Table:
    table = Table(title="Environments", show_header=True, header_style="bold cyan")
    table.add_column("Environment", style="cyan")
    table.add_column("Account ID")
    table.add_column("Deployment Role")
    for environment, account_id in accounts.items():
        table.add_row(environment, account_id, role_arns.get(environment, "-"))
    return table


def create_closure_table(summary: Dict) -> Table:
    table = Table(title="Account Closure", show_header=True, header_style="bold cyan")
    table.add_column("Result", style="cyan", width=10)
    table.add_column("Count", justify="right", width=8)
    table.add_row("✓ Closed", str(summary["closed"]), style="green")
    table.add_row("✗ Failed", str(summary["failed"]), style="red")
    table.add_row("○ Skipped", str(summary["skipped"]), style="yellow")
    return table


def create_verification_table(checks: Iterable[Dict]) -> Table:
    table = Table(title="Verification", show_header=True, header_style="bold cyan")
    table.add_column("Check", style="cyan")
    table.add_column("Result", width=8)
    table.add_column("Detail")
    for check in checks:
        passed = check["passed"]
        table.add_row(
            check["name"],
            "✓ pass" if passed else "✗ fail",
            check.get("detail", ""),
            style="green" if passed else "red",
        )
    return table
