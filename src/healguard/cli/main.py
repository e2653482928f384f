"""HealGuard CLI application."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import typer
import yaml
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from healguard import __version__
from healguard.config import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    create_default_config,
    ensure_config_dir,
    load_config,
)
from healguard.models import DetectedIssue, HealingAction

# Initialize
app = typer.Typer(
    name="healguard",
    help="HealGuard - governance for autonomous remediation",
    no_args_is_help=True,
)
console = Console()

# Sub-commands
tickets_app = typer.Typer(help="Review ticket commands")
app.add_typer(tickets_app, name="tickets")

proposals_app = typer.Typer(help="Code change proposal commands")
app.add_typer(proposals_app, name="proposals")

alerts_app = typer.Typer(help="Alert delivery commands")
app.add_typer(alerts_app, name="alerts")

PRIORITY_STYLE = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "dim",
}

STATUS_STYLE = {
    "pending": "yellow",
    "escalated": "bold red",
    "approved": "green",
    "rejected": "red",
    "draft": "dim",
    "proposed": "cyan",
    "merged": "green",
    "closed": "dim",
}


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else "INFO"

    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )


def _styled(value: str, styles: dict[str, str]) -> str:
    style = styles.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _call_api(fn: Callable[[Any], Any]) -> Any:
    """Run a client call, turning HTTP failures into a clean exit."""
    from healguard.cli.client import APIClient

    try:
        with APIClient() as client:
            return fn(client)
    except httpx.HTTPStatusError as e:
        try:
            detail = e.response.json().get("detail", e.response.text)
        except ValueError:
            detail = e.response.text
        console.print(f"[red]Error {e.response.status_code}: {detail}[/red]")
        raise typer.Exit(1)
    except httpx.RequestError as e:
        console.print(f"[red]Cannot reach HealGuard API: {e}[/red]")
        console.print("Start it with [cyan]healguard serve[/cyan]")
        raise typer.Exit(1)


def _load_plan(path: Path) -> tuple[DetectedIssue, HealingAction]:
    """Load an {issue, action} document from YAML or JSON."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return DetectedIssue.model_validate(data.get("issue", {})), HealingAction.model_validate(data.get("action", {}))


# ============================================================================
# Top-level Commands
# ============================================================================


@app.command()
def version() -> None:
    """Show the HealGuard version."""
    console.print(f"HealGuard {__version__}")


@app.command()
def init(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
) -> None:
    """Create a default configuration file."""
    ensure_config_dir()
    path = config_path or DEFAULT_CONFIG_FILE
    existed = path.exists()
    create_default_config(path)
    if existed:
        console.print(f"[yellow]Config already exists at {path}[/yellow]")
    else:
        console.print(f"[green]Created config at {path}[/green]")


@app.command()
def serve(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run the reviewer API server."""
    setup_logging(verbose)

    from healguard.api.server import run_server
    from healguard.core.governor import Governor

    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    governor = Governor.from_config(config)
    console.print(f"[green]HealGuard API on http://{config.api.host}:{config.api.port}[/green]")
    asyncio.run(run_server(governor, config.api.host, config.api.port))


@app.command()
def check(
    plan: Path = typer.Argument(..., help="YAML/JSON file with 'issue' and 'action'"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Dry run an action through policy and sandbox. Records nothing."""
    setup_logging(verbose)

    from healguard.core.safety import SafetyValidator
    from healguard.core.sandbox import SandboxEnvironment

    try:
        config = load_config(config_path)
        issue, action = _load_plan(plan)
    except (ConfigError, ValidationError, yaml.YAMLError, OSError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    validator = SafetyValidator()
    decision = validator.can_execute_autonomously(action, issue)

    if decision.allowed:
        console.print(f"[green]✓ Allowed:[/green] {decision.reason}")
    else:
        console.print(f"[red]✗ Blocked:[/red] {decision.reason}")
        if decision.requires_approval:
            console.print("  Requires human approval")

    sandbox = SandboxEnvironment(validator, config.execution.sandbox_timeout_seconds)
    report = asyncio.run(sandbox.test_fix(action, issue))

    table = Table(title="Sandbox")
    table.add_column("#", justify="right")
    table.add_column("Side effect")
    for i, effect in enumerate(report.side_effects, start=1):
        table.add_row(str(i), effect)
    console.print(table)

    for error in report.errors:
        console.print(f"[red]  {error}[/red]")

    if not decision.allowed or not report.success:
        raise typer.Exit(1)


@app.command()
def audit(
    issue_id: Optional[str] = typer.Option(None, "--issue", help="Filter by issue"),
    strategy: Optional[str] = typer.Option(None, "--strategy", "-s", help="Filter by strategy"),
    event_type: Optional[str] = typer.Option(None, "--event", "-e", help="Filter by event type"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Show recent audit entries."""
    entries = _call_api(lambda c: c.audit_logs(issue_id, strategy, event_type, limit))

    if as_json:
        console.print_json(json.dumps(entries))
        return

    if not entries:
        console.print("[yellow]No audit entries[/yellow]")
        return

    table = Table(title="Audit Log")
    table.add_column("Time")
    table.add_column("Event")
    table.add_column("Strategy", style="cyan")
    table.add_column("Severity")
    table.add_column("Issue")
    table.add_column("Review")

    for entry in entries:
        table.add_row(
            entry["timestamp"][:19].replace("T", " "),
            entry["event_type"],
            entry["strategy"],
            _styled(entry["severity"], PRIORITY_STYLE),
            entry["issue_id"],
            "yes" if entry["requires_review"] else "",
        )
    console.print(table)


# ============================================================================
# Ticket Commands
# ============================================================================


@tickets_app.command("list")
def tickets_list(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    pending: bool = typer.Option(False, "--pending", "-p", help="Only open tickets, by priority"),
) -> None:
    """List review tickets."""
    tickets = _call_api(lambda c: c.list_tickets(status=status, pending=pending))

    if not tickets:
        console.print("[yellow]No tickets[/yellow]")
        return

    table = Table(title="Review Tickets")
    table.add_column("Ticket", style="cyan")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Strategy")
    table.add_column("Reason")

    for ticket in tickets:
        table.add_row(
            ticket["id"],
            _styled(ticket["priority"], PRIORITY_STYLE),
            _styled(ticket["status"], STATUS_STYLE),
            ticket["strategy"],
            ticket["reason"][:60],
        )
    console.print(table)


@tickets_app.command("approve")
def tickets_approve(
    ticket_id: str = typer.Argument(..., help="Ticket ID"),
    reviewer: str = typer.Option(..., "--reviewer", "-r", help="Reviewer name"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Review notes"),
) -> None:
    """Approve a review ticket."""
    ticket = _call_api(lambda c: c.approve_ticket(ticket_id, reviewer, notes))
    console.print(f"[green]✓ Ticket {ticket['id']} approved by {ticket['reviewed_by']}[/green]")


@tickets_app.command("reject")
def tickets_reject(
    ticket_id: str = typer.Argument(..., help="Ticket ID"),
    reviewer: str = typer.Option(..., "--reviewer", "-r", help="Reviewer name"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Review notes"),
) -> None:
    """Reject a review ticket."""
    ticket = _call_api(lambda c: c.reject_ticket(ticket_id, reviewer, notes))
    console.print(f"[red]✗ Ticket {ticket['id']} rejected by {ticket['reviewed_by']}[/red]")


@tickets_app.command("escalate")
def tickets_escalate(
    ticket_id: str = typer.Argument(..., help="Ticket ID"),
    reviewer: str = typer.Option(..., "--reviewer", "-r", help="Who is escalating"),
    reason: str = typer.Option(..., "--reason", help="Why the ticket is escalated"),
) -> None:
    """Escalate a pending ticket."""
    ticket = _call_api(lambda c: c.escalate_ticket(ticket_id, reviewer, reason))
    console.print(f"[yellow]Ticket {ticket['id']} escalated[/yellow]")


# ============================================================================
# Proposal Commands
# ============================================================================


@proposals_app.command("list")
def proposals_list(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
) -> None:
    """List code change proposals."""
    proposals = _call_api(lambda c: c.list_proposals(status))

    if not proposals:
        console.print("[yellow]No proposals[/yellow]")
        return

    table = Table(title="Proposals")
    table.add_column("Proposal", style="cyan")
    table.add_column("Status")
    table.add_column("Branch")
    table.add_column("Tests")
    table.add_column("Approved by")

    for proposal in proposals:
        results = proposal["test_results"]
        if not results:
            tests = "-"
        else:
            passed = sum(1 for r in results if r["passed"])
            tests = f"{passed}/{len(results)}"
        table.add_row(
            proposal["id"],
            _styled(proposal["status"], STATUS_STYLE),
            proposal["branch_name"],
            tests,
            ", ".join(proposal["approved_by"]) or "-",
        )
    console.print(table)


@proposals_app.command("show")
def proposals_show(proposal_id: str = typer.Argument(..., help="Proposal ID")) -> None:
    """Show a proposal."""
    proposal = _call_api(lambda c: c.get_proposal(proposal_id))
    console.print_json(json.dumps(proposal))


@proposals_app.command("approve")
def proposals_approve(
    proposal_id: str = typer.Argument(..., help="Proposal ID"),
    reviewer: str = typer.Option(..., "--reviewer", "-r", help="Reviewer name"),
) -> None:
    """Approve a proposal."""
    _call_api(lambda c: c.approve_proposal(proposal_id, reviewer))
    console.print(f"[green]✓ Proposal {proposal_id} approved[/green]")


@proposals_app.command("reject")
def proposals_reject(
    proposal_id: str = typer.Argument(..., help="Proposal ID"),
    reviewer: str = typer.Option(..., "--reviewer", "-r", help="Reviewer name"),
    reason: str = typer.Option(..., "--reason", help="Why the proposal is rejected"),
) -> None:
    """Reject a proposal."""
    _call_api(lambda c: c.reject_proposal(proposal_id, reviewer, reason))
    console.print(f"[red]✗ Proposal {proposal_id} rejected[/red]")


@proposals_app.command("merge")
def proposals_merge(proposal_id: str = typer.Argument(..., help="Proposal ID")) -> None:
    """Merge an approved proposal whose tests passed."""
    proposal = _call_api(lambda c: c.merge_proposal(proposal_id))
    console.print(f"[green]✓ Proposal {proposal_id} merged at {proposal['merged_at']}[/green]")


@proposals_app.command("close")
def proposals_close(
    proposal_id: str = typer.Argument(..., help="Proposal ID"),
    reason: str = typer.Option("", "--reason", help="Why the proposal is closed"),
) -> None:
    """Close a proposal without merging."""
    _call_api(lambda c: c.close_proposal(proposal_id, reason))
    console.print(f"Proposal {proposal_id} closed")


@proposals_app.command("sync")
def proposals_sync(proposal_id: str = typer.Argument(..., help="Proposal ID")) -> None:
    """Refresh a proposal from version control."""
    proposal = _call_api(lambda c: c.sync_proposal(proposal_id))
    console.print(f"Proposal {proposal_id} is {_styled(proposal['status'], STATUS_STYLE)}")


# ============================================================================
# Alert Commands
# ============================================================================


@alerts_app.command("dispatch")
def alerts_dispatch() -> None:
    """Deliver queued alerts now."""
    delivered = _call_api(lambda c: c.dispatch_alerts())
    console.print(f"Delivered {delivered} queued alerts")


if __name__ == "__main__":
    app()
