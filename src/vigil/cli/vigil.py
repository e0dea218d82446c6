"""Vigil command line: sync integrations, score controls, record reviews."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ..compliance.loader import load_rule_files
from ..core.config import get_effective_config
from ..core.engine import VerificationEngine
from ..errors import VigilError
from ..models.control import ImplementationStatus
from ..models.health import HealthScoreResult
from ..models.sync import SyncResult, SyncTrigger
from ..storage.database import Database

console = Console()
err_console = Console(stderr=True)

STATUS_COLORS = {"verified": "green", "failed": "red", "stale": "yellow", "unverified": "white"}


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=verbose)],
        force=True,
    )


def _engine(ctx: click.Context) -> VerificationEngine:
    config = ctx.obj["config"]
    rules_path = ctx.obj["project"] / ".vigil" / "rules"
    _, remediation = load_rule_files(rules_path)
    return VerificationEngine(Database.from_config(config), config, remediation_rules=remediation)


def _fail(message: str, code: int = 1) -> None:
    console.print(f"  [red]ERROR[/red] {message}")
    sys.exit(code)


def _score_color(score: int) -> str:
    if score >= 80:
        return "green"
    if score >= 50:
        return "yellow"
    return "red"


def print_health(result: HealthScoreResult) -> None:
    f = result.factors
    color = _score_color(result.overall_score)
    status_color = STATUS_COLORS.get(f.verification_status.value, "white")
    console.print()
    console.print(f"  [bold]Control {result.control_id}[/bold]  [{color}]{result.overall_score}/100[/{color}]")
    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Factor")
    table.add_column("Score", justify="right")
    table.add_column("Detail")
    table.add_row(
        "Verification", f"{f.verification_score:g}/40",
        f"[{status_color}]{f.verification_status.value}[/{status_color}]",
    )
    table.add_row(
        "Freshness", f"{f.freshness_score:g}/25",
        "no evidence" if f.days_since_last_evidence is None else f"{f.days_since_last_evidence} days old",
    )
    table.add_row(
        "Coverage", f"{f.coverage_score:g}/20",
        f"{f.evidence_count} evidence, {'automated' if f.has_integration_evidence else 'manual only'}",
    )
    table.add_row(
        "Review", f"{f.review_score:g}/15",
        "never reviewed" if f.days_since_last_review is None else f"{f.days_since_last_review} days ago",
    )
    console.print(table)

    for issue in result.integration_issues:
        console.print(f"  [red]![/red] {issue}")
    if result.recommendations:
        console.print("\n  [bold]Recommendations[/bold]")
        for rec in result.recommendations:
            console.print(f"  - {rec}")
    if result.remediation:
        console.print("\n  [bold]Remediation[/bold]")
        for i, step in enumerate(result.remediation, 1):
            console.print(f"  {i}. {step}")
    console.print()


def print_sync(result: SyncResult) -> None:
    if result.skipped:
        console.print(f"  [yellow]SKIPPED[/yellow] {result.integration_id}: {result.skip_reason}")
        return
    console.print(
        f"  [green]OK[/green] {result.integration_id}: {result.findings} findings, "
        f"{result.evidence_generated} evidence, "
        f"[green]{result.controls_verified} verified[/green], "
        f"[red]{result.controls_failed} failed[/red] "
        f"({result.duration_seconds:.1f}s)"
    )
    for item in result.failed_items:
        console.print(f"  [red]FAILED[/red] {item.control_id}: {item.error}")


@click.group()
@click.option("--project", "-p", type=click.Path(exists=True, file_okay=False), default=".",
              help="Directory containing .vigil/config.yaml")
@click.option("--database-url", type=str, help="Database URL override")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def vigil_cli(ctx: click.Context, project: str, database_url: str | None, verbose: bool) -> None:
    """Vigil - control verification and health scoring."""
    setup_logging(verbose)
    overrides = {"database": {"url": database_url}} if database_url else None
    project_path = Path(project)
    ctx.obj = {
        "project": project_path,
        "config": get_effective_config(project_path, overrides),
    }


@vigil_cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database tables."""
    Database.from_config(ctx.obj["config"]).init_db()
    console.print("  [green]Initialized[/green] database")


@vigil_cli.command("import-rules")
@click.argument("rules_file", type=click.Path(exists=True))
@click.option("--organization", "-o", required=True, help="Organization ID")
@click.pass_context
def import_rules(ctx: click.Context, rules_file: str, organization: str) -> None:
    """Replace an organization's control mapping rules from a YAML file."""
    rules, _ = load_rule_files(Path(rules_file))
    try:
        count = _engine(ctx).import_rules(organization, rules)
    except VigilError as e:
        _fail(str(e))
        return
    console.print(f"  [green]Imported[/green] {count} mapping rules")


@vigil_cli.command()
@click.argument("organization_id")
@click.argument("integration_id")
@click.option("--scheduled", is_flag=True, help="Respect the sync cooldown")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def sync(ctx: click.Context, organization_id: str, integration_id: str, scheduled: bool, as_json: bool) -> None:
    """Run one sync pass for an integration."""
    trigger = SyncTrigger.SCHEDULED if scheduled else SyncTrigger.MANUAL
    try:
        result = asyncio.run(_engine(ctx).sync(organization_id, integration_id, trigger))
    except VigilError as e:
        _fail(str(e))
        return
    if as_json:
        click.echo(result.model_dump_json(indent=2))
    else:
        print_sync(result)


@vigil_cli.command()
@click.argument("control_id")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def health(ctx: click.Context, control_id: str, as_json: bool) -> None:
    """Show a control's health score and recommendations."""
    try:
        result = _engine(ctx).get_health(control_id)
    except VigilError as e:
        _fail(str(e))
        return
    if as_json:
        click.echo(result.model_dump_json(indent=2))
    else:
        print_health(result)


@vigil_cli.command()
@click.argument("control_id")
@click.option("--limit", "-n", type=int, default=20)
@click.option("--as-of", type=click.DateTime(), help="Show the verification status at this time (UTC)")
@click.option("--json", "as_json", is_flag=True, help="Print the entries as JSON")
@click.pass_context
def history(ctx: click.Context, control_id: str, limit: int, as_of: datetime | None, as_json: bool) -> None:
    """Show a control's verification history, newest first."""
    engine = _engine(ctx)
    try:
        if as_of is not None:
            when = as_of.replace(tzinfo=timezone.utc) if as_of.tzinfo is None else as_of
            status = engine.verification_state_as_of(control_id, when)
            console.print(f"  {control_id} as of {when.isoformat()}: {status.value}")
            return
        entries = engine.get_verification_history(control_id, limit)
    except (VigilError, ValueError) as e:
        _fail(str(e))
        return

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("When")
    table.add_column("Event")
    table.add_column("Status")
    table.add_column("Actor")
    table.add_column("Reason", overflow="fold")
    for entry in entries:
        after = entry.status_after.value
        table.add_row(
            str(entry.sequence),
            entry.created_at.strftime("%Y-%m-%d %H:%M"),
            entry.event.value,
            f"{entry.status_before.value} -> [{STATUS_COLORS.get(after, 'white')}]{after}[/]",
            f"{entry.actor_type.value}:{entry.actor_id}",
            entry.reason,
        )
    console.print(table)


@vigil_cli.command()
@click.argument("control_id")
@click.option("--actor", required=True, help="Who is requesting verification")
@click.option("--timeout", type=float, help="Seconds to wait for the sync passes")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def verify(ctx: click.Context, control_id: str, actor: str, timeout: float | None, as_json: bool) -> None:
    """Verify a control now against its mapped integrations."""
    try:
        result = asyncio.run(_engine(ctx).trigger_manual_verification(control_id, actor, timeout))
    except VigilError as e:
        _fail(str(e))
        return
    if as_json:
        click.echo(result.model_dump_json(indent=2))
    else:
        print_health(result)


@vigil_cli.command()
@click.argument("control_id")
@click.option("--actor", required=True)
@click.option("--notes", default="", help="Review notes")
@click.pass_context
def review(ctx: click.Context, control_id: str, actor: str, notes: str) -> None:
    """Record a human review of a control."""
    try:
        next_review = _engine(ctx).mark_reviewed(control_id, actor, notes)
    except VigilError as e:
        _fail(str(e))
        return
    console.print(f"  [green]Reviewed[/green] {control_id}; next review due {next_review.date().isoformat()}")


@vigil_cli.command("set-status")
@click.argument("control_id")
@click.argument("status", type=click.Choice([s.value for s in ImplementationStatus]))
@click.option("--actor", required=True)
@click.pass_context
def set_status(ctx: click.Context, control_id: str, status: str, actor: str) -> None:
    """Change a control's implementation status."""
    try:
        verification = _engine(ctx).set_implementation_status(control_id, ImplementationStatus(status), actor)
    except VigilError as e:
        _fail(str(e))
        return
    console.print(f"  [green]Updated[/green] {control_id}: {status} (verification: {verification.value})")


@vigil_cli.command()
@click.argument("control_id")
@click.option("--actor", required=True)
@click.option("--reason", default="", help="Why verification is being reset")
@click.option("--remove-automation", is_flag=True, help="Also detach the control from its integration")
@click.pass_context
def reset(ctx: click.Context, control_id: str, actor: str, reason: str, remove_automation: bool) -> None:
    """Reset a control's verification to unverified."""
    try:
        _engine(ctx).reset_verification(control_id, actor, reason, remove_automation)
    except VigilError as e:
        _fail(str(e))
        return
    console.print(f"  [green]Reset[/green] {control_id} to unverified")


@vigil_cli.command()
@click.option("--organization", "-o", help="Only this organization")
@click.pass_context
def sweep(ctx: click.Context, organization: str | None) -> None:
    """Mark verified controls stale once their evidence has expired."""
    stale = _engine(ctx).sweep_stale(organization)
    console.print(f"  {len(stale)} control(s) marked stale")
    for control_id in stale:
        console.print(f"  [yellow]STALE[/yellow] {control_id}")


@vigil_cli.command("run-scheduler")
@click.option("--interval", type=float, default=60, help="Seconds between due-sync checks")
@click.option("--once", is_flag=True, help="Run due syncs once and exit")
@click.pass_context
def run_scheduler(ctx: click.Context, interval: float, once: bool) -> None:
    """Run scheduled syncs for every due integration."""
    from ..core.orchestrator import SyncScheduler

    engine = _engine(ctx)
    scheduler = SyncScheduler(engine.orchestrator, interval_seconds=interval, sweep=engine.sweep_stale)

    async def _run() -> None:
        if once:
            for result in await scheduler.run_due_syncs():
                print_sync(result)
            scheduler.sweep_stale()
            return
        await scheduler.run_forever()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("  Scheduler stopped")


def main() -> None:
    vigil_cli()


if __name__ == "__main__":
    main()
