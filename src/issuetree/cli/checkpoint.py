"""CLI checkpoint commands — save, clear, list, cleanup, enable/disable, period."""

from __future__ import annotations

from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

checkpoint_app = typer.Typer(help="Manage change-tracking checkpoints")
console = Console()


def _tracker():
    from issuetree.change_tracker import ChangeTracker
    from issuetree.config import get_settings
    from issuetree.storage import StateStore

    settings = get_settings()
    return ChangeTracker(StateStore(settings=settings), settings)


@checkpoint_app.command()
def enable() -> None:
    """Turn change tracking on."""
    _tracker().set_enabled(True)
    console.print("[green]✅ Change tracking enabled[/green]")


@checkpoint_app.command()
def disable() -> None:
    """Turn change tracking off (checkpoints are kept)."""
    _tracker().set_enabled(False)
    console.print("[yellow]Change tracking disabled[/yellow]")


@checkpoint_app.command()
def period(
    value: str = typer.Argument(..., help="24h, 7d or off"),
) -> None:
    """Set the recently-updated highlight window."""
    try:
        _tracker().set_activity_period(value)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    console.print(f"Activity period set to [bold]{value}[/bold]")


@checkpoint_app.command()
def save(
    query_id: str = typer.Argument(..., help="Identifier of the saved query"),
    jql: Optional[str] = typer.Argument(None, help="JQL query (defaults to JIRA_JQL)"),
) -> None:
    """Fetch the query and store the result as its new baseline."""
    from issuetree.cli.main import load_query

    loader = load_query(jql)
    if not loader.tracker.is_enabled:
        console.print("[yellow]Change tracking is disabled; nothing saved.[/yellow]")
        raise typer.Exit(1)
    loader.tracker.save_checkpoint(query_id, loader.raw_issues)
    console.print(f"[green]✅ Checkpoint saved for {query_id} ({len(loader.raw_issues)} issues)[/green]")


@checkpoint_app.command(name="list")
def list_checkpoints() -> None:
    """List stored checkpoints and pending-change flags."""
    tracker = _tracker()
    if not tracker.checkpoints:
        console.print("[yellow]No checkpoints stored.[/yellow]")
        return

    table = Table(title="Checkpoints", header_style="bold cyan")
    table.add_column("Query", style="bold")
    table.add_column("Issues", justify="right")
    table.add_column("Taken")
    table.add_column("Pending")
    for query_id, checkpoint in sorted(tracker.checkpoints.items()):
        flags = tracker.pending_changes.get(query_id)
        pending = ", ".join(
            name.removeprefix("has_") for name, on in (flags.model_dump().items() if flags else []) if on
        )
        table.add_row(
            query_id,
            str(checkpoint.issue_count),
            tracker.get_time_since_checkpoint(query_id) or "?",
            pending or "-",
        )
    console.print(table)
    if not tracker.is_enabled:
        console.print("[dim]Change tracking is currently disabled.[/dim]")


@checkpoint_app.command()
def clear(
    query_id: Optional[str] = typer.Argument(None, help="Query to clear"),
    all_: bool = typer.Option(False, "--all", help="Clear every checkpoint"),
) -> None:
    """Delete the checkpoint for one query, or all of them."""
    tracker = _tracker()
    if all_:
        tracker.clear_all_checkpoints()
        console.print("[green]All checkpoints cleared[/green]")
        return
    if not query_id:
        console.print("[red]Give a QUERY_ID or --all[/red]")
        raise typer.Exit(1)
    if not tracker.has_checkpoint(query_id):
        console.print(f"[yellow]No checkpoint for {query_id}[/yellow]")
        return
    tracker.clear_checkpoint(query_id)
    console.print(f"[green]Checkpoint cleared for {query_id}[/green]")


@checkpoint_app.command()
def cleanup(
    keep: List[str] = typer.Option([], "--keep", "-k", help="Query ids that still exist"),
    max_age_days: Optional[int] = typer.Option(None, "--max-age-days", help="Override CHECKPOINT_MAX_AGE_DAYS"),
) -> None:
    """Remove stale checkpoints, and orphaned ones when --keep ids are given."""
    tracker = _tracker()
    orphaned = tracker.cleanup_orphaned_checkpoints(keep) if keep else 0
    stale = tracker.cleanup_stale_checkpoints(max_age_days)
    console.print(f"Removed {orphaned} orphaned and {stale} stale checkpoints")
