"""Main CLI commands — tree, stats, changes, config, auth-test, serve."""

from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from issuetree.cli.checkpoint import checkpoint_app

app = typer.Typer(
    name="issuetree",
    help="issuetree — Jira issue hierarchy viewer with checkpoint-based change tracking.",
    add_completion=False,
    rich_markup_mode="rich",
)
app.add_typer(checkpoint_app, name="checkpoint", help="Manage change-tracking checkpoints")

console = Console()


def _setup_logging(verbose: bool = False) -> None:
    from issuetree.config import get_settings
    from issuetree.logging_config import configure_logging

    settings = get_settings()
    level = "DEBUG" if verbose else settings.log_level
    configure_logging(level=level, log_file=settings.log_file, json_format=settings.log_json)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """issuetree CLI root."""
    _setup_logging(verbose)


def load_query(jql: Optional[str], query_id: Optional[str] = None):
    """Fetch and build the forest for ``jql`` (settings default), exiting on failure."""
    from issuetree.config import get_settings
    from issuetree.jira_client import JiraClient, JiraClientError
    from issuetree.loader import create_loader

    settings = get_settings()
    query = jql or settings.jira_jql
    try:
        with JiraClient(settings) as client:
            loader = create_loader(client, settings)
            with console.status(f"Fetching issues for [bold]{query}[/bold]..."):
                ok = loader.load(query, query_id)
    except JiraClientError as exc:
        console.print(f"[bold red]❌ Jira error:[/bold red] {exc}")
        raise typer.Exit(1)

    if not ok:
        console.print(f"[bold red]❌ Failed to load issues:[/bold red] {loader.error}")
        raise typer.Exit(1)
    return loader


# ── tree ──────────────────────────────────────────────────────────────

@app.command()
def tree(
    jql: Optional[str] = typer.Argument(None, help="JQL query (defaults to JIRA_JQL)"),
    expand: bool = typer.Option(False, "--expand-all", "-e", help="Expand every node"),
    depth: Optional[int] = typer.Option(None, "--depth", "-d", help="Expand N levels (-1 = all)"),
    sort: Optional[str] = typer.Option(None, "--sort", help="Sort field, e.g. priority or updated:asc"),
    flat: bool = typer.Option(False, "--flat", help="Render visible rows as a table"),
) -> None:
    """Fetch issues and print them as a parent/child tree."""
    from issuetree.config import SORT_DIRECTIONS, SORT_FIELDS
    from issuetree.models import SortConfig
    from issuetree.renderer import render_flat, render_tree
    from issuetree.tree_ops import flatten_tree

    loader = load_query(jql)

    if sort:
        field, _, direction = sort.partition(":")
        direction = direction or "asc"
        if field not in SORT_FIELDS or direction not in SORT_DIRECTIONS:
            console.print(f"[red]Invalid sort {sort!r}. Fields: {', '.join(SORT_FIELDS)}[/red]")
            raise typer.Exit(1)
        loader.set_sort_config(SortConfig(field=field, direction=direction))

    if expand:
        loader.expand_all()
    elif depth is not None:
        loader.expand_to_depth(depth)

    tracker = loader.tracker
    if flat:
        render_flat(flatten_tree(loader.forest), console)
    else:
        render_tree(
            loader.forest,
            console,
            title=loader.current_jql,
            is_recent=lambda node: tracker.is_recently_updated(node.issue),
        )


# ── stats ─────────────────────────────────────────────────────────────

@app.command()
def stats(
    jql: Optional[str] = typer.Argument(None, help="JQL query (defaults to JIRA_JQL)"),
) -> None:
    """Show totals, depth and per-type/per-status counts for a query."""
    from issuetree.renderer import render_stats
    from issuetree.tree_ops import get_tree_stats

    loader = load_query(jql)
    render_stats(get_tree_stats(loader.forest), console)


# ── changes ───────────────────────────────────────────────────────────

@app.command()
def changes(
    query_id: str = typer.Argument(..., help="Identifier of the saved query"),
    jql: Optional[str] = typer.Argument(None, help="JQL query (defaults to JIRA_JQL)"),
    save: bool = typer.Option(False, "--save", "-s", help="Save the current result as the new checkpoint"),
) -> None:
    """Compare a query against its last checkpoint."""
    from issuetree.renderer import render_changes, render_tree

    loader = load_query(jql, query_id)
    tracker = loader.tracker
    if not tracker.is_enabled:
        console.print("[yellow]Change tracking is disabled. Enable it with 'issuetree checkpoint enable'.[/yellow]")
        raise typer.Exit(1)

    detection = loader.changes
    if detection is None:
        console.print("[yellow]No change information available.[/yellow]")
        raise typer.Exit(1)

    render_changes(detection, console, since=tracker.get_time_since_checkpoint(query_id))
    if detection.has_changes:
        render_tree(
            loader.forest,
            console,
            title=loader.current_jql,
            change_types=tracker.get_issue_change_types,
        )

    if save:
        loader.save_checkpoint()
        console.print(f"[green]✅ Checkpoint saved for {query_id}[/green]")


# ── config show ───────────────────────────────────────────────────────

@app.command(name="config")
def config_show() -> None:
    """Print resolved configuration (sensitive values masked)."""
    from issuetree.config import get_settings

    settings = get_settings()
    table = Table(title="issuetree Configuration", show_lines=True, header_style="bold cyan")
    table.add_column("Setting", style="bold yellow", no_wrap=True)
    table.add_column("Value")
    for key, val in settings.as_display_dict().items():
        table.add_row(key, val)
    console.print(table)

    errors = settings.validate_jira_config()
    if errors:
        console.print("\n[bold red]⚠️  Configuration issues:[/bold red]")
        for err in errors:
            console.print(f"  • {err}")
    else:
        console.print("\n[bold green]✅ Configuration looks valid[/bold green]")


# ── auth-test ─────────────────────────────────────────────────────────

@app.command(name="auth-test")
def auth_test() -> None:
    """Test Jira authentication and display current user info."""
    from issuetree.jira_client import JiraClient, JiraClientError

    try:
        with JiraClient() as client:
            user = client.test_auth()
    except JiraClientError as exc:
        console.print(f"[bold red]❌ Authentication failed:[/bold red] {exc}")
        raise typer.Exit(1)

    console.print(Panel(
        f"✅ [bold green]Authentication successful![/bold green]\n\n"
        f"  User: {user.get('displayName') or user.get('name', '?')}\n"
        f"  Email: {user.get('emailAddress', '')}",
        style="green",
    ))


# ── serve ─────────────────────────────────────────────────────────────

@app.command()
def serve(
    port: int = typer.Option(8765, help="Port to run the API server on"),
    host: str = typer.Option("127.0.0.1", help="Host to bind the API server to"),
) -> None:
    """Start the HTTP API server."""
    import uvicorn

    from issuetree.api import create_app

    console.print(Panel(
        f"🚀 [bold green]issuetree API running[/bold green]\n\n"
        f"  http://{host}:{port}/api/health\n"
        f"  Docs: http://{host}:{port}/docs",
        style="green",
    ))
    uvicorn.run(create_app(), host=host, port=port, log_level="info")
