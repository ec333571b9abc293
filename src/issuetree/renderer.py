"""Rich rendering of forests, tree statistics and change summaries."""

from __future__ import annotations

from collections import deque
from typing import Callable

from rich.console import Console
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from issuetree.issue_fields import (
    get_issue_type_name,
    get_status_category_key,
    get_status_name,
    get_summary,
)
from issuetree.models import ChangeDetection, TreeNode, TreeStats

CATEGORY_STYLES = {
    "new": "bright_black",
    "indeterminate": "blue",
    "done": "green",
}

CHANGE_MARKERS = {
    "new": ("NEW", "bold green"),
    "status-changed": ("STATUS", "bold yellow"),
    "new-comments": ("COMMENTS", "cyan"),
    "assignee-changed": ("ASSIGNEE", "magenta"),
}


def node_label(
    node: TreeNode,
    change_types: list[str] | None = None,
    recent: bool = False,
) -> Text:
    status = get_status_name(node.issue) or "?"
    style = CATEGORY_STYLES.get(get_status_category_key(node.issue), "white")

    label = Text()
    label.append(node.key, style="bold")
    label.append(f" [{get_issue_type_name(node.issue) or '?'}] ", style="dim")
    label.append(get_summary(node.issue) or "")
    label.append(f"  {status}", style=style)

    progress = node.resolution_progress
    if progress and progress.total:
        label.append(f"  {progress.done}/{progress.total} done ({progress.percent}%)", style="dim")
    if node.has_children and not node.is_expanded:
        label.append(f"  (+{len(node.children)})", style="dim")
    if node.is_orphan:
        label.append("  orphan", style="italic yellow")
    if recent:
        label.append("  ●", style="bold blue")
    for change_type in change_types or []:
        text, marker_style = CHANGE_MARKERS.get(change_type, (change_type, "bold"))
        label.append(f"  {text}", style=marker_style)
    return label


def render_tree(
    forest: list[TreeNode],
    console: Console,
    title: str = "Issues",
    change_types: Callable[[str], list[str]] | None = None,
    is_recent: Callable[[TreeNode], bool] | None = None,
) -> None:
    """Print the visible part of the forest (collapsed nodes hide children)."""
    root = Tree(Text(title, style="bold cyan"), guide_style="dim")

    # FIFO keeps each parent's children in sibling order
    pending: deque[tuple[Tree, TreeNode]] = deque((root, node) for node in forest)
    while pending:
        parent, node = pending.popleft()
        branch = parent.add(
            node_label(
                node,
                change_types(node.key) if change_types else None,
                is_recent(node) if is_recent else False,
            )
        )
        if node.is_expanded:
            pending.extend((branch, child) for child in node.children)

    console.print(root)


def render_flat(rows: list[TreeNode], console: Console) -> None:
    table = Table(header_style="bold cyan", show_lines=False)
    table.add_column("Key", style="bold", no_wrap=True)
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Summary")
    for node in rows:
        indent = "  " * node.depth
        table.add_row(
            f"{indent}{node.key}",
            get_issue_type_name(node.issue),
            get_status_name(node.issue),
            get_summary(node.issue) or "",
        )
    console.print(table)


def render_stats(stats: TreeStats, console: Console) -> None:
    summary = Table(title="Tree Statistics", header_style="bold cyan")
    summary.add_column("Metric", style="bold yellow")
    summary.add_column("Value", justify="right")
    summary.add_row("Total issues", str(stats.total_issues))
    summary.add_row("Root nodes", str(stats.root_count))
    summary.add_row("Max depth", str(stats.max_depth))
    console.print(summary)

    for title, counts in (("By Type", stats.counts_by_type), ("By Status", stats.counts_by_status)):
        table = Table(title=title, header_style="bold cyan")
        table.add_column("Name")
        table.add_column("Count", justify="right")
        for name, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])):
            table.add_row(name, str(count))
        console.print(table)


def render_changes(changes: ChangeDetection, console: Console, since: str | None = None) -> None:
    header = "Changes since last checkpoint"
    if since:
        header += f" ({since})"
    console.print(f"\n[bold]{header}[/bold]")

    if not changes.has_changes:
        console.print("[green]No changes.[/green]")
        return

    table = Table(header_style="bold cyan")
    table.add_column("Change", no_wrap=True)
    table.add_column("Key", style="bold", no_wrap=True)
    table.add_column("Details")

    for item in changes.new_issues:
        table.add_row("[green]new[/green]", item.key, item.summary or "")
    for item in changes.removed_issues:
        table.add_row("[red]removed[/red]", item.key, f"last status: {item.last_status}")
    for item in changes.status_changes:
        table.add_row("[yellow]status[/yellow]", item.key, f"{item.previous_status} → {item.current_status}")
    for item in changes.comment_changes:
        who = f" (latest by {item.latest_author})" if item.latest_author else ""
        table.add_row("[cyan]comments[/cyan]", item.key, f"+{item.new_comment_count}{who}")
    for item in changes.assignee_changes:
        table.add_row(
            "[magenta]assignee[/magenta]",
            item.key,
            f"{item.previous_assignee or 'Unassigned'} → {item.current_assignee or 'Unassigned'}",
        )
    console.print(table)
