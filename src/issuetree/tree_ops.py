"""Non-mutating operations over a forest of TreeNodes.

Functions that change expansion return a new forest built with
``dataclasses.replace``; the old forest is never modified. ``toggle_node``
copies only the path to the changed node and shares everything else.
Every walk uses an explicit stack, so arbitrarily deep chains are safe.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable, Iterator

from issuetree.issue_fields import (
    get_issue_type_name,
    get_progress,
    get_status_category_key,
    get_status_name,
)
from issuetree.models import ResolutionProgress, TimeProgress, TreeNode, TreeStats


def iter_nodes(nodes: list[TreeNode]) -> Iterator[TreeNode]:
    """Pre-order walk over every node, ignoring expansion state."""
    stack = list(reversed(nodes))
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


def flatten_tree(nodes: list[TreeNode]) -> list[TreeNode]:
    """Return the visible rows: pre-order, descending only into expanded nodes."""
    result: list[TreeNode] = []
    stack = list(reversed(nodes))
    while stack:
        node = stack.pop()
        result.append(node)
        if node.is_expanded and node.has_children:
            stack.extend(reversed(node.children))
    return result


def find_node(nodes: list[TreeNode], key: str) -> TreeNode | None:
    """Depth-first search by issue key."""
    for node in iter_nodes(nodes):
        if node.key == key:
            return node
    return None


def _path_to(nodes: list[TreeNode], key: str) -> list[TreeNode] | None:
    """Root-to-node path for ``key``, or None when absent."""
    parents: dict[int, TreeNode | None] = {}
    stack: list[tuple[TreeNode, TreeNode | None]] = [(node, None) for node in reversed(nodes)]
    while stack:
        node, parent = stack.pop()
        parents[id(node)] = parent
        if node.key == key:
            path = [node]
            while parent is not None:
                path.append(parent)
                parent = parents[id(parent)]
            path.reverse()
            return path
        stack.extend((child, node) for child in reversed(node.children))
    return None


def _rebuild(nodes: list[TreeNode], transform: Callable[[TreeNode, list[TreeNode]], TreeNode]) -> list[TreeNode]:
    """Copy the forest bottom-up; ``transform`` gets each node and its rebuilt children."""
    preorder = list(iter_nodes(nodes))
    rebuilt: dict[int, TreeNode] = {}
    for node in reversed(preorder):
        children = [rebuilt.pop(id(child)) for child in node.children]
        rebuilt[id(node)] = transform(node, children)
    return [rebuilt[id(node)] for node in nodes]


def toggle_node(nodes: list[TreeNode], key: str) -> list[TreeNode]:
    """Flip ``is_expanded`` on the node with ``key``; unknown keys give an unchanged copy.

    Only the nodes on the path to ``key`` are copied.
    """
    path = _path_to(nodes, key)
    if path is None:
        return list(nodes)

    target = path[-1]
    updated = replace(target, is_expanded=not target.is_expanded)
    for ancestor, child in zip(reversed(path[:-1]), reversed(path[1:])):
        updated = replace(
            ancestor,
            children=[updated if c is child else c for c in ancestor.children],
        )
    return [updated if node is path[0] else node for node in nodes]


def _set_expanded(nodes: list[TreeNode], expanded: bool) -> list[TreeNode]:
    return _rebuild(nodes, lambda node, children: replace(node, is_expanded=expanded, children=children))


def expand_all(nodes: list[TreeNode]) -> list[TreeNode]:
    return _set_expanded(nodes, True)


def collapse_all(nodes: list[TreeNode]) -> list[TreeNode]:
    return _set_expanded(nodes, False)


def expand_to_depth(nodes: list[TreeNode], max_depth: int) -> list[TreeNode]:
    """Expand nodes with children above ``max_depth``; -1 expands all, 0 collapses all."""
    if max_depth == -1:
        return expand_all(nodes)
    if max_depth == 0:
        return collapse_all(nodes)
    return _rebuild(
        nodes,
        lambda node, children: replace(
            node,
            is_expanded=bool(children) and node.depth < max_depth,
            children=children,
        ),
    )


def get_expanded_keys(nodes: list[TreeNode]) -> set[str]:
    return {node.key for node in iter_nodes(nodes) if node.is_expanded}


def count_issues(nodes: list[TreeNode]) -> int:
    return sum(1 for _ in iter_nodes(nodes))


def get_max_depth(nodes: list[TreeNode]) -> int:
    return max((node.depth for node in iter_nodes(nodes)), default=0)


def get_tree_stats(nodes: list[TreeNode]) -> TreeStats:
    """Aggregate totals, depth and per-type/per-status counts in one pass."""
    stats = TreeStats(root_count=len(nodes))
    for node in iter_nodes(nodes):
        stats.total_issues += 1
        stats.max_depth = max(stats.max_depth, node.depth)
        type_name = get_issue_type_name(node.issue) or "Unknown"
        status_name = get_status_name(node.issue) or "Unknown"
        stats.counts_by_type[type_name] = stats.counts_by_type.get(type_name, 0) + 1
        stats.counts_by_status[status_name] = stats.counts_by_status.get(status_name, 0) + 1
    return stats


# ── Uncached progress ─────────────────────────────────────────────────


def calculate_time_progress(node: TreeNode) -> TimeProgress:
    """Logged vs estimated seconds for a node and all its descendants."""
    logged = total = 0
    for current in iter_nodes([node]):
        node_logged, node_total = get_progress(current.issue)
        logged += node_logged
        total += node_total
    return TimeProgress(
        logged=logged,
        total=total,
        percent=round(logged / total * 100) if total > 0 else 0,
    )


def calculate_resolution_progress(node: TreeNode) -> ResolutionProgress:
    """Done vs total descendants (the node itself is not counted)."""
    descendants = list(iter_nodes(node.children))
    done = sum(1 for d in descendants if get_status_category_key(d.issue) == "done")
    total = len(descendants)
    return ResolutionProgress(
        done=done,
        total=total,
        percent=round(done / total * 100) if total > 0 else 0,
    )
