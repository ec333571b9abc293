"""Hierarchy builder — converts a flat issue list into a multi-root forest."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from issuetree.issue_fields import (
    get_fields,
    get_issue_links,
    get_key,
    get_parent_key,
    get_progress,
    get_status_category_key,
    is_subtask,
)
from issuetree.logging_config import log_timing
from issuetree.models import ResolutionProgress, SortConfig, TimeProgress, TreeNode
from issuetree.sorting import sort_key

logger = logging.getLogger(__name__)


def _as_issue_list(issues: Any) -> list[Any]:
    if isinstance(issues, (str, bytes, dict)) or not isinstance(issues, Iterable):
        raise TypeError(f"issues must be a collection of issue dicts, got {type(issues).__name__}")
    return list(issues)


def _index_issues(issues: list[Any]) -> dict[str, dict[str, Any]]:
    """Index issues by key. Later duplicates replace earlier ones."""
    by_key: dict[str, dict[str, Any]] = {}
    for issue in issues:
        if not isinstance(issue, dict):
            logger.warning("Skipping non-dict issue entry: %r", type(issue).__name__)
            continue
        key = get_key(issue)
        if not key:
            logger.warning("Skipping issue without a key")
            continue
        if key in by_key:
            logger.warning("Duplicate issue key detected: %s, keeping latest", key)
        by_key[key] = issue
    return by_key


def find_parent_key(
    issue: dict[str, Any],
    known_keys: set[str] | dict[str, Any],
    epic_link_field_id: str | None = None,
) -> str | None:
    """Resolve an issue's parent key. First matching signal wins.

    1. ``fields.parent.key`` (subtasks and native parent links)
    2. the epic-link custom field, when configured and holding a string
    3. an issue link labelled as a parent/child relationship whose linked
       issue is part of ``known_keys``
    """
    parent_key = get_parent_key(issue)
    if parent_key:
        return parent_key

    if epic_link_field_id:
        epic_key = get_fields(issue).get(epic_link_field_id)
        if isinstance(epic_key, str) and epic_key:
            return epic_key

    for link in get_issue_links(issue):
        link_type = link.get("type") if isinstance(link.get("type"), dict) else {}
        inward = (link_type.get("inward") or "").lower()
        outward = (link_type.get("outward") or "").lower()

        if "child" in inward or "parent" in inward:
            linked = link.get("inwardIssue")
            if isinstance(linked, dict) and linked.get("key") in known_keys:
                return linked["key"]

        if "parent" in outward:
            linked = link.get("outwardIssue")
            if isinstance(linked, dict) and linked.get("key") in known_keys:
                return linked["key"]

    return None


def _break_cycles(order: list[str], parent_of: dict[str, str]) -> set[str]:
    """Remove parent edges that close a cycle. Mutates ``parent_of``.

    Within each cycle the member that appears latest in ``order`` loses its
    parent and becomes a root. Returns the keys that were demoted.
    """
    position = {key: idx for idx, key in enumerate(order)}
    settled: set[str] = set()
    demoted: set[str] = set()

    for start in order:
        path: list[str] = []
        on_path: set[str] = set()
        current: str | None = start
        while current is not None and current not in settled:
            if current in on_path:
                cycle = path[path.index(current):]
                victim = max(cycle, key=lambda k: position[k])
                logger.warning(
                    "Parent cycle detected (%s); treating %s as a root",
                    " -> ".join(cycle + [current]),
                    victim,
                )
                del parent_of[victim]
                demoted.add(victim)
                break
            path.append(current)
            on_path.add(current)
            current = parent_of.get(current)
        settled.update(path)

    return demoted


def _assign_depths(roots: list[TreeNode]) -> int:
    """Top-down depth pass. Returns the maximum depth seen."""
    max_depth = 0
    stack: list[tuple[TreeNode, int]] = [(root, 0) for root in roots]
    while stack:
        node, depth = stack.pop()
        node.depth = depth
        max_depth = max(max_depth, depth)
        stack.extend((child, depth + 1) for child in node.children)
    return max_depth


def _sort_siblings(roots: list[TreeNode], sort_config: SortConfig | None) -> None:
    """Sort every sibling list in place, top-down."""
    key = sort_key(sort_config)
    roots.sort(key=key)
    stack = list(roots)
    while stack:
        node = stack.pop()
        if node.children:
            node.children.sort(key=key)
            stack.extend(node.children)


def _cache_aggregated_progress(roots: list[TreeNode]) -> None:
    """Fill time/resolution progress bottom-up so views never recurse."""
    preorder: list[TreeNode] = []
    stack = list(roots)
    while stack:
        node = stack.pop()
        preorder.append(node)
        stack.extend(node.children)

    # Reversed pre-order visits every child before its parent
    for node in reversed(preorder):
        logged, total = get_progress(node.issue)
        done = 0
        count = 0
        for child in node.children:
            if child.time_progress:
                logged += child.time_progress.logged
                total += child.time_progress.total
            count += 1
            if get_status_category_key(child.issue) == "done":
                done += 1
            if child.resolution_progress:
                done += child.resolution_progress.done
                count += child.resolution_progress.total

        node.time_progress = TimeProgress(
            logged=logged,
            total=total,
            percent=round(logged / total * 100) if total > 0 else 0,
        )
        node.resolution_progress = ResolutionProgress(
            done=done,
            total=count,
            percent=round(done / count * 100) if count > 0 else 0,
        )


def build_hierarchy(
    issues: Iterable[dict[str, Any]],
    epic_link_field_id: str | None = None,
    expanded_keys: Iterable[str] | None = None,
    sort_config: SortConfig | None = None,
) -> list[TreeNode]:
    """Build a forest from flat, arbitrarily ordered issues.

    Never fails on incomplete data: issues whose parent is missing from the
    input become orphan roots, and parent cycles are broken by demoting one
    member to a root. Only a non-collection ``issues`` raises (TypeError).
    """
    issue_list = _as_issue_list(issues)
    expanded = set(expanded_keys or ())

    with log_timing(logger, "build_hierarchy") as timing:
        by_key = _index_issues(issue_list)
        order = list(by_key)

        nodes = {
            key: TreeNode(issue=issue, is_expanded=key in expanded)
            for key, issue in by_key.items()
        }

        parent_of: dict[str, str] = {}
        orphan_count = 0
        for key, issue in by_key.items():
            parent_key = find_parent_key(issue, by_key, epic_link_field_id)
            if is_subtask(issue):
                logger.debug("Subtask %s resolved parent: %s", key, parent_key or "none")
            if not parent_key:
                continue
            if parent_key == key:
                logger.warning("Issue %s names itself as parent; treating as root", key)
                nodes[key].is_cycle_break = True
            elif parent_key in nodes:
                parent_of[key] = parent_key
            else:
                orphan_count += 1
                nodes[key].is_orphan = True
                logger.debug("Issue %s has parent %s not in result set", key, parent_key)

        for key in _break_cycles(order, parent_of):
            nodes[key].is_cycle_break = True
        cycle_break_count = sum(1 for node in nodes.values() if node.is_cycle_break)

        roots: list[TreeNode] = []
        for key in order:
            node = nodes[key]
            parent_key = parent_of.get(key)
            if parent_key:
                node.parent_key = parent_key
                nodes[parent_key].children.append(node)
            else:
                roots.append(node)

        _sort_siblings(roots, sort_config)
        max_depth = _assign_depths(roots)
        _cache_aggregated_progress(roots)

    if orphan_count:
        logger.info(
            "Tree builder: %d issues had parent references not in the dataset (treated as roots)",
            orphan_count,
        )
    if cycle_break_count:
        logger.info(
            "Tree builder: %d issues were cut from parent cycles (treated as roots)",
            cycle_break_count,
        )
    logger.info(
        "Built hierarchy: %d issues -> %d root nodes, max depth %d, %d orphans, %d cycle breaks (%.2fms)",
        len(nodes),
        len(roots),
        max_depth,
        orphan_count,
        cycle_break_count,
        timing["elapsed_ms"],
    )
    return roots


def build_flat_list(
    issues: Iterable[dict[str, Any]],
    sort_config: SortConfig | None = None,
) -> list[TreeNode]:
    """Build depth-0 nodes with no hierarchy (for grouped views)."""
    by_key = _index_issues(_as_issue_list(issues))
    nodes = [TreeNode(issue=issue) for issue in by_key.values()]
    nodes.sort(key=sort_key(sort_config))
    logger.debug("Built flat list: %d issues", len(nodes))
    return nodes
