"""Tree API routes — load a query as a forest, stats, expansion."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from issuetree.api.deps import get_loader, load_or_raise
from issuetree.config import SORT_DIRECTIONS, SORT_FIELDS
from issuetree.issue_fields import (
    get_issue_type_name,
    get_status_category_key,
    get_status_name,
    get_summary,
)
from issuetree.loader import IssueLoader
from issuetree.models import SortConfig, TreeNode
from issuetree.tree_ops import flatten_tree, get_tree_stats, iter_nodes

router = APIRouter()


def _node_fields(node: TreeNode, loader: IssueLoader) -> dict[str, Any]:
    tracker = loader.tracker
    data: dict[str, Any] = {
        "key": node.key,
        "summary": get_summary(node.issue),
        "type": get_issue_type_name(node.issue),
        "status": get_status_name(node.issue),
        "statusCategory": get_status_category_key(node.issue),
        "depth": node.depth,
        "parentKey": node.parent_key,
        "isExpanded": node.is_expanded,
        "isOrphan": node.is_orphan,
        "childCount": len(node.children),
        "recentlyUpdated": tracker.is_recently_updated(node.issue),
        "changeTypes": tracker.get_issue_change_types(node.key),
    }
    if node.resolution_progress:
        data["resolutionProgress"] = {
            "done": node.resolution_progress.done,
            "total": node.resolution_progress.total,
            "percent": node.resolution_progress.percent,
        }
    return data


def node_to_dict(node: TreeNode, loader: IssueLoader, include_children: bool = True) -> dict[str, Any]:
    """Serialize one node, and with ``include_children`` its whole subtree."""
    if not include_children:
        return _node_fields(node, loader)

    # Children are serialized before their parent (reversed pre-order)
    built: dict[int, dict[str, Any]] = {}
    for current in reversed(list(iter_nodes([node]))):
        data = _node_fields(current, loader)
        data["children"] = [built.pop(id(child)) for child in current.children]
        built[id(current)] = data
    return built[id(node)]


def stats_to_dict(loader: IssueLoader) -> dict[str, Any]:
    stats = get_tree_stats(loader.forest)
    return {
        "totalIssues": stats.total_issues,
        "rootCount": stats.root_count,
        "maxDepth": stats.max_depth,
        "countsByType": stats.counts_by_type,
        "countsByStatus": stats.counts_by_status,
    }


def _forest_response(loader: IssueLoader, flat: bool) -> dict[str, Any]:
    if flat:
        rows = [node_to_dict(node, loader, include_children=False) for node in flatten_tree(loader.forest)]
        return {"jql": loader.current_jql, "rows": rows, "stats": stats_to_dict(loader)}
    return {
        "jql": loader.current_jql,
        "roots": [node_to_dict(node, loader) for node in loader.forest],
        "stats": stats_to_dict(loader),
    }


@router.get("/tree")
async def get_tree(
    jql: Optional[str] = Query(None, description="JQL query (defaults to JIRA_JQL)"),
    query_id: Optional[str] = Query(None, description="Saved query id for change tracking"),
    sort_field: Optional[str] = Query(None, description=f"One of {', '.join(SORT_FIELDS)}"),
    sort_direction: str = Query("asc", description="asc or desc"),
    depth: Optional[int] = Query(None, ge=-1, description="Expand N levels (-1 = all)"),
    flat: bool = Query(False, description="Return visible rows instead of nested roots"),
    loader: IssueLoader = Depends(get_loader),
):
    """Fetch issues and return them as a forest."""
    if sort_field is not None:
        if sort_field not in SORT_FIELDS or sort_direction not in SORT_DIRECTIONS:
            raise HTTPException(status_code=422, detail=f"Invalid sort {sort_field}:{sort_direction}")
        loader.sort_config = SortConfig(field=sort_field, direction=sort_direction)

    load_or_raise(loader, jql or loader.settings.jira_jql, query_id)
    if depth is not None:
        loader.expand_to_depth(depth)
    return _forest_response(loader, flat)


@router.get("/tree/stats")
async def get_stats(
    jql: Optional[str] = Query(None, description="JQL query (defaults to JIRA_JQL)"),
    loader: IssueLoader = Depends(get_loader),
):
    """Totals, depth and per-type/per-status counts."""
    load_or_raise(loader, jql or loader.settings.jira_jql)
    return stats_to_dict(loader)


@router.post("/tree/toggle/{key}")
async def toggle(key: str, flat: bool = Query(True), loader: IssueLoader = Depends(get_loader)):
    """Flip expansion of one node in the current forest."""
    loader.toggle(key)
    return _forest_response(loader, flat)


@router.post("/tree/expand-all")
async def expand_all(flat: bool = Query(True), loader: IssueLoader = Depends(get_loader)):
    loader.expand_all()
    return _forest_response(loader, flat)


@router.post("/tree/collapse-all")
async def collapse_all(flat: bool = Query(True), loader: IssueLoader = Depends(get_loader)):
    loader.collapse_all()
    return _forest_response(loader, flat)
