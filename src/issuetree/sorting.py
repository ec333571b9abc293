"""Sibling ordering: hierarchy level first, then the configured field, then key."""

from __future__ import annotations

import functools
import re
from datetime import datetime
from typing import Callable

from issuetree.issue_fields import (
    get_datetime_field,
    get_issue_type_name,
    get_priority_name,
    get_status_name,
    is_subtask,
)
from issuetree.models import SortConfig, TreeNode

HIERARCHY_ORDER: dict[str, int] = {
    "epic": 0,
    "story": 1,
    "task": 2,
    "subtask": 3,
    "unknown": 99,
}

HIERARCHY_MAPPING: dict[str, str] = {
    "Epic": "epic",
    "Story": "story",
    "New Feature": "story",
    "Feature": "story",
    "Task": "task",
    "Bug": "task",
    "Technical Task": "task",
    "Improvement": "task",
    "Sub-task": "subtask",
    "Subtask": "subtask",
}

# Lower number = higher priority
PRIORITY_ORDER: dict[str, int] = {
    "Blocker": 0,
    "Critical": 1,
    "Highest": 1,
    "High": 2,
    "Medium": 3,
    "Normal": 3,
    "Low": 4,
    "Lowest": 5,
    "Minor": 5,
    "Trivial": 6,
}

_DIGITS = re.compile(r"(\d+)")


def get_hierarchy_level(type_name: str, subtask: bool = False) -> str:
    if subtask:
        return "subtask"
    return HIERARCHY_MAPPING.get(type_name, "unknown")


def hierarchy_rank(node: TreeNode) -> int:
    level = get_hierarchy_level(get_issue_type_name(node.issue), is_subtask(node.issue))
    return HIERARCHY_ORDER[level]


def natural_key(value: str) -> tuple:
    """Split digits out so that PROJ-9 sorts before PROJ-10."""
    return tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part.lower())
        for part in _DIGITS.split(value)
        if part
    )


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def _compare_keys(a: TreeNode, b: TreeNode) -> int:
    return _cmp(natural_key(a.key), natural_key(b.key))


def _priority_order(name: str | None) -> int:
    if not name:
        return 999
    return PRIORITY_ORDER.get(name, 50)


def _timestamp(node: TreeNode, name: str, missing: float) -> float:
    dt: datetime | None = get_datetime_field(node.issue, name)
    return dt.timestamp() if dt else missing


_FIELD_COMPARATORS: dict[str, Callable[[TreeNode, TreeNode], int]] = {
    "key": _compare_keys,
    "priority": lambda a, b: _cmp(
        _priority_order(get_priority_name(a.issue)), _priority_order(get_priority_name(b.issue))
    ),
    "created": lambda a, b: _cmp(_timestamp(a, "created", 0.0), _timestamp(b, "created", 0.0)),
    "updated": lambda a, b: _cmp(_timestamp(a, "updated", 0.0), _timestamp(b, "updated", 0.0)),
    # Missing due dates go last
    "duedate": lambda a, b: _cmp(
        _timestamp(a, "duedate", float("inf")), _timestamp(b, "duedate", float("inf"))
    ),
    "status": lambda a, b: _cmp(get_status_name(a.issue).lower(), get_status_name(b.issue).lower()),
}


def compare_nodes(a: TreeNode, b: TreeNode, sort_config: SortConfig | None = None) -> int:
    """Three-way comparison used for every sibling list in the forest."""
    rank = _cmp(hierarchy_rank(a), hierarchy_rank(b))
    if rank:
        return rank

    config = sort_config or SortConfig()
    comparator = _FIELD_COMPARATORS.get(config.field, _compare_keys)
    multiplier = -1 if config.direction == "desc" else 1

    result = comparator(a, b) * multiplier
    if result:
        return result
    return _compare_keys(a, b)


def sort_key(sort_config: SortConfig | None = None):
    """Return a ``key=`` callable for ``list.sort`` built on compare_nodes."""
    return functools.cmp_to_key(lambda a, b: compare_nodes(a, b, sort_config))
