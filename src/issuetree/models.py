"""Data models for the issue forest and checkpoint-based change tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field


# ── Tree ──────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class TimeProgress:
    logged: int = 0
    total: int = 0
    percent: int = 0


@dataclass(slots=True, frozen=True)
class ResolutionProgress:
    done: int = 0
    total: int = 0
    percent: int = 0


@dataclass(slots=True)
class TreeNode:
    """One issue in the forest.

    ``children`` is owned exclusively by this node. ``parent_key`` is only a
    back-reference. Tree operations never mutate a node that has been handed
    out; they return copies via ``dataclasses.replace``.
    """

    issue: dict[str, Any]
    children: list[TreeNode] = field(default_factory=list)
    depth: int = 0
    is_expanded: bool = False
    is_visible: bool = True
    parent_key: str | None = None
    is_orphan: bool = False
    is_cycle_break: bool = False
    time_progress: TimeProgress | None = None
    resolution_progress: ResolutionProgress | None = None

    @property
    def key(self) -> str:
        return self.issue.get("key") or ""

    @property
    def has_children(self) -> bool:
        return bool(self.children)


@dataclass(slots=True, frozen=True)
class SortConfig:
    field: str = "key"
    direction: str = "asc"


@dataclass(slots=True)
class TreeStats:
    total_issues: int = 0
    root_count: int = 0
    max_depth: int = 0
    counts_by_type: dict[str, int] = field(default_factory=dict)
    counts_by_status: dict[str, int] = field(default_factory=dict)


# ── Change tracking (persisted) ───────────────────────────────────────


class IssueSnapshot(BaseModel):
    """Minimal projection of an issue kept in a checkpoint (~100 bytes each)."""

    key: str
    status_name: str
    status_category_key: str = "new"
    updated: str | None = None
    summary: str | None = None
    comment_count: int = 0
    latest_comment_id: str | None = None
    assignee_id: str | None = None
    assignee_name: str | None = None


class QueryCheckpoint(BaseModel):
    timestamp: str
    issue_count: int = 0
    issues: list[IssueSnapshot] = Field(default_factory=list)


class QueryChangeTypes(BaseModel):
    """Which kinds of unacknowledged change a query has (sidebar indicator)."""

    has_new: bool = False
    has_removed: bool = False
    has_status_changes: bool = False
    has_comment_changes: bool = False
    has_assignee_changes: bool = False


# ── Change tracking (transient) ───────────────────────────────────────


@dataclass(slots=True, frozen=True)
class NewIssue:
    key: str
    summary: str | None = None


@dataclass(slots=True, frozen=True)
class RemovedIssue:
    key: str
    last_status: str
    summary: str | None = None


@dataclass(slots=True, frozen=True)
class StatusChange:
    key: str
    previous_status: str
    previous_category_key: str
    current_status: str
    current_category_key: str
    summary: str | None = None


@dataclass(slots=True, frozen=True)
class CommentChange:
    key: str
    previous_count: int
    current_count: int
    new_comment_count: int
    latest_author: str | None = None
    summary: str | None = None


@dataclass(slots=True, frozen=True)
class AssigneeChange:
    key: str
    previous_assignee: str | None
    current_assignee: str | None
    summary: str | None = None


@dataclass(slots=True)
class ChangeDetection:
    new_issues: list[NewIssue] = field(default_factory=list)
    removed_issues: list[RemovedIssue] = field(default_factory=list)
    status_changes: list[StatusChange] = field(default_factory=list)
    comment_changes: list[CommentChange] = field(default_factory=list)
    assignee_changes: list[AssigneeChange] = field(default_factory=list)
    has_changes: bool = False
    checkpoint_timestamp: str | None = None

    @property
    def new_issue_keys(self) -> list[str]:
        return [item.key for item in self.new_issues]

    def change_types(self) -> QueryChangeTypes:
        return QueryChangeTypes(
            has_new=bool(self.new_issues),
            has_removed=bool(self.removed_issues),
            has_status_changes=bool(self.status_changes),
            has_comment_changes=bool(self.comment_changes),
            has_assignee_changes=bool(self.assignee_changes),
        )
