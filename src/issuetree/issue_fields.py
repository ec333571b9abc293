"""Defensive accessors over raw Jira issue JSON.

Issues are kept exactly as the REST API returns them (``{"key", "fields"}``).
Every accessor tolerates missing or oddly-shaped fields and returns ``None``
or an empty value instead of raising.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

# Jira emits offsets like "+0000"; fromisoformat wants "+00:00"
_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def get_fields(issue: dict[str, Any]) -> dict[str, Any]:
    return _as_dict(issue.get("fields"))


def get_key(issue: dict[str, Any]) -> str:
    key = issue.get("key")
    return key if isinstance(key, str) else ""


def get_summary(issue: dict[str, Any]) -> str | None:
    summary = get_fields(issue).get("summary")
    return summary if isinstance(summary, str) else None


def get_status_name(issue: dict[str, Any]) -> str:
    status = _as_dict(get_fields(issue).get("status"))
    name = status.get("name")
    return name if isinstance(name, str) else ""


def get_status_category_key(issue: dict[str, Any]) -> str:
    """Return 'new', 'indeterminate' or 'done' ('new' when unknown)."""
    status = _as_dict(get_fields(issue).get("status"))
    category = _as_dict(status.get("statusCategory"))
    key = category.get("key")
    return key if isinstance(key, str) and key else "new"


def get_issue_type_name(issue: dict[str, Any]) -> str:
    issuetype = _as_dict(get_fields(issue).get("issuetype"))
    name = issuetype.get("name")
    return name if isinstance(name, str) else ""


def is_subtask(issue: dict[str, Any]) -> bool:
    issuetype = _as_dict(get_fields(issue).get("issuetype"))
    return bool(issuetype.get("subtask"))


def get_parent_key(issue: dict[str, Any]) -> str | None:
    parent = _as_dict(get_fields(issue).get("parent"))
    key = parent.get("key")
    return key if isinstance(key, str) and key else None


def get_priority_name(issue: dict[str, Any]) -> str | None:
    priority = _as_dict(get_fields(issue).get("priority"))
    name = priority.get("name")
    return name if isinstance(name, str) else None


def get_issue_links(issue: dict[str, Any]) -> list[dict[str, Any]]:
    links = get_fields(issue).get("issuelinks")
    if not isinstance(links, list):
        return []
    return [link for link in links if isinstance(link, dict)]


def get_assignee_id(issue: dict[str, Any]) -> str | None:
    """accountId on Cloud, name/key on Server."""
    assignee = _as_dict(get_fields(issue).get("assignee"))
    return assignee.get("accountId") or assignee.get("name") or assignee.get("key") or None


def get_assignee_name(issue: dict[str, Any]) -> str | None:
    assignee = _as_dict(get_fields(issue).get("assignee"))
    return assignee.get("displayName") or None


def get_comments(issue: dict[str, Any]) -> tuple[int, list[dict[str, Any]]]:
    """Return (total, comments) from the ``comment`` field."""
    field = _as_dict(get_fields(issue).get("comment"))
    comments = field.get("comments")
    if not isinstance(comments, list):
        comments = []
    total = field.get("total")
    if not isinstance(total, int):
        total = len(comments)
    return total, [c for c in comments if isinstance(c, dict)]


def get_latest_comment(comments: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Pick the newest comment by numeric id (higher id = newer)."""
    latest: dict[str, Any] | None = None
    latest_id = -1
    for comment in comments:
        try:
            cid = int(comment.get("id"))
        except (TypeError, ValueError):
            continue
        if cid > latest_id:
            latest, latest_id = comment, cid
    return latest


def get_progress(issue: dict[str, Any]) -> tuple[int, int]:
    """Return (logged, total) seconds from the ``progress`` field."""
    progress = _as_dict(get_fields(issue).get("progress"))
    logged = progress.get("progress")
    total = progress.get("total")
    return (
        logged if isinstance(logged, (int, float)) else 0,
        total if isinstance(total, (int, float)) else 0,
    )


def parse_jira_datetime(value: Any) -> datetime | None:
    """Parse a Jira timestamp into an aware UTC datetime.

    Accepts ``2025-01-02T10:00:00.000+0000``, ``...Z``, ``...+00:00`` and bare
    dates. Returns None for anything unparseable.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _COMPACT_OFFSET.sub(r"\1:\2", text)
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_datetime_field(issue: dict[str, Any], name: str) -> datetime | None:
    return parse_jira_datetime(get_fields(issue).get(name))
