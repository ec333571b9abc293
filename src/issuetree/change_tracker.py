"""Checkpoint-based change tracking for saved queries.

One checkpoint per query id holds a minimal snapshot of every issue the
query returned when it was saved. Detection diffs a freshly fetched issue
list against that checkpoint; only an explicit save advances the baseline.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import ValidationError

from issuetree.config import ACTIVITY_PERIODS, Settings, get_settings
from issuetree.issue_fields import (
    get_assignee_id,
    get_assignee_name,
    get_comments,
    get_key,
    get_latest_comment,
    get_status_category_key,
    get_status_name,
    get_summary,
    parse_jira_datetime,
)
from issuetree.models import (
    AssigneeChange,
    ChangeDetection,
    CommentChange,
    IssueSnapshot,
    NewIssue,
    QueryChangeTypes,
    QueryCheckpoint,
    RemovedIssue,
    StatusChange,
)
from issuetree.storage import STORAGE_KEYS, InMemoryStateStore

logger = logging.getLogger(__name__)

ACTIVITY_THRESHOLDS_MS: dict[str, float] = {
    "24h": 24 * 60 * 60 * 1000,
    "7d": 7 * 24 * 60 * 60 * 1000,
    "off": float("inf"),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _issue_map(issues: Any) -> dict[str, dict[str, Any]]:
    if isinstance(issues, (str, bytes, dict)) or not isinstance(issues, Iterable):
        raise TypeError(f"issues must be a collection of issue dicts, got {type(issues).__name__}")
    result: dict[str, dict[str, Any]] = {}
    for issue in issues:
        if isinstance(issue, dict) and get_key(issue):
            result[get_key(issue)] = issue
    return result


def create_snapshot(issue: dict[str, Any]) -> IssueSnapshot:
    total, comments = get_comments(issue)
    latest = get_latest_comment(comments)
    updated = (issue.get("fields") or {}).get("updated")
    return IssueSnapshot(
        key=get_key(issue),
        summary=get_summary(issue),
        status_name=get_status_name(issue),
        status_category_key=get_status_category_key(issue),
        updated=updated if isinstance(updated, str) else None,
        comment_count=total,
        latest_comment_id=str(latest["id"]) if latest else None,
        assignee_id=get_assignee_id(issue),
        assignee_name=get_assignee_name(issue),
    )


class ChangeTracker:
    """Owns checkpoints, pending-change flags and the current detection result."""

    def __init__(
        self,
        store: InMemoryStateStore | None = None,
        settings: Settings | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store if store is not None else InMemoryStateStore()
        self._now = now or _utcnow

        self.is_enabled: bool = self.settings.change_tracking_enabled
        self.activity_period: str = self.settings.activity_period
        self.checkpoints: dict[str, QueryCheckpoint] = {}
        self.pending_changes: dict[str, QueryChangeTypes] = {}
        self.current_changes: ChangeDetection | None = None

        self._lookup: dict[str, list[str]] | None = None
        self._lookup_source: ChangeDetection | None = None

        self._load_state()

    # ── Persistence ───────────────────────────────────────────────────

    def _load_state(self) -> None:
        enabled = self.store.get(STORAGE_KEYS["CHANGE_TRACKING_ENABLED"])
        if isinstance(enabled, bool):
            self.is_enabled = enabled

        period = self.store.get(STORAGE_KEYS["CHANGE_TRACKING_ACTIVITY_PERIOD"])
        if period in ACTIVITY_PERIODS:
            self.activity_period = period

        raw_checkpoints = self.store.get(STORAGE_KEYS["CHANGE_TRACKING_CHECKPOINTS"]) or {}
        if isinstance(raw_checkpoints, dict):
            for query_id, raw in raw_checkpoints.items():
                try:
                    self.checkpoints[query_id] = QueryCheckpoint.model_validate(raw)
                except ValidationError as exc:
                    logger.warning("Dropping unreadable checkpoint for %s: %s", query_id, exc)

        raw_pending = self.store.get(STORAGE_KEYS["CHANGE_TRACKING_PENDING_CHANGES"]) or {}
        if isinstance(raw_pending, dict):
            for query_id, value in raw_pending.items():
                if isinstance(value, bool):
                    # Older state stored a bare flag; the change kind is unknown
                    if value:
                        self.pending_changes[query_id] = QueryChangeTypes(has_new=True)
                    continue
                try:
                    self.pending_changes[query_id] = QueryChangeTypes.model_validate(value)
                except ValidationError as exc:
                    logger.warning("Dropping unreadable pending flag for %s: %s", query_id, exc)

        logger.debug(
            "Change tracking initialized: enabled=%s period=%s checkpoints=%d",
            self.is_enabled,
            self.activity_period,
            len(self.checkpoints),
        )

    def _persist(self, key: str, value: Any) -> None:
        try:
            if not self.store.set(key, value):
                logger.warning("State write for %s failed; keeping in-memory value", key)
        except Exception as exc:
            logger.warning("State write for %s raised (non-fatal): %s", key, exc)

    def _persist_checkpoints(self) -> None:
        self._persist(
            STORAGE_KEYS["CHANGE_TRACKING_CHECKPOINTS"],
            {qid: cp.model_dump() for qid, cp in self.checkpoints.items()},
        )

    def _persist_pending(self) -> None:
        self._persist(
            STORAGE_KEYS["CHANGE_TRACKING_PENDING_CHANGES"],
            {qid: flags.model_dump() for qid, flags in self.pending_changes.items()},
        )

    def _set_current_changes(self, changes: ChangeDetection | None) -> None:
        self.current_changes = changes
        self._lookup = None
        self._lookup_source = None

    # ── Settings ──────────────────────────────────────────────────────

    def set_enabled(self, enabled: bool) -> None:
        self.is_enabled = enabled
        self._persist(STORAGE_KEYS["CHANGE_TRACKING_ENABLED"], enabled)
        if not enabled:
            self._set_current_changes(None)
        logger.info("Change tracking %s", "enabled" if enabled else "disabled")

    def set_activity_period(self, period: str) -> None:
        if period not in ACTIVITY_PERIODS:
            raise ValueError(f"activity period must be one of {ACTIVITY_PERIODS}, got {period!r}")
        self.activity_period = period
        self._persist(STORAGE_KEYS["CHANGE_TRACKING_ACTIVITY_PERIOD"], period)

    # ── Checkpoints ───────────────────────────────────────────────────

    def save_checkpoint(self, query_id: str, issues: Iterable[dict[str, Any]]) -> None:
        """Replace the baseline for ``query_id`` with the given issues.

        Also acknowledges any pending changes for the query. No-op while
        tracking is disabled.
        """
        issue_map = _issue_map(issues)
        if not self.is_enabled:
            return

        checkpoint = QueryCheckpoint(
            timestamp=self._now().isoformat(),
            issue_count=len(issue_map),
            issues=[create_snapshot(issue) for issue in issue_map.values()],
        )
        self.checkpoints = {**self.checkpoints, query_id: checkpoint}
        self._set_current_changes(None)
        self.pending_changes = {k: v for k, v in self.pending_changes.items() if k != query_id}

        self._persist_pending()
        self._persist_checkpoints()
        logger.info("Checkpoint saved for %s (%d issues)", query_id, checkpoint.issue_count)

    def has_checkpoint(self, query_id: str) -> bool:
        return query_id in self.checkpoints

    def get_checkpoint(self, query_id: str) -> QueryCheckpoint | None:
        return self.checkpoints.get(query_id)

    def get_checkpoint_timestamp(self, query_id: str) -> str | None:
        checkpoint = self.checkpoints.get(query_id)
        return checkpoint.timestamp if checkpoint else None

    def get_time_since_checkpoint(self, query_id: str) -> str | None:
        checkpoint = self.checkpoints.get(query_id)
        if checkpoint is None:
            return None
        taken = parse_jira_datetime(checkpoint.timestamp)
        if taken is None:
            return None

        minutes = int((self._now() - taken).total_seconds() // 60)
        hours = minutes // 60
        days = hours // 24
        if days > 0:
            return f"{days}d ago"
        if hours > 0:
            return f"{hours}h ago"
        if minutes > 0:
            return f"{minutes}m ago"
        return "Just now"

    def clear_checkpoint(self, query_id: str) -> None:
        self.checkpoints = {k: v for k, v in self.checkpoints.items() if k != query_id}
        self.pending_changes = {k: v for k, v in self.pending_changes.items() if k != query_id}
        self._persist_checkpoints()
        self._persist_pending()
        logger.info("Checkpoint cleared for %s", query_id)

    def clear_all_checkpoints(self) -> None:
        self.checkpoints = {}
        self.pending_changes = {}
        self._set_current_changes(None)
        self._persist_checkpoints()
        self._persist_pending()
        logger.info("All checkpoints cleared")

    # ── Detection ─────────────────────────────────────────────────────

    def detect_changes(self, query_id: str, current_issues: Iterable[dict[str, Any]]) -> ChangeDetection:
        """Diff ``current_issues`` against the checkpoint for ``query_id``.

        Without a checkpoint the current issues become the baseline and no
        changes are reported. The checkpoint is never advanced here.
        """
        current_map = _issue_map(current_issues)

        if not self.is_enabled:
            return ChangeDetection()

        checkpoint = self.checkpoints.get(query_id)
        if checkpoint is None:
            self.save_checkpoint(query_id, list(current_map.values()))
            return ChangeDetection(checkpoint_timestamp=self.get_checkpoint_timestamp(query_id))

        previous = {snap.key: snap for snap in checkpoint.issues}

        new_issues = [
            NewIssue(key=key, summary=get_summary(issue))
            for key, issue in current_map.items()
            if key not in previous
        ]
        removed_issues = [
            RemovedIssue(key=key, last_status=snap.status_name, summary=snap.summary)
            for key, snap in previous.items()
            if key not in current_map
        ]

        status_changes: list[StatusChange] = []
        comment_changes: list[CommentChange] = []
        assignee_changes: list[AssigneeChange] = []

        for key, snap in previous.items():
            issue = current_map.get(key)
            if issue is None:
                continue
            summary = get_summary(issue)

            status_name = get_status_name(issue)
            if status_name != snap.status_name:
                status_changes.append(
                    StatusChange(
                        key=key,
                        summary=summary,
                        previous_status=snap.status_name,
                        previous_category_key=snap.status_category_key,
                        current_status=status_name,
                        current_category_key=get_status_category_key(issue),
                    )
                )

            count, comments = get_comments(issue)
            latest = get_latest_comment(comments)
            latest_id = str(latest["id"]) if latest else None
            if count > snap.comment_count or (
                latest_id and snap.latest_comment_id and latest_id != snap.latest_comment_id
            ):
                author = latest.get("author") if latest else None
                comment_changes.append(
                    CommentChange(
                        key=key,
                        summary=summary,
                        previous_count=snap.comment_count,
                        current_count=count,
                        new_comment_count=max(0, count - snap.comment_count),
                        latest_author=author.get("displayName") if isinstance(author, dict) else None,
                    )
                )

            if get_assignee_id(issue) != snap.assignee_id:
                assignee_changes.append(
                    AssigneeChange(
                        key=key,
                        summary=summary,
                        previous_assignee=snap.assignee_name,
                        current_assignee=get_assignee_name(issue),
                    )
                )

        changes = ChangeDetection(
            new_issues=new_issues,
            removed_issues=removed_issues,
            status_changes=status_changes,
            comment_changes=comment_changes,
            assignee_changes=assignee_changes,
            checkpoint_timestamp=checkpoint.timestamp,
        )
        changes.has_changes = bool(
            new_issues or removed_issues or status_changes or comment_changes or assignee_changes
        )
        self._set_current_changes(changes)

        if changes.has_changes:
            self.pending_changes = {**self.pending_changes, query_id: changes.change_types()}
            self._persist_pending()
            logger.info(
                "Changes for %s: %d new, %d removed, %d status, %d comment, %d assignee",
                query_id,
                len(new_issues),
                len(removed_issues),
                len(status_changes),
                len(comment_changes),
                len(assignee_changes),
            )
        return changes

    def is_recently_updated(self, issue: dict[str, Any], period: str | None = None) -> bool:
        """True when ``issue`` was updated within the activity period (inclusive)."""
        period = period or self.activity_period
        if period == "off" or not self.is_enabled:
            return False
        threshold = ACTIVITY_THRESHOLDS_MS.get(period)
        updated = parse_jira_datetime((issue.get("fields") or {}).get("updated"))
        if threshold is None or updated is None:
            return False
        elapsed = self._now() - updated
        return elapsed <= timedelta(milliseconds=threshold)

    # ── Indicators ────────────────────────────────────────────────────

    def has_unacknowledged_changes(self, query_id: str) -> bool:
        if not self.is_enabled:
            return False
        return query_id in self.pending_changes

    def get_query_change_types(self, query_id: str) -> QueryChangeTypes | None:
        if not self.is_enabled:
            return None
        return self.pending_changes.get(query_id)

    def _change_lookup(self) -> dict[str, list[str]]:
        changes = self.current_changes
        if self._lookup is not None and self._lookup_source is changes:
            return self._lookup

        lookup: dict[str, list[str]] = {}
        if changes is not None:
            sources = (
                (changes.new_issues, "new"),
                (changes.status_changes, "status-changed"),
                (changes.comment_changes, "new-comments"),
                (changes.assignee_changes, "assignee-changed"),
            )
            for items, change_type in sources:
                for item in items:
                    lookup.setdefault(item.key, []).append(change_type)

        self._lookup = lookup
        self._lookup_source = changes
        return lookup

    def get_issue_change_types(self, key: str) -> list[str]:
        if not self.is_enabled or self.current_changes is None:
            return []
        return list(self._change_lookup().get(key, []))

    def get_issue_change_type(self, key: str) -> str | None:
        types = self.get_issue_change_types(key)
        return types[0] if types else None

    # ── Housekeeping ──────────────────────────────────────────────────

    def cleanup_orphaned_checkpoints(self, valid_query_ids: Iterable[str]) -> int:
        """Drop checkpoints (and pending flags) for queries that no longer exist."""
        valid = set(valid_query_ids)
        orphaned = [qid for qid in self.checkpoints if qid not in valid]
        if not orphaned:
            return 0
        for qid in orphaned:
            logger.info("Removed orphaned checkpoint %s", qid)
        self.checkpoints = {k: v for k, v in self.checkpoints.items() if k in valid}
        self.pending_changes = {k: v for k, v in self.pending_changes.items() if k in valid}
        self._persist_checkpoints()
        self._persist_pending()
        return len(orphaned)

    def cleanup_stale_checkpoints(self, max_age_days: int | None = None) -> int:
        """Drop checkpoints older than ``max_age_days`` (settings default: 30)."""
        if max_age_days is None:
            max_age_days = self.settings.checkpoint_max_age_days
        cutoff = self._now() - timedelta(days=max_age_days)

        kept: dict[str, QueryCheckpoint] = {}
        for qid, checkpoint in self.checkpoints.items():
            taken = parse_jira_datetime(checkpoint.timestamp)
            if taken is not None and taken >= cutoff:
                kept[qid] = checkpoint
            else:
                logger.info("Removed stale checkpoint %s (taken %s)", qid, checkpoint.timestamp)

        removed = len(self.checkpoints) - len(kept)
        if removed:
            self.checkpoints = kept
            self.pending_changes = {k: v for k, v in self.pending_changes.items() if k in kept}
            self._persist_checkpoints()
            self._persist_pending()
        return removed

    def run_checkpoint_cleanup(self, valid_query_ids: Iterable[str]) -> dict[str, int]:
        orphaned = self.cleanup_orphaned_checkpoints(valid_query_ids)
        stale = self.cleanup_stale_checkpoints()
        if orphaned or stale:
            logger.info("Checkpoint cleanup: %d orphaned, %d stale", orphaned, stale)
        return {"orphaned": orphaned, "stale": stale}
