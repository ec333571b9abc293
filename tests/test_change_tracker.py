"""Tests for checkpoint-based change tracking."""

from datetime import datetime, timedelta, timezone

import pytest

from issuetree.change_tracker import ChangeTracker, create_snapshot
from issuetree.config import Settings
from issuetree.models import QueryChangeTypes
from issuetree.storage import STORAGE_KEYS, InMemoryStateStore, StateStore

NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def _make_issue(key, status="Open", category="new", updated=None, comments=None, assignee=None):
    fields = {
        "summary": f"Issue {key}",
        "status": {"name": status, "statusCategory": {"key": category}},
    }
    if updated is not None:
        fields["updated"] = updated
    if comments is not None:
        fields["comment"] = {"total": len(comments), "comments": comments}
    if assignee is not None:
        fields["assignee"] = assignee
    return {"key": key, "fields": fields}


def _jira_time(dt):
    return dt.strftime("%Y-%m-%dT%H:%M:%S.000+0000")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def tracker(clock):
    settings = Settings(change_tracking_enabled=True, activity_period="24h")
    return ChangeTracker(InMemoryStateStore(), settings, now=clock)


class FailingStore(InMemoryStateStore):
    def set(self, key, value):
        raise OSError("disk full")


class RefusingStore(InMemoryStateStore):
    def set(self, key, value):
        return False


class TestDetectChanges:
    def test_first_detection_creates_baseline(self, tracker):
        result = tracker.detect_changes("q1", [_make_issue("A-1")])
        assert result.has_changes is False
        assert result.new_issues == []
        assert result.checkpoint_timestamp == NOW.isoformat()
        assert tracker.has_checkpoint("q1")
        assert tracker.get_checkpoint("q1").issue_count == 1
        assert tracker.has_unacknowledged_changes("q1") is False

    def test_status_removed_and_new(self, tracker):
        tracker.save_checkpoint(
            "q1", [_make_issue("A", status="Open"), _make_issue("B", status="Open")]
        )
        result = tracker.detect_changes(
            "q1", [_make_issue("A", status="Done", category="done"), _make_issue("C")]
        )
        assert result.has_changes is True
        assert [c.key for c in result.status_changes] == ["A"]
        change = result.status_changes[0]
        assert (change.previous_status, change.current_status) == ("Open", "Done")
        assert (change.previous_category_key, change.current_category_key) == ("new", "done")
        assert [r.key for r in result.removed_issues] == ["B"]
        assert result.removed_issues[0].last_status == "Open"
        assert result.new_issue_keys == ["C"]

    def test_unchanged_issues_report_nothing(self, tracker):
        issues = [_make_issue("A"), _make_issue("B")]
        tracker.save_checkpoint("q1", issues)
        result = tracker.detect_changes("q1", issues)
        assert result.has_changes is False
        assert tracker.has_unacknowledged_changes("q1") is False

    def test_detection_does_not_advance_checkpoint(self, tracker):
        tracker.save_checkpoint("q1", [_make_issue("A")])
        tracker.detect_changes("q1", [_make_issue("A"), _make_issue("B")])
        again = tracker.detect_changes("q1", [_make_issue("A"), _make_issue("B")])
        assert again.new_issue_keys == ["B"]
        assert tracker.get_checkpoint("q1").issue_count == 1

    def test_pending_flags_set_and_cleared_by_save(self, tracker):
        tracker.save_checkpoint("q1", [_make_issue("A")])
        tracker.detect_changes("q1", [_make_issue("A", status="Done")])
        assert tracker.has_unacknowledged_changes("q1") is True
        flags = tracker.get_query_change_types("q1")
        assert flags == QueryChangeTypes(has_status_changes=True)

        tracker.save_checkpoint("q1", [_make_issue("A", status="Done")])
        assert tracker.has_unacknowledged_changes("q1") is False
        assert tracker.current_changes is None
        assert tracker.detect_changes("q1", [_make_issue("A", status="Done")]).has_changes is False

    def test_comment_changes(self, tracker):
        before = [{"id": "10", "author": {"displayName": "Ann"}}]
        after = before + [{"id": "11", "author": {"displayName": "Bob"}}]
        tracker.save_checkpoint("q1", [_make_issue("A", comments=before)])
        result = tracker.detect_changes("q1", [_make_issue("A", comments=after)])
        assert len(result.comment_changes) == 1
        change = result.comment_changes[0]
        assert (change.previous_count, change.current_count, change.new_comment_count) == (1, 2, 1)
        assert change.latest_author == "Bob"

    def test_comment_replaced_same_count(self, tracker):
        tracker.save_checkpoint("q1", [_make_issue("A", comments=[{"id": "10"}])])
        result = tracker.detect_changes("q1", [_make_issue("A", comments=[{"id": "12"}])])
        assert len(result.comment_changes) == 1
        assert result.comment_changes[0].new_comment_count == 0

    def test_assignee_change(self, tracker):
        tracker.save_checkpoint(
            "q1", [_make_issue("A", assignee={"accountId": "u1", "displayName": "Ann"})]
        )
        result = tracker.detect_changes(
            "q1", [_make_issue("A", assignee={"accountId": "u2", "displayName": "Bob"})]
        )
        assert len(result.assignee_changes) == 1
        assert result.assignee_changes[0].previous_assignee == "Ann"
        assert result.assignee_changes[0].current_assignee == "Bob"

    def test_unassigned(self, tracker):
        tracker.save_checkpoint("q1", [_make_issue("A", assignee={"name": "ann"})])
        result = tracker.detect_changes("q1", [_make_issue("A")])
        assert result.assignee_changes[0].current_assignee is None

    def test_non_collection_raises(self, tracker):
        with pytest.raises(TypeError):
            tracker.detect_changes("q1", None)
        with pytest.raises(TypeError):
            tracker.save_checkpoint("q1", "A-1")

    def test_issue_change_types(self, tracker):
        tracker.save_checkpoint("q1", [_make_issue("A", comments=[])])
        tracker.detect_changes(
            "q1",
            [_make_issue("A", status="Done", comments=[{"id": "1"}]), _make_issue("N")],
        )
        assert tracker.get_issue_change_types("A") == ["status-changed", "new-comments"]
        assert tracker.get_issue_change_type("N") == "new"
        assert tracker.get_issue_change_types("Z") == []


class TestDisabled:
    @pytest.fixture
    def disabled(self, clock):
        return ChangeTracker(InMemoryStateStore(), Settings(change_tracking_enabled=False), now=clock)

    def test_detect_returns_empty(self, disabled):
        result = disabled.detect_changes("q1", [_make_issue("A")])
        assert result.has_changes is False
        assert result.checkpoint_timestamp is None
        assert disabled.has_checkpoint("q1") is False

    def test_save_is_noop(self, disabled):
        disabled.save_checkpoint("q1", [_make_issue("A")])
        assert disabled.has_checkpoint("q1") is False

    def test_disabling_clears_current_changes(self, tracker):
        tracker.save_checkpoint("q1", [_make_issue("A")])
        tracker.detect_changes("q1", [_make_issue("B")])
        tracker.set_enabled(False)
        assert tracker.current_changes is None
        assert tracker.get_issue_change_types("B") == []
        assert tracker.has_unacknowledged_changes("q1") is False


class TestRecency:
    def test_within_24h(self, tracker):
        issue = _make_issue("A", updated=_jira_time(NOW - timedelta(hours=23, minutes=59)))
        assert tracker.is_recently_updated(issue) is True

    def test_outside_24h(self, tracker):
        issue = _make_issue("A", updated=_jira_time(NOW - timedelta(hours=24, minutes=1)))
        assert tracker.is_recently_updated(issue) is False

    def test_boundary_inclusive(self, tracker):
        issue = _make_issue("A", updated=_jira_time(NOW - timedelta(hours=24)))
        assert tracker.is_recently_updated(issue) is True

    def test_seven_days(self, tracker):
        issue = _make_issue("A", updated=_jira_time(NOW - timedelta(days=6)))
        assert tracker.is_recently_updated(issue) is False
        assert tracker.is_recently_updated(issue, "7d") is True

    def test_off_and_disabled(self, tracker):
        issue = _make_issue("A", updated=_jira_time(NOW))
        assert tracker.is_recently_updated(issue, "off") is False
        tracker.set_enabled(False)
        assert tracker.is_recently_updated(issue) is False

    def test_missing_or_bad_timestamp(self, tracker):
        assert tracker.is_recently_updated(_make_issue("A")) is False
        assert tracker.is_recently_updated(_make_issue("A", updated="yesterday")) is False

    def test_set_activity_period_validates(self, tracker):
        tracker.set_activity_period("7d")
        assert tracker.activity_period == "7d"
        with pytest.raises(ValueError):
            tracker.set_activity_period("1h")


class TestTimeSinceCheckpoint:
    @pytest.mark.parametrize(
        "delta, expected",
        [
            (timedelta(seconds=30), "Just now"),
            (timedelta(minutes=5), "5m ago"),
            (timedelta(hours=3, minutes=10), "3h ago"),
            (timedelta(days=2, hours=1), "2d ago"),
        ],
    )
    def test_formats(self, tracker, clock, delta, expected):
        tracker.save_checkpoint("q1", [_make_issue("A")])
        clock.advance(seconds=delta.total_seconds())
        assert tracker.get_time_since_checkpoint("q1") == expected

    def test_no_checkpoint(self, tracker):
        assert tracker.get_time_since_checkpoint("q1") is None


class TestPersistence:
    def test_state_survives_reload(self, tmp_path, clock):
        settings = Settings(change_tracking_enabled=True)
        path = tmp_path / "state.json"
        tracker = ChangeTracker(StateStore(path), settings, now=clock)
        tracker.save_checkpoint("q1", [_make_issue("A")])
        tracker.detect_changes("q1", [_make_issue("A"), _make_issue("B")])
        tracker.set_activity_period("7d")

        reloaded = ChangeTracker(StateStore(path), settings, now=clock)
        assert reloaded.has_checkpoint("q1")
        assert reloaded.get_checkpoint("q1").issues[0].key == "A"
        assert reloaded.get_query_change_types("q1").has_new is True
        assert reloaded.activity_period == "7d"

    def test_enabled_flag_in_store_wins(self, clock):
        store = InMemoryStateStore({STORAGE_KEYS["CHANGE_TRACKING_ENABLED"]: False})
        tracker = ChangeTracker(store, Settings(change_tracking_enabled=True), now=clock)
        assert tracker.is_enabled is False

    def test_legacy_boolean_pending_flag(self, clock):
        store = InMemoryStateStore(
            {STORAGE_KEYS["CHANGE_TRACKING_PENDING_CHANGES"]: {"q1": True, "q2": False}}
        )
        tracker = ChangeTracker(store, Settings(change_tracking_enabled=True), now=clock)
        assert tracker.get_query_change_types("q1") == QueryChangeTypes(has_new=True)
        assert tracker.has_unacknowledged_changes("q2") is False

    def test_unreadable_checkpoint_dropped(self, clock):
        store = InMemoryStateStore(
            {STORAGE_KEYS["CHANGE_TRACKING_CHECKPOINTS"]: {"bad": {"issues": "nope"}}}
        )
        tracker = ChangeTracker(store, Settings(change_tracking_enabled=True), now=clock)
        assert tracker.has_checkpoint("bad") is False

    @pytest.mark.parametrize("store_cls", [FailingStore, RefusingStore])
    def test_write_failure_is_not_fatal(self, clock, store_cls):
        tracker = ChangeTracker(store_cls(), Settings(change_tracking_enabled=True), now=clock)
        tracker.save_checkpoint("q1", [_make_issue("A")])
        assert tracker.has_checkpoint("q1")
        result = tracker.detect_changes("q1", [_make_issue("B")])
        assert result.has_changes is True
        assert tracker.has_unacknowledged_changes("q1") is True


class TestCleanup:
    def test_orphaned(self, tracker):
        tracker.save_checkpoint("q1", [_make_issue("A")])
        tracker.save_checkpoint("q2", [_make_issue("A")])
        assert tracker.cleanup_orphaned_checkpoints(["q1"]) == 1
        assert tracker.has_checkpoint("q1")
        assert not tracker.has_checkpoint("q2")

    def test_stale(self, tracker, clock):
        tracker.save_checkpoint("old", [_make_issue("A")])
        clock.advance(days=31)
        tracker.save_checkpoint("fresh", [_make_issue("A")])
        assert tracker.cleanup_stale_checkpoints() == 1
        assert tracker.has_checkpoint("fresh")
        assert not tracker.has_checkpoint("old")

    def test_stale_drops_pending_flags(self, clock):
        store = InMemoryStateStore()
        settings = Settings(change_tracking_enabled=True)
        tracker = ChangeTracker(store, settings, now=clock)
        tracker.save_checkpoint("old", [_make_issue("A")])
        tracker.detect_changes("old", [_make_issue("A", status="Done")])
        assert tracker.has_unacknowledged_changes("old") is True

        clock.advance(days=31)
        tracker.save_checkpoint("fresh", [_make_issue("A")])
        tracker.detect_changes("fresh", [_make_issue("B")])
        assert tracker.cleanup_stale_checkpoints() == 1

        assert "old" not in tracker.pending_changes
        assert tracker.has_unacknowledged_changes("fresh") is True
        reloaded = ChangeTracker(store, settings, now=clock)
        assert reloaded.get_query_change_types("old") is None
        assert reloaded.has_unacknowledged_changes("fresh") is True

    def test_run_cleanup(self, tracker, clock):
        tracker.save_checkpoint("gone", [_make_issue("A")])
        tracker.save_checkpoint("old", [_make_issue("A")])
        clock.advance(days=40)
        tracker.save_checkpoint("fresh", [_make_issue("A")])
        assert tracker.run_checkpoint_cleanup(["old", "fresh"]) == {"orphaned": 1, "stale": 1}

    def test_clear_all(self, tracker):
        tracker.save_checkpoint("q1", [_make_issue("A")])
        tracker.clear_all_checkpoints()
        assert tracker.checkpoints == {}


class TestSnapshot:
    def test_snapshot_fields(self):
        issue = _make_issue(
            "A",
            status="Done",
            category="done",
            updated="2026-01-01T00:00:00.000+0000",
            comments=[{"id": "3"}, {"id": "9"}, {"id": "5"}],
            assignee={"accountId": "abc", "displayName": "Ann"},
        )
        snap = create_snapshot(issue)
        assert snap.key == "A"
        assert snap.status_category_key == "done"
        assert snap.comment_count == 3
        assert snap.latest_comment_id == "9"
        assert snap.assignee_id == "abc"
        assert snap.assignee_name == "Ann"
