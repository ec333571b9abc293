"""Issue loader — fetch, build the forest and run change detection for a query.

All work runs synchronously on the caller's thread. A load requested while
another is in progress (for example from a callback fired during the fetch)
is not run concurrently: it sets a single pending request, which runs once
after the in-flight load finishes. If that request named a different query,
the in-flight result is discarded instead of being applied.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from issuetree.change_tracker import ChangeTracker
from issuetree.config import Settings, get_settings
from issuetree.hierarchy import build_hierarchy
from issuetree.logging_config import log_timing
from issuetree.models import ChangeDetection, SortConfig, TreeNode
from issuetree.storage import STORAGE_KEYS, InMemoryStateStore
from issuetree.tree_ops import (
    collapse_all,
    expand_all,
    expand_to_depth,
    get_expanded_keys,
    get_tree_stats,
    toggle_node,
)

logger = logging.getLogger(__name__)


class IssueRepository(Protocol):
    def fetch_all_issues(self, jql: str, extra_fields: list[str] | None = None) -> list[dict[str, Any]]:
        ...


class IssueLoader:
    """Plain per-session state plus the operations that replace it."""

    def __init__(
        self,
        repository: IssueRepository,
        tracker: ChangeTracker | None = None,
        store: InMemoryStateStore | None = None,
        settings: Settings | None = None,
        epic_link_field_id: str | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.repository = repository
        self.store = store if store is not None else InMemoryStateStore()
        self.tracker = tracker if tracker is not None else ChangeTracker(self.store, self.settings)
        if epic_link_field_id is None and not self.settings.epic_link_autodetect:
            epic_link_field_id = self.settings.epic_link_field_id
        self.epic_link_field_id = epic_link_field_id
        self.sort_config = SortConfig(
            field=self.settings.sort_field, direction=self.settings.sort_direction
        )

        self.raw_issues: list[dict[str, Any]] = []
        self.forest: list[TreeNode] = []
        self.current_jql: str = ""
        self.current_query_id: str | None = None
        self.changes: ChangeDetection | None = None
        self.error: str | None = None
        self.is_loading: bool = False
        self.load_count: int = 0

        self._pending: tuple[str, str | None] | None = None

    # ── Loading ───────────────────────────────────────────────────────

    def load(self, jql: str, query_id: str | None = None) -> bool:
        """Load ``jql`` now, or defer it if a load is already running.

        Returns True when the requested data was applied, False when the
        request was deferred or failed (see ``error``).
        """
        if self.is_loading:
            logger.debug("Load requested while loading; deferring %r", jql)
            self._pending = (jql, query_id)
            self.current_jql = jql
            self.current_query_id = query_id
            return False

        ok = self._run_load(jql, query_id)
        while self._pending is not None:
            pending_jql, pending_query_id = self._pending
            self._pending = None
            logger.debug("Running deferred load for %r", pending_jql)
            ok = self._run_load(pending_jql, pending_query_id)
        return ok

    def request_reload(self) -> bool:
        """Reload the current query (e.g. after filters change)."""
        if not self.current_jql:
            return False
        return self.load(self.current_jql, self.current_query_id)

    def refresh(self) -> bool:
        return self.request_reload()

    def _run_load(self, jql: str, query_id: str | None) -> bool:
        self.is_loading = True
        self.error = None
        self.current_jql = jql
        self.current_query_id = query_id
        try:
            with log_timing(logger, "load"):
                extra = [self.epic_link_field_id] if self.epic_link_field_id else None
                fetched = self.repository.fetch_all_issues(jql, extra_fields=extra)
        except Exception as exc:
            self.error = str(exc) or exc.__class__.__name__
            logger.error("Failed to load issues for %r: %s", jql, exc)
            return False
        finally:
            self.is_loading = False

        if self.current_jql != jql or self.current_query_id != query_id:
            logger.info("Discarding superseded load result for %r", jql)
            return False

        self.raw_issues = list(fetched)
        self.forest = self._build()
        self.load_count += 1

        if query_id is not None:
            self.changes = self.tracker.detect_changes(query_id, self.raw_issues)
        else:
            self.changes = None

        stats = get_tree_stats(self.forest)
        logger.info(
            "Issues loaded: %d issues, %d roots, max depth %d",
            stats.total_issues,
            stats.root_count,
            stats.max_depth,
        )
        return True

    def _build(self) -> list[TreeNode]:
        saved = self.store.get(STORAGE_KEYS["EXPANDED_NODES"])
        forest = build_hierarchy(
            self.raw_issues,
            epic_link_field_id=self.epic_link_field_id,
            expanded_keys=saved or (),
            sort_config=self.sort_config,
        )
        if saved is None and self.settings.auto_expand_depth:
            forest = expand_to_depth(forest, self.settings.auto_expand_depth)
        return forest

    def rebuild_tree(self) -> None:
        """Rebuild the forest from the last fetch (no refetch)."""
        if not self.raw_issues:
            return
        self.forest = self._build()
        logger.info("Tree rebuilt with sort %s %s", self.sort_config.field, self.sort_config.direction)

    def set_sort_config(self, sort_config: SortConfig) -> None:
        self.sort_config = sort_config
        if not self.is_loading:
            self.rebuild_tree()

    # ── Checkpoints ───────────────────────────────────────────────────

    def save_checkpoint(self) -> None:
        """Acknowledge changes: make the current issues the new baseline."""
        if self.current_query_id is None:
            return
        self.tracker.save_checkpoint(self.current_query_id, self.raw_issues)
        self.changes = None

    # ── Expansion ─────────────────────────────────────────────────────

    def toggle(self, key: str) -> None:
        self.forest = toggle_node(self.forest, key)
        self._persist_expanded_keys()

    def expand_all(self) -> None:
        self.forest = expand_all(self.forest)
        self._persist_expanded_keys()

    def collapse_all(self) -> None:
        self.forest = collapse_all(self.forest)
        self._persist_expanded_keys()

    def expand_to_depth(self, depth: int) -> None:
        self.forest = expand_to_depth(self.forest, depth)
        self._persist_expanded_keys()

    def _persist_expanded_keys(self) -> None:
        keys = sorted(get_expanded_keys(self.forest))
        try:
            if not self.store.set(STORAGE_KEYS["EXPANDED_NODES"], keys):
                logger.warning("Could not persist expanded keys")
        except Exception as exc:
            logger.warning("Persisting expanded keys raised (non-fatal): %s", exc)

    def clear(self) -> None:
        self.raw_issues = []
        self.forest = []
        self.current_jql = ""
        self.current_query_id = None
        self.changes = None
        self.error = None


def create_loader(client: Any, settings: Settings | None = None) -> IssueLoader:
    """Wire a loader to the file-backed state store, resolving 'auto' epic links."""
    from issuetree.storage import StateStore

    s = settings or get_settings()
    store = StateStore(settings=s)
    epic_link_field_id = None
    if s.epic_link_autodetect and hasattr(client, "discover_epic_link_field"):
        epic_link_field_id = client.discover_epic_link_field()
    return IssueLoader(
        client,
        tracker=ChangeTracker(store, s),
        store=store,
        settings=s,
        epic_link_field_id=epic_link_field_id,
    )
