"""Storage layer — a small JSON key-value store for session state.

Holds change-tracking checkpoints, pending-change flags and the expanded
node keys of the last session. Values are swapped whole on every write and
flushed immediately. Writes are best-effort: a failure is logged and the
in-memory value stays authoritative for the rest of the session.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any

from issuetree.config import Settings, get_settings

logger = logging.getLogger(__name__)

STORAGE_KEYS = {
    "CHANGE_TRACKING_ENABLED": "change-tracking-enabled",
    "CHANGE_TRACKING_ACTIVITY_PERIOD": "change-tracking-activity-period",
    "CHANGE_TRACKING_CHECKPOINTS": "change-tracking-checkpoints",
    "CHANGE_TRACKING_PENDING_CHANGES": "change-tracking-pending-changes",
    "EXPANDED_NODES": "expanded-nodes",
}


class InMemoryStateStore:
    """Key-value state that lives only as long as the process."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> bool:
        self._data = {**self._data, key: copy.deepcopy(value)}
        return self._flush()

    def remove(self, key: str) -> bool:
        if key not in self._data:
            return True
        self._data = {k: v for k, v in self._data.items() if k != key}
        return self._flush()

    def keys(self) -> list[str]:
        return list(self._data)

    def _flush(self) -> bool:
        return True


class StateStore(InMemoryStateStore):
    """JSON file backed state (``data/state.json`` by default)."""

    def __init__(self, path: Path | None = None, settings: Settings | None = None) -> None:
        if path is None:
            path = (settings or get_settings()).state_path
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("State file %s unreadable, starting empty: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("State file %s does not hold an object, starting empty", self.path)
            return {}
        logger.debug("Loaded state from %s (%d keys)", self.path, len(data))
        return data

    def _flush(self) -> bool:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(self._data, indent=2, default=str), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to persist state to %s: %s", self.path, exc)
            return False
        return True
