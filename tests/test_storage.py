"""Tests for storage layer — in-memory and JSON file state."""

import json

from issuetree.config import Settings
from issuetree.storage import STORAGE_KEYS, InMemoryStateStore, StateStore


class TestInMemoryStateStore:
    def test_get_missing_returns_default(self):
        store = InMemoryStateStore()
        assert store.get("nope") is None
        assert store.get("nope", []) == []

    def test_set_and_get(self):
        store = InMemoryStateStore()
        assert store.set("k", {"a": 1}) is True
        assert store.get("k") == {"a": 1}

    def test_values_are_copied(self):
        store = InMemoryStateStore()
        value = {"items": [1, 2]}
        store.set("k", value)
        value["items"].append(3)
        fetched = store.get("k")
        fetched["items"].append(4)
        assert store.get("k") == {"items": [1, 2]}

    def test_remove(self):
        store = InMemoryStateStore({"a": 1, "b": 2})
        assert store.remove("a") is True
        assert store.remove("missing") is True
        assert store.keys() == ["b"]


class TestStateStore:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "state.json"
        store = StateStore(path)
        store.set(STORAGE_KEYS["EXPANDED_NODES"], ["A-1", "B-2"])
        store.set(STORAGE_KEYS["CHANGE_TRACKING_ENABLED"], True)

        reloaded = StateStore(path)
        assert reloaded.get(STORAGE_KEYS["EXPANDED_NODES"]) == ["A-1", "B-2"]
        assert reloaded.get(STORAGE_KEYS["CHANGE_TRACKING_ENABLED"]) is True

        on_disk = json.loads(path.read_text(encoding="utf-8"))
        assert on_disk["expanded-nodes"] == ["A-1", "B-2"]

    def test_no_tmp_file_left(self, tmp_path):
        path = tmp_path / "state.json"
        StateStore(path).set("k", 1)
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_path_from_settings(self, tmp_path):
        settings = Settings(data_dir=str(tmp_path))
        store = StateStore(settings=settings)
        assert store.path == tmp_path / "state.json"

    def test_corrupt_file_loads_empty(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")
        store = StateStore(path)
        assert store.keys() == []
        assert store.set("k", "v") is True
        assert json.loads(path.read_text(encoding="utf-8")) == {"k": "v"}

    def test_non_object_file_loads_empty(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")
        assert StateStore(path).keys() == []

    def test_failed_write_keeps_memory_value(self, tmp_path):
        # A directory where the file should be makes every replace fail
        path = tmp_path / "state.json"
        path.mkdir()
        store = StateStore(path)
        assert store.set("k", "v") is False
        assert store.get("k") == "v"
