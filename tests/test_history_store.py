"""
Tests for history stores and debounced saving.
"""

import sys
import threading
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


class FlakyStore:
    """Fails the first ``failures`` saves, then records payloads."""

    def __init__(self, failures=0, save_seconds=0.0):
        self.failures = failures
        self.save_seconds = save_seconds
        self.saved = {}
        self.calls = 0
        self.active = 0
        self.peak = 0
        self.lock = threading.Lock()

    def load_history(self, page_id):
        return self.saved.get(page_id)

    def save_history(self, page_id, payload):
        with self.lock:
            self.calls += 1
            if self.failures > 0:
                self.failures -= 1
                raise OSError("disk full")
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self.save_seconds)
            self.saved[page_id] = payload
        finally:
            with self.lock:
                self.active -= 1


def _wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestStores:
    """Test payload storage."""

    def test_memory_store_copies(self):
        from scanflow.utils.history_store import MemoryHistoryStore

        store = MemoryHistoryStore()
        payload = {"present": {"id": "p"}, "past": []}
        store.save_history("p", payload)
        payload["past"].append("mutated")

        assert store.load_history("p") == {"present": {"id": "p"}, "past": []}
        assert store.load_history("missing") is None
        assert store.save_count == 1

    def test_json_store_round_trip(self, tmp_path):
        from scanflow.utils.history_store import JsonHistoryStore

        store = JsonHistoryStore(tmp_path / "history")
        payload = {"present": {"id": "p/1", "columns": []}, "past": [], "future": []}
        store.save_history("p/1", payload)

        assert store.load_history("p/1") == payload
        assert store.path_for("p/1").name.startswith("p_1-")
        assert store.path_for("p/1").name.endswith(".history.json")
        assert not list((tmp_path / "history").glob("*.tmp"))

    def test_json_store_keeps_similar_ids_apart(self, tmp_path):
        from scanflow.utils.history_store import JsonHistoryStore

        store = JsonHistoryStore(tmp_path)
        store.save_history("a/b", {"page": "slash"})
        store.save_history("a_b", {"page": "underscore"})

        assert store.path_for("a/b") != store.path_for("a_b")
        assert store.load_history("a/b") == {"page": "slash"}
        assert store.load_history("a_b") == {"page": "underscore"}

    def test_json_store_missing(self, tmp_path):
        from scanflow.utils.history_store import JsonHistoryStore

        assert JsonHistoryStore(tmp_path).load_history("nothing") is None


class TestDebouncedSaver:
    """Test coalescing, retry and flush."""

    def test_rapid_changes_coalesce(self):
        from scanflow.utils.history_store import DebouncedSaver

        store = FlakyStore()
        saver = DebouncedSaver(store, delay=0.1)
        state = {"n": 0}

        for n in range(5):
            state["n"] = n
            saver.mark_dirty("p", lambda: dict(state))

        assert _wait_until(lambda: "p" in store.saved)
        time.sleep(0.2)
        assert store.calls == 1
        assert store.saved["p"] == {"n": 4}

    def test_failed_save_is_retried(self):
        from scanflow.utils.history_store import DebouncedSaver

        store = FlakyStore(failures=1)
        saver = DebouncedSaver(store, delay=0.05, retry_delay=0.05, error_delay=0.05)
        saver.mark_dirty("p", lambda: {"v": 1})

        assert _wait_until(lambda: "p" in store.saved)
        assert store.calls == 2
        assert _wait_until(lambda: not saver.pending)

    def test_change_during_save_is_not_lost(self):
        from scanflow.utils.history_store import DebouncedSaver

        store = FlakyStore(save_seconds=0.2)
        saver = DebouncedSaver(store, delay=0.05, retry_delay=0.05)
        saver.mark_dirty("p", lambda: {"v": 1})

        assert _wait_until(lambda: store.calls == 1)
        saver.mark_dirty("p", lambda: {"v": 2})

        assert _wait_until(lambda: store.saved.get("p") == {"v": 2})

    def test_flush_saves_now(self):
        from scanflow.utils.history_store import DebouncedSaver

        store = FlakyStore()
        saver = DebouncedSaver(store, delay=10)
        saver.mark_dirty("a", lambda: 1)
        saver.mark_dirty("b", lambda: 2)

        saver.flush()

        assert store.saved == {"a": 1, "b": 2}
        assert not saver.pending

    def test_flush_waits_for_running_save(self):
        from scanflow.utils.history_store import DebouncedSaver

        store = FlakyStore(save_seconds=0.3)
        saver = DebouncedSaver(store, delay=0.01, retry_delay=0.05)
        saver.mark_dirty("p", lambda: "first")
        assert _wait_until(lambda: store.active == 1)

        saver.mark_dirty("p", lambda: "second")
        saver.flush()

        assert store.peak == 1
        assert store.saved["p"] == "second"
        assert store.calls == 2
        assert not saver.pending

    def test_flush_keeps_failed_pages_dirty(self):
        from scanflow.utils.history_store import DebouncedSaver

        store = FlakyStore(failures=1)
        saver = DebouncedSaver(store, delay=10)
        saver.mark_dirty("a", lambda: 1)

        with pytest.raises(OSError):
            saver.flush()
        assert saver.pending

        saver.flush()
        assert store.saved == {"a": 1}

    def test_closed_saver_drops_changes(self):
        from scanflow.utils.history_store import DebouncedSaver

        store = FlakyStore()
        saver = DebouncedSaver(store, delay=0.01)
        saver.close()
        saver.mark_dirty("p", lambda: 1)

        time.sleep(0.1)
        assert store.calls == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
