"""
Per-page edit history persistence.

Provides:
- MemoryHistoryStore / JsonHistoryStore: opaque payload storage keyed by page
- DebouncedSaver: coalesces rapid edits into one save per quiet period

Stores never interpret payloads; they hand back exactly what they were given.
"""

import copy
import hashlib
import logging
import re
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set, Union

from .io import save_json, load_json, ensure_dir

logger = logging.getLogger(__name__)

SnapshotFn = Callable[[], Any]


# ============================================================================
# Stores
# ============================================================================

class MemoryHistoryStore:
    """In-process store; payloads are deep-copied in and out."""

    def __init__(self):
        self._payloads: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.save_count = 0

    def load_history(self, page_id: str) -> Optional[Any]:
        with self._lock:
            payload = self._payloads.get(page_id)
        return copy.deepcopy(payload)

    def save_history(self, page_id: str, payload: Any) -> None:
        with self._lock:
            self._payloads[page_id] = copy.deepcopy(payload)
            self.save_count += 1


class JsonHistoryStore:
    """One JSON file per page under ``directory``."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = ensure_dir(directory)

    def path_for(self, page_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", page_id)
        # Ids that sanitize alike still get distinct files
        digest = hashlib.sha1(page_id.encode("utf-8")).hexdigest()[:8]
        return self.directory / f"{safe}-{digest}.history.json"

    def load_history(self, page_id: str) -> Optional[Any]:
        path = self.path_for(page_id)
        if not path.exists():
            return None
        return load_json(path)

    def save_history(self, page_id: str, payload: Any) -> None:
        path = self.path_for(page_id)
        tmp_path = path.with_suffix(".tmp")
        save_json(payload, tmp_path)
        tmp_path.replace(path)


# ============================================================================
# Debounced Saving
# ============================================================================

class DebouncedSaver:
    """
    Save page histories after a quiet period.

    ``mark_dirty`` restarts the page's timer. When the timer fires while a
    save for the same page is still running, the save is rescheduled rather
    than dropped. A failed save is logged and retried. The snapshot function
    is called at save time, so the latest state is always written.
    """

    def __init__(
        self,
        store,
        delay: float = 0.55,
        retry_delay: float = 0.25,
        error_delay: float = 0.7
    ):
        self.store = store
        self.delay = delay
        self.retry_delay = retry_delay
        self.error_delay = error_delay

        self._lock = threading.Lock()
        self._timers: Dict[str, threading.Timer] = {}
        self._dirty: Dict[str, SnapshotFn] = {}
        self._in_flight: Set[str] = set()
        self._settled = threading.Condition(self._lock)
        self._closed = False

    def mark_dirty(self, page_id: str, snapshot_fn: SnapshotFn) -> None:
        with self._lock:
            if self._closed:
                logger.warning(f"Saver closed; dropping change for page {page_id}")
                return
            self._dirty[page_id] = snapshot_fn
            self._schedule(page_id, self.delay)

    @property
    def pending(self) -> bool:
        with self._lock:
            return bool(self._dirty or self._in_flight)

    def _schedule(self, page_id: str, delay: float) -> None:
        # Caller holds the lock
        timer = self._timers.pop(page_id, None)
        if timer is not None:
            timer.cancel()
        timer = threading.Timer(delay, self._fire, args=(page_id,))
        timer.daemon = True
        self._timers[page_id] = timer
        timer.start()

    def _fire(self, page_id: str) -> None:
        with self._lock:
            self._timers.pop(page_id, None)
            if self._closed:
                return
            if page_id in self._in_flight:
                self._schedule(page_id, self.retry_delay)
                return
            snapshot_fn = self._dirty.pop(page_id, None)
            if snapshot_fn is None:
                return
            self._in_flight.add(page_id)

        try:
            self._save(page_id, snapshot_fn)
        except Exception as e:
            logger.warning(f"Saving history for page {page_id} failed, retrying: {e}")
            with self._lock:
                self._dirty.setdefault(page_id, snapshot_fn)
                if not self._closed:
                    self._schedule(page_id, self.error_delay)
        finally:
            with self._lock:
                self._in_flight.discard(page_id)
                self._settled.notify_all()
                if page_id in self._dirty and page_id not in self._timers and not self._closed:
                    self._schedule(page_id, self.retry_delay)

    def _save(self, page_id: str, snapshot_fn: SnapshotFn) -> None:
        self.store.save_history(page_id, snapshot_fn())
        logger.debug(f"Saved history for page {page_id}")

    def flush(self) -> None:
        """
        Write every dirty page now, on the calling thread.

        Saves already running on timer threads are waited out first, so a
        page is never written by two savers at once.
        """
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            while self._in_flight:
                self._settled.wait()
            dirty = self._dirty
            self._dirty = {}
            self._in_flight.update(dirty)

        first_error = None
        try:
            for page_id, snapshot_fn in dirty.items():
                try:
                    self._save(page_id, snapshot_fn)
                except Exception as e:
                    logger.error(f"Saving history for page {page_id} failed: {e}")
                    with self._lock:
                        self._dirty.setdefault(page_id, snapshot_fn)
                    first_error = first_error or e
        finally:
            with self._lock:
                self._in_flight.difference_update(dirty)
                self._settled.notify_all()

        if first_error is not None:
            raise first_error

    def close(self) -> None:
        self.flush()
        with self._lock:
            self._closed = True
