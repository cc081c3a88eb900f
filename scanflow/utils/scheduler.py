"""
Recognition scheduler.

Provides:
- RecognitionScheduler: a fixed pool of recognition workers fed from a FIFO
  task queue, returning one ``concurrent.futures.Future`` per page
- ProgressPayload: aggregated progress reported after every worker update

All scheduler state lives on a single coordinator thread that consumes one
event queue carrying both task submissions and worker messages. Workers
never touch scheduler state; callers only put submissions on the queue.
"""

import functools
import logging
import queue
import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Optional, Callable, Dict, Deque, List, Set, Union

import numpy as np

from ..config import RecognitionConfig
from .device import DeviceProfile, resolve_tuning
from .errors import WorkerInitError, RecognitionTaskError, SchedulerClosedError
from .models import PageRecognitionResult
from .recognition import TesseractEngine
from .workers import (
    WORKER_BACKENDS,
    WorkerRequest,
    WorkerMessage,
    EngineFactory,
    REQUEST_INIT,
    REQUEST_RECOGNIZE,
    MESSAGE_READY,
    MESSAGE_INIT_ERROR,
    MESSAGE_PROGRESS,
    MESSAGE_RESULT,
    MESSAGE_ERROR,
    MESSAGE_EXITED,
)

logger = logging.getLogger(__name__)

_STOP = object()


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ProgressPayload:
    """Progress snapshot for one update."""
    page_index: int
    page_progress: float
    overall_progress: float
    completed_pages: int
    total_pages: int


@dataclass
class _Task:
    task_id: str
    page_index: int
    image: Union[bytes, np.ndarray]
    future: Future


# ============================================================================
# Scheduler
# ============================================================================

class RecognitionScheduler:
    """
    Fan page images out to a pool of recognition workers.

    Usage:
        with RecognitionScheduler("eng", page_count=len(images)) as scheduler:
            futures = [scheduler.enqueue(i, img) for i, img in enumerate(images)]

    Completion order follows whichever worker finishes first; match results
    to pages through the page index each future was created for. A worker
    process that dies fails only the task it held and is replaced.
    """

    def __init__(
        self,
        language: str = "eng",
        page_count: int = 0,
        on_progress: Optional[Callable[[ProgressPayload], None]] = None,
        profile: Optional[DeviceProfile] = None,
        engine_factory: Optional[EngineFactory] = None,
        backend: Optional[str] = None,
        worker_count: Optional[int] = None,
        config: Optional[RecognitionConfig] = None
    ):
        self.config = config or RecognitionConfig()
        self.language = language
        self.page_count = page_count
        self.on_progress = on_progress
        self.backend = backend or self.config.backend
        if self.backend not in WORKER_BACKENDS:
            raise ValueError(f"Unknown worker backend: {self.backend}")

        self.engine_factory = engine_factory or functools.partial(
            TesseractEngine, config=self.config.tesseract_config
        )

        count = worker_count or self.config.worker_count
        self.worker_count = count if count else resolve_tuning(profile).worker_count

        self._events: queue.Queue = queue.Queue()
        self._handles: Dict[str, object] = {}
        self._coordinator: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._running = False

        # Coordinator-owned state
        self._pending: Deque[_Task] = deque()
        self._idle: Deque[str] = deque()
        self._busy: Dict[str, str] = {}
        self._starting: Set[str] = set()
        self._active: Dict[str, _Task] = {}
        self._progress: Dict[str, float] = {}
        self._completed_pages: Set[int] = set()
        self._completed = 0
        self._submitted = 0
        self._spawned = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def init(self) -> None:
        """
        Start every worker and wait until each has loaded its engine.

        Raises:
            WorkerInitError: If any worker fails or times out; all workers
                are released before raising
        """
        with self._lock:
            if self._running:
                return

            for _ in range(self.worker_count):
                self._start_worker()

            try:
                self._wait_ready()
            except WorkerInitError:
                self._release_workers()
                raise

            self._idle = deque(self._handles)
            self._running = True
            self._coordinator = threading.Thread(
                target=self._run, name="ocr-scheduler", daemon=True
            )
            self._coordinator.start()

        logger.info(
            f"Recognition scheduler started with {self.worker_count} "
            f"{self.backend} workers (language={self.language})"
        )

    def _start_worker(self) -> str:
        worker_id = f"w{self._spawned}-{uuid.uuid4().hex[:6]}"
        self._spawned += 1
        handle = WORKER_BACKENDS[self.backend](worker_id, self.engine_factory, self._events)
        self._handles[worker_id] = handle
        handle.start()
        handle.send(WorkerRequest(REQUEST_INIT, language=self.language))
        return worker_id

    def _wait_ready(self) -> None:
        deadline = time.monotonic() + self.config.init_timeout_seconds
        ready: Set[str] = set()

        while len(ready) < len(self._handles):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise WorkerInitError(
                    f"Workers not ready after {self.config.init_timeout_seconds:.0f}s"
                )
            try:
                message = self._events.get(timeout=remaining)
            except queue.Empty:
                continue

            if not isinstance(message, WorkerMessage):
                continue
            if message.kind in (MESSAGE_INIT_ERROR, MESSAGE_EXITED):
                logger.error(f"Worker {message.worker_id} failed to start: {message.error}")
                raise WorkerInitError(message.error or "worker failed to start", message.worker_id)
            if message.kind == MESSAGE_READY:
                ready.add(message.worker_id)

    def terminate(self) -> None:
        """
        Stop the coordinator and release all workers.

        Safe to call repeatedly and with tasks in flight; futures for
        unfinished tasks are left pending.
        """
        with self._lock:
            if not self._running and not self._handles:
                return
            self._running = False
            self._events.put(_STOP)

        coordinator = self._coordinator
        if coordinator is not None and coordinator is not threading.current_thread():
            coordinator.join(timeout=5.0)
        self._coordinator = None

        self._release_workers()
        logger.info("Recognition scheduler terminated")

    def _release_workers(self) -> None:
        for worker_id, handle in list(self._handles.items()):
            try:
                handle.terminate()
            except Exception as e:
                logger.warning(f"Failed to release worker {worker_id}: {e}")
        self._handles.clear()

    def __enter__(self) -> 'RecognitionScheduler':
        self.init()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.terminate()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def enqueue(self, page_index: int, image: Union[bytes, np.ndarray]) -> Future:
        """
        Queue one page image for recognition.

        Args:
            page_index: Caller's page index, echoed in progress and errors
            image: Encoded image bytes or a decoded array

        Returns:
            Future resolving to a PageRecognitionResult, or failing with
            RecognitionTaskError

        Raises:
            SchedulerClosedError: If the scheduler is not running
        """
        future: Future = Future()
        task = _Task(
            task_id=f"{page_index}-{uuid.uuid4().hex[:8]}",
            page_index=page_index,
            image=image,
            future=future,
        )

        with self._lock:
            if not self._running:
                raise SchedulerClosedError("Scheduler is not running")
            self._events.put(task)
        return future

    # ------------------------------------------------------------------
    # Coordinator
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            event = self._events.get()
            if event is _STOP:
                break
            if isinstance(event, _Task):
                self._pending.append(event)
                self._submitted += 1
            elif isinstance(event, WorkerMessage):
                self._handle_message(event)
            self._dispatch()

    def _dispatch(self) -> None:
        while self._idle and self._pending:
            task = self._pending.popleft()
            if not task.future.set_running_or_notify_cancel():
                logger.debug(f"Skipping cancelled task {task.task_id}")
                continue

            worker_id = self._idle.popleft()
            self._busy[worker_id] = task.task_id
            self._active[task.task_id] = task
            self._progress[task.task_id] = 0.0
            self._handles[worker_id].send(
                WorkerRequest(REQUEST_RECOGNIZE, task_id=task.task_id, image=task.image)
            )
            logger.debug(f"Dispatched page {task.page_index} to worker {worker_id}")

        if not self._handles:
            self._fail_pending("No recognition workers available")

    def _fail_pending(self, reason: str) -> None:
        while self._pending:
            task = self._pending.popleft()
            if task.future.set_running_or_notify_cancel():
                task.future.set_exception(RecognitionTaskError(reason, task.page_index))

    def _retire(self, worker_id: str) -> None:
        handle = self._handles.pop(worker_id, None)
        self._busy.pop(worker_id, None)
        self._starting.discard(worker_id)
        if worker_id in self._idle:
            self._idle.remove(worker_id)
        if handle is None:
            return
        try:
            handle.terminate()
        except Exception as e:
            logger.warning(f"Failed to release worker {worker_id}: {e}")

    def _handle_exit(self, message: WorkerMessage) -> None:
        worker_id = message.worker_id
        if worker_id not in self._handles:
            return

        was_starting = worker_id in self._starting
        task_id = self._busy.get(worker_id)
        self._retire(worker_id)

        task = self._active.pop(task_id, None) if task_id else None
        if task is not None:
            self._progress.pop(task.task_id, None)
            logger.warning(f"Worker {worker_id} died while recognizing page {task.page_index}")
            task.future.set_exception(
                RecognitionTaskError(message.error or "worker exited", task.page_index)
            )

        # A worker that never became ready is not replaced
        if self._running and not was_starting:
            replacement = self._start_worker()
            self._starting.add(replacement)
            logger.info(f"Starting worker {replacement} to replace {worker_id}")

    def _release(self, worker_id: str) -> None:
        if self._busy.pop(worker_id, None) is not None:
            self._idle.append(worker_id)

    def _handle_message(self, message: WorkerMessage) -> None:
        task = self._active.get(message.task_id) if message.task_id else None

        if message.kind == MESSAGE_PROGRESS:
            if task is None:
                return
            self._progress[task.task_id] = min(max(message.progress, 0.0), 1.0)
            self._emit(task.page_index)

        elif message.kind == MESSAGE_RESULT:
            self._release(message.worker_id)
            if task is None:
                return
            del self._active[task.task_id]
            self._progress.pop(task.task_id, None)
            self._completed += 1
            self._completed_pages.add(task.page_index)
            self._emit(task.page_index)
            task.future.set_result(PageRecognitionResult.from_dict(message.result or {}))

        elif message.kind == MESSAGE_ERROR:
            self._release(message.worker_id)
            if task is None:
                return
            del self._active[task.task_id]
            self._progress.pop(task.task_id, None)
            logger.warning(f"Recognition failed for page {task.page_index}: {message.error}")
            task.future.set_exception(
                RecognitionTaskError(message.error or "recognition failed", task.page_index)
            )

        elif message.kind == MESSAGE_EXITED:
            self._handle_exit(message)

        elif message.kind == MESSAGE_READY and message.worker_id in self._starting:
            self._starting.discard(message.worker_id)
            self._idle.append(message.worker_id)
            logger.info(f"Worker {message.worker_id} ready")

        elif message.kind == MESSAGE_INIT_ERROR and message.worker_id in self._starting:
            logger.error(f"Worker {message.worker_id} failed to start: {message.error}")
            self._retire(message.worker_id)

        else:
            logger.debug(f"Ignoring {message.kind} from worker {message.worker_id}")

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    @property
    def total_pages(self) -> int:
        return max(self.page_count, self._submitted)

    def page_progress(self, page_index: int) -> float:
        for task_id, task in self._active.items():
            if task.page_index == page_index:
                return self._progress.get(task_id, 0.0)
        return 1.0 if page_index in self._completed_pages else 0.0

    def overall_progress(self) -> float:
        total = self.total_pages
        if total == 0:
            return 1.0
        value = (self._completed + sum(self._progress.values())) / total
        return min(max(value, 0.0), 1.0)

    def _emit(self, page_index: int) -> None:
        if self.on_progress is None:
            return
        payload = ProgressPayload(
            page_index=page_index,
            page_progress=self.page_progress(page_index),
            overall_progress=self.overall_progress(),
            completed_pages=self._completed,
            total_pages=self.total_pages,
        )
        try:
            self.on_progress(payload)
        except Exception as e:
            logger.warning(f"Progress callback raised: {e}")


def recognize_pages(
    scheduler: RecognitionScheduler,
    images: List[Union[bytes, np.ndarray]]
) -> List[Future]:
    """Enqueue images in order; the i-th future belongs to page i."""
    return [scheduler.enqueue(i, image) for i, image in enumerate(images)]
