"""
Recognition workers.

A worker owns one recognition engine and talks to its scheduler only through
messages: it receives ``WorkerRequest`` objects on an inbox and posts
``WorkerMessage`` objects to an outbox. Two handles run the same loop:

- ProcessWorkerHandle: a separate process (true parallelism for OCR)
- ThreadWorkerHandle: a thread in the current process (tests, light loads)

Both deliver every message onto the scheduler's single event queue. A process
worker that dies on its own is reported with an ``exited`` message.
"""

import logging
import multiprocessing
import queue
import threading
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable, Union

import numpy as np

from .recognition import build_page_result

logger = logging.getLogger(__name__)

# Request kinds
REQUEST_INIT = "init"
REQUEST_RECOGNIZE = "recognize"
REQUEST_TERMINATE = "terminate"

# Message kinds
MESSAGE_READY = "ready"
MESSAGE_INIT_ERROR = "init_error"
MESSAGE_PROGRESS = "progress"
MESSAGE_RESULT = "result"
MESSAGE_ERROR = "error"
MESSAGE_EXITED = "exited"

EngineFactory = Callable[[str], Any]


# ============================================================================
# Messages
# ============================================================================

@dataclass
class WorkerRequest:
    """Scheduler -> worker."""
    kind: str
    task_id: Optional[str] = None
    image: Optional[Union[bytes, np.ndarray]] = None
    language: Optional[str] = None


@dataclass
class WorkerMessage:
    """Worker -> scheduler."""
    kind: str
    worker_id: str
    task_id: Optional[str] = None
    progress: float = 0.0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


# ============================================================================
# Worker Loop
# ============================================================================

def run_worker(worker_id: str, engine_factory: EngineFactory, inbox, outbox) -> None:
    """
    Serve recognition requests until told to terminate.

    The first request must be ``init`` carrying the language. Engine creation
    failure posts ``init_error`` and exits; otherwise ``ready`` is posted and
    ``recognize`` requests are handled one at a time.

    Args:
        worker_id: Identifier echoed on every message
        engine_factory: Called with the language to build the engine
        inbox: Queue of WorkerRequest
        outbox: Queue receiving WorkerMessage
    """
    request = inbox.get()
    if request.kind != REQUEST_INIT:
        outbox.put(WorkerMessage(
            MESSAGE_INIT_ERROR, worker_id, error=f"Expected init request, got {request.kind!r}"
        ))
        return

    try:
        engine = engine_factory(request.language or "eng")
    except Exception as e:
        outbox.put(WorkerMessage(MESSAGE_INIT_ERROR, worker_id, error=f"{type(e).__name__}: {e}"))
        return

    outbox.put(WorkerMessage(MESSAGE_READY, worker_id))

    try:
        while True:
            request = inbox.get()
            if request.kind == REQUEST_TERMINATE:
                break
            if request.kind != REQUEST_RECOGNIZE:
                logger.warning(f"Worker {worker_id} ignoring request kind {request.kind!r}")
                continue

            task_id = request.task_id

            def report(fraction: float) -> None:
                outbox.put(WorkerMessage(MESSAGE_PROGRESS, worker_id, task_id, progress=fraction))

            try:
                raw = engine.recognize(request.image, on_progress=report)
                result = build_page_result(raw)
            except Exception as e:
                logger.debug(f"Worker {worker_id} failed task {task_id}: {e}")
                outbox.put(WorkerMessage(
                    MESSAGE_ERROR, worker_id, task_id, error=f"{type(e).__name__}: {e}"
                ))
                continue

            outbox.put(WorkerMessage(MESSAGE_RESULT, worker_id, task_id, progress=1.0,
                                     result=result.to_dict()))
    finally:
        close = getattr(engine, "close", None)
        if close is not None:
            close()


# ============================================================================
# Worker Handles
# ============================================================================

class ThreadWorkerHandle:
    """Runs the worker loop on a daemon thread, posting straight to ``events``."""

    def __init__(self, worker_id: str, engine_factory: EngineFactory, events: queue.Queue):
        self.worker_id = worker_id
        self.engine_factory = engine_factory
        self.events = events
        self._inbox: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=run_worker,
            args=(self.worker_id, self.engine_factory, self._inbox, self.events),
            name=f"ocr-worker-{self.worker_id}",
            daemon=True,
        )
        self._thread.start()

    def send(self, request: WorkerRequest) -> None:
        self._inbox.put(request)

    def terminate(self) -> None:
        # A thread cannot be killed; it exits after its current task
        self._inbox.put(WorkerRequest(REQUEST_TERMINATE))


def stop_process(process, join_timeout: float) -> bool:
    """
    Wait for a child to exit, escalating to terminate() and then kill().

    Returns:
        True if the child had to be signalled
    """
    process.join(join_timeout)
    if not process.is_alive():
        return False

    process.terminate()
    process.join(join_timeout)
    if process.is_alive():
        process.kill()
        process.join(join_timeout)
    return True


def discard_queues(*queues) -> None:
    """Close multiprocessing queues without joining their feeder threads."""
    for q in queues:
        # A killed peer can leave the feeder blocked on the pipe forever
        q.cancel_join_thread()
        q.close()


class ProcessWorkerHandle:
    """
    Runs the worker loop in a separate process.

    The engine factory and every request must be picklable. A pump thread
    forwards the process's outbox onto ``events`` and posts an ``exited``
    message if the process dies without being asked to stop.
    """

    def __init__(
        self,
        worker_id: str,
        engine_factory: EngineFactory,
        events: queue.Queue,
        join_timeout: float = 2.0,
        poll_interval: float = 0.1
    ):
        self.worker_id = worker_id
        self.engine_factory = engine_factory
        self.events = events
        self.join_timeout = join_timeout
        self.poll_interval = poll_interval
        self._context = multiprocessing.get_context("spawn")
        self._inbox = None
        self._outbox = None
        self._process = None
        self._pump: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def start(self) -> None:
        self._stopping.clear()
        self._inbox = self._context.Queue()
        self._outbox = self._context.Queue()
        self._process = self._context.Process(
            target=run_worker,
            args=(self.worker_id, self.engine_factory, self._inbox, self._outbox),
            name=f"ocr-worker-{self.worker_id}",
            daemon=True,
        )
        self._process.start()

        self._pump = threading.Thread(
            target=self._forward,
            args=(self._process, self._outbox),
            name=f"ocr-pump-{self.worker_id}",
            daemon=True,
        )
        self._pump.start()
        logger.debug(f"Spawned worker {self.worker_id} (PID {self._process.pid})")

    def _forward(self, process, outbox) -> None:
        while not self._stopping.is_set():
            try:
                message = outbox.get(timeout=self.poll_interval)
            except queue.Empty:
                if process.is_alive() or self._stopping.is_set():
                    continue
                self._drain(outbox)
                logger.error(
                    f"Worker {self.worker_id} exited unexpectedly (exit code {process.exitcode})"
                )
                self.events.put(WorkerMessage(
                    MESSAGE_EXITED,
                    self.worker_id,
                    error=f"Worker process exited with code {process.exitcode}",
                ))
                return
            self.events.put(message)

    def _drain(self, outbox) -> None:
        while True:
            try:
                self.events.put(outbox.get_nowait())
            except queue.Empty:
                return
            except (EOFError, OSError) as e:
                logger.warning(f"Worker {self.worker_id} left a truncated message: {e}")
                return

    def send(self, request: WorkerRequest) -> None:
        self._inbox.put(request)

    def terminate(self) -> None:
        if self._process is None:
            return

        process = self._process
        self._process = None
        self._stopping.set()

        if process.is_alive():
            self._inbox.put(WorkerRequest(REQUEST_TERMINATE))
        forced = stop_process(process, self.join_timeout)

        if self._pump is not None:
            self._pump.join(self.join_timeout)
            self._pump = None
        discard_queues(self._inbox, self._outbox)

        if forced:
            logger.debug(f"Killed worker {self.worker_id}")
        else:
            logger.debug(f"Stopped worker {self.worker_id} (exit code {process.exitcode})")


WORKER_BACKENDS = {
    "process": ProcessWorkerHandle,
    "thread": ThreadWorkerHandle,
}
