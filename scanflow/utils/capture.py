"""
Capture queue for photographed pages.

Provides:
- CapturedPage: one page with its raw and processed images
- CaptureSession: adds pages immediately and rectifies them in the
  background, strictly one at a time and in capture order

A page is never left waiting: if rectification fails or exceeds its time
budget the page keeps its raw image and is flagged for manual adjustment.
With the ``process`` backend an overrunning rectifier is killed; with the
``thread`` backend the next page waits until it returns.
"""

import functools
import logging
import multiprocessing
import queue
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, Future, wait as wait_futures
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import List, Optional, Callable, Dict, Any

from ..config import GeometryConfig
from .device import DeviceProfile, resolve_tuning
from .errors import DecodeError, ProcessingTimeout
from .geometry import (
    RectifiedPage,
    detect_and_rectify,
    decode_image,
    encode_jpeg,
    order_corners,
    warp_and_enhance,
)
from .models import Quadrilateral, PageRecognitionResult, quad_to_list
from .workers import stop_process, discard_queues

logger = logging.getLogger(__name__)

Rectifier = Callable[[bytes], RectifiedPage]


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class CapturedPage:
    """A captured page and the state of its enhancement."""
    id: str
    raw_image: bytes
    processed_image: bytes
    detected_corners: Optional[Quadrilateral] = None
    enhancing: bool = False
    needs_manual_adjustment: bool = False
    warning: Optional[str] = None
    ocr: Optional[PageRecognitionResult] = None
    name: Optional[str] = None

    @property
    def has_ocr(self) -> bool:
        return self.ocr is not None

    def to_dict(self) -> Dict[str, Any]:
        """Metadata only; image bytes are reported by size."""
        return {
            "id": self.id,
            "name": self.name,
            "raw_bytes": len(self.raw_image),
            "processed_bytes": len(self.processed_image),
            "detected_corners": quad_to_list(self.detected_corners),
            "enhancing": self.enhancing,
            "needs_manual_adjustment": self.needs_manual_adjustment,
            "warning": self.warning,
            "has_ocr": self.has_ocr,
        }


# ============================================================================
# Rectifier Process
# ============================================================================

def serve_rectifier(rectifier: Rectifier, inbox, outbox) -> None:
    """Child-process loop: rectify each raw image until a None arrives."""
    outbox.put(("ready", None))
    while True:
        raw_image = inbox.get()
        if raw_image is None:
            return
        try:
            outbox.put(("ok", rectifier(raw_image)))
        except DecodeError as e:
            outbox.put(("decode_error", str(e)))
        except Exception as e:
            outbox.put(("error", f"{type(e).__name__}: {e}"))


class RectifierProcess:
    """
    Runs a picklable rectifier in a child process that can be killed.

    The child is started on first use and replaced after it is killed, so
    at most one rectification is ever running. Start-up time does not count
    against a job's timeout.
    """

    def __init__(
        self,
        rectifier: Rectifier,
        start_timeout: float = 60.0,
        join_timeout: float = 2.0,
        poll_interval: float = 0.1
    ):
        self.rectifier = rectifier
        self.start_timeout = start_timeout
        self.join_timeout = join_timeout
        self.poll_interval = poll_interval
        self._context = multiprocessing.get_context("spawn")
        self._process = None
        self._inbox = None
        self._outbox = None
        self.starts = 0

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def _start(self) -> None:
        self._inbox = self._context.Queue()
        self._outbox = self._context.Queue()
        self._process = self._context.Process(
            target=serve_rectifier,
            args=(self.rectifier, self._inbox, self._outbox),
            name="geometry-worker",
            daemon=True,
        )
        try:
            self._process.start()
        except Exception:
            self._process = None
            discard_queues(self._inbox, self._outbox)
            raise

        try:
            self._receive(self.start_timeout, "rectifier start")
        except ProcessingTimeout:
            self.close(graceful=False)
            raise
        self.starts += 1
        logger.debug(f"Started rectifier process (PID {self._process.pid})")

    def _receive(self, timeout: float, stage: str):
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProcessingTimeout(stage, timeout)
            try:
                return self._outbox.get(timeout=min(remaining, self.poll_interval))
            except queue.Empty:
                if self._process.is_alive():
                    continue
            try:
                return self._outbox.get_nowait()
            except queue.Empty:
                exitcode = self._process.exitcode
                self.close(graceful=False)
                raise RuntimeError(f"Rectifier process exited with code {exitcode}")

    def run(self, raw_image: bytes, timeout: float) -> RectifiedPage:
        """
        Rectify one image in the child.

        Raises:
            ProcessingTimeout: If the job overran; the child has been killed
            DecodeError: If the image could not be decoded
            RuntimeError: If the rectifier failed or the child died
        """
        if not self.is_alive:
            self.close(graceful=False)
            self._start()

        self._inbox.put(raw_image)
        try:
            kind, payload = self._receive(timeout, "rectification")
        except ProcessingTimeout:
            self.close(graceful=False)
            raise

        if kind == "ok":
            return payload
        if kind == "decode_error":
            raise DecodeError(payload)
        raise RuntimeError(payload)

    def close(self, graceful: bool = True) -> None:
        if self._process is None:
            return

        process = self._process
        self._process = None
        if graceful and process.is_alive():
            self._inbox.put(None)
            stop_process(process, self.join_timeout)
        else:
            if process.is_alive():
                process.kill()
            process.join(self.join_timeout)
            logger.debug(f"Killed rectifier process (PID {process.pid})")
        discard_queues(self._inbox, self._outbox)


# ============================================================================
# Capture Session
# ============================================================================

class CaptureSession:
    """
    Ordered list of captured pages with a serial rectification queue.

    Usage:
        with CaptureSession() as session:
            for data in photos:
                session.capture(data)
            session.wait()
            pages = session.pages
    """

    def __init__(
        self,
        profile: Optional[DeviceProfile] = None,
        config: Optional[GeometryConfig] = None,
        on_update: Optional[Callable[[CapturedPage], None]] = None,
        rectifier: Optional[Rectifier] = None,
        backend: Optional[str] = None
    ):
        self.config = config or GeometryConfig()
        self.backend = backend or self.config.backend
        if self.backend not in ("process", "thread"):
            raise ValueError(f"Unknown capture backend: {self.backend}")
        self.profile = profile
        self.on_update = on_update
        self.rectifier = rectifier or functools.partial(
            detect_and_rectify, profile=profile, config=self.config
        )

        self._pages: List[CapturedPage] = []
        self._lock = threading.Lock()
        self._queue = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capture-queue")
        self._jobs: List[Future] = []

        self._runner: Optional[RectifierProcess] = None
        self._geometry: Optional[ThreadPoolExecutor] = None
        self._overrun: Optional[Future] = None
        if self.backend == "process":
            self._runner = RectifierProcess(
                self.rectifier, start_timeout=self.config.start_timeout_seconds
            )
        else:
            self._geometry = ThreadPoolExecutor(max_workers=1, thread_name_prefix="geometry")

    # ------------------------------------------------------------------
    # Page list
    # ------------------------------------------------------------------

    @property
    def pages(self) -> List[CapturedPage]:
        with self._lock:
            return list(self._pages)

    def get(self, page_id: str) -> Optional[CapturedPage]:
        with self._lock:
            for page in self._pages:
                if page.id == page_id:
                    return page
        return None

    def remove_page(self, page_id: str) -> bool:
        with self._lock:
            for index, page in enumerate(self._pages):
                if page.id == page_id:
                    del self._pages[index]
                    return True
        return False

    def reorder_pages(self, from_index: int, to_index: int) -> None:
        with self._lock:
            if not (0 <= from_index < len(self._pages)):
                return
            page = self._pages.pop(from_index)
            to_index = max(0, min(to_index, len(self._pages)))
            self._pages.insert(to_index, page)

    def set_ocr(self, page_id: str, result: Optional[PageRecognitionResult]) -> None:
        self._update(page_id, ocr=result)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def capture(
        self,
        raw_image: bytes,
        page_id: Optional[str] = None,
        name: Optional[str] = None
    ) -> CapturedPage:
        """
        Add a page now and queue its rectification.

        The returned page shows the raw image with ``enhancing=True`` until
        its turn in the queue completes.
        """
        page = CapturedPage(
            id=page_id or uuid.uuid4().hex[:12],
            raw_image=raw_image,
            processed_image=raw_image,
            enhancing=True,
            name=name,
        )
        with self._lock:
            self._pages.append(page)
            self._jobs.append(self._queue.submit(self._enhance, page.id))
        self._notify(page)
        return page

    def _rectify_with_timeout(self, raw_image: bytes) -> RectifiedPage:
        timeout = self.config.timeout_seconds
        if self._runner is not None:
            return self._runner.run(raw_image, timeout)

        if self._overrun is not None:
            # The previous rectifier overran and cannot be stopped; let it finish
            wait_futures([self._overrun])
            self._overrun = None

        future = self._geometry.submit(self.rectifier, raw_image)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            self._overrun = future
            raise ProcessingTimeout("rectification", timeout)

    def _enhance(self, page_id: str) -> None:
        page = self.get(page_id)
        if page is None:
            return

        try:
            rectified = self._rectify_with_timeout(page.raw_image)
        except ProcessingTimeout as e:
            logger.warning(f"Page {page_id}: {e}; keeping original image")
            self._update(
                page_id,
                enhancing=False,
                needs_manual_adjustment=True,
                warning="Automatic enhancement took too long; the original image was kept.",
            )
            return
        except DecodeError as e:
            logger.warning(f"Page {page_id}: {e}")
            self._update(
                page_id,
                enhancing=False,
                needs_manual_adjustment=True,
                warning="The image could not be decoded.",
            )
            return
        except Exception as e:
            logger.warning(f"Page {page_id}: enhancement failed: {e}")
            self._update(
                page_id,
                enhancing=False,
                needs_manual_adjustment=True,
                warning="Automatic enhancement failed; the original image was kept.",
            )
            return

        self._update(
            page_id,
            processed_image=rectified.processed_image,
            detected_corners=rectified.detected_corners,
            enhancing=False,
            needs_manual_adjustment=rectified.detected_corners is None,
            warning=None,
        )

    def adjust_corners(
        self,
        page_id: str,
        corners: Quadrilateral,
        profile: Optional[DeviceProfile] = None
    ) -> Optional[CapturedPage]:
        """
        Re-crop a page from user-supplied corners (raw image coordinates).

        Clears any previous recognition result since the image changed.
        """
        page = self.get(page_id)
        if page is None:
            return None

        ordered = order_corners(list(corners))
        image = decode_image(page.raw_image)
        low_resource = resolve_tuning(profile or self.profile).low_resource
        warped = warp_and_enhance(image, ordered, low_resource=low_resource, config=self.config)

        return self._update(
            page_id,
            processed_image=encode_jpeg(warped, self.config.jpeg_quality),
            detected_corners=ordered,
            needs_manual_adjustment=False,
            warning=None,
            ocr=None,
        )

    def _update(self, page_id: str, **changes) -> Optional[CapturedPage]:
        with self._lock:
            page = next((p for p in self._pages if p.id == page_id), None)
            if page is None:
                return None
            for key, value in changes.items():
                setattr(page, key, value)
        self._notify(page)
        return page

    def _notify(self, page: CapturedPage) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(page)
        except Exception as e:
            logger.warning(f"Capture update callback raised: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued page has been processed."""
        with self._lock:
            jobs = list(self._jobs)
        _, not_done = wait_futures(jobs, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self.wait()
        self._queue.shutdown(wait=True)
        if self._geometry is not None:
            self._geometry.shutdown(wait=True)
        if self._runner is not None:
            self._runner.close()

    def __enter__(self) -> 'CaptureSession':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
