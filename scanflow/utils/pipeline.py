"""
Scan pipeline orchestration.

Provides:
- ensure_recognized: batch recognition of every page that has no OCR yet
- build_export_pages: page trees (edited or reconstructed) for exporters
- ScanPipeline: capture -> rectify -> recognize -> (edit) -> export
- ScanResult / DocumentMetrics: run summary and JSON envelope

A page that fails at any stage keeps its last good state; the batch goes on.
"""

import logging
import time
import uuid
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Dict, Any, Union, Tuple, Callable

import numpy as np

from ..config import PipelineConfig, LayoutConfig
from .capture import CaptureSession, CapturedPage
from .device import DeviceProfile
from .editor import DocumentEditor
from .errors import RecognitionTaskError, ProcessingTimeout
from .export import DocumentExporter, ExportPage
from .history_store import JsonHistoryStore
from .layout import reconstruct_page
from .models import PageRecognitionResult
from .scheduler import RecognitionScheduler, ProgressPayload
from .workers import EngineFactory

logger = logging.getLogger(__name__)


# ============================================================================
# Batch Recognition
# ============================================================================

def ensure_recognized(
    pages: List[CapturedPage],
    language: str = "eng",
    on_progress: Optional[Callable[[ProgressPayload], None]] = None,
    profile: Optional[DeviceProfile] = None,
    engine_factory: Optional[EngineFactory] = None,
    capture: Optional[CaptureSession] = None,
    config: Optional[PipelineConfig] = None
) -> Dict[str, PageRecognitionResult]:
    """
    Recognize every page that has no OCR result yet.

    A scheduler is created for this batch and torn down at the end. A page
    whose recognition fails or times out is logged and skipped.

    Args:
        pages: Pages to check
        language: Recognition language
        on_progress: Scheduler progress callback
        profile: Device profile for pool sizing
        engine_factory: Engine factory for the workers
        capture: Session to store results through (else set on the page)
        config: Pipeline configuration

    Returns:
        Mapping of page id to its new recognition result

    Raises:
        WorkerInitError: If the worker pool cannot start
    """
    config = config or PipelineConfig()
    pending = [page for page in pages if page.ocr is None]
    if not pending:
        return {}

    scheduler = RecognitionScheduler(
        language=language,
        page_count=len(pending),
        on_progress=on_progress,
        profile=profile,
        engine_factory=engine_factory,
        config=config.recognition,
    )
    scheduler.init()

    results: Dict[str, PageRecognitionResult] = {}
    timeout = config.recognition.task_timeout_seconds
    try:
        futures = [
            (page, scheduler.enqueue(index, page.processed_image))
            for index, page in enumerate(pending)
        ]
        for page, future in futures:
            try:
                try:
                    result = future.result(timeout=timeout)
                except FuturesTimeout:
                    raise ProcessingTimeout("recognition", timeout)
            except (RecognitionTaskError, ProcessingTimeout) as e:
                logger.warning(f"Could not recognize text on page {page.id}: {e}")
                continue

            if capture is not None:
                capture.set_ocr(page.id, result)
            else:
                page.ocr = result
            results[page.id] = result
    finally:
        scheduler.terminate()

    logger.info(f"Recognized {len(results)}/{len(pending)} pages")
    return results


def build_export_pages(
    pages: List[CapturedPage],
    editor: Optional[DocumentEditor] = None,
    layout_config: Optional[LayoutConfig] = None
) -> List[ExportPage]:
    """
    Pair each page image with the tree exporters should use.

    Pages with an open editing session export their edited tree; the rest
    export the reconstructed layout of their recognition result.
    """
    export_pages = []
    for page in pages:
        if editor is not None and editor.has_session(page.id):
            tree = editor.session(page.id).present
        else:
            tree = reconstruct_page(page.ocr or PageRecognitionResult(), page.id, layout_config)
        export_pages.append(ExportPage(page=tree, image=page.processed_image, ocr=page.ocr))
    return export_pages


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class DocumentMetrics:
    """Metrics about a pipeline run."""
    pages_total: int = 0
    pages_rectified: int = 0
    pages_needing_adjustment: int = 0
    pages_recognized: int = 0
    pages_edited: int = 0
    words_total: int = 0
    mean_confidence: float = 0.0
    processing_time_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pages_total": self.pages_total,
            "pages_rectified": self.pages_rectified,
            "pages_needing_adjustment": self.pages_needing_adjustment,
            "pages_recognized": self.pages_recognized,
            "pages_edited": self.pages_edited,
            "words_total": self.words_total,
            "mean_confidence": round(self.mean_confidence, 3),
            "processing_time_seconds": round(self.processing_time_seconds, 2),
        }


@dataclass
class ScanResult:
    """Outcome of one pipeline run."""
    source_file: str
    pages: List[CapturedPage] = field(default_factory=list)
    export_pages: List[ExportPage] = field(default_factory=list)
    outputs: Dict[str, Path] = field(default_factory=dict)
    metrics: Optional[DocumentMetrics] = None
    task_id: str = ""
    created_at: str = ""
    schema_version: str = "1.0"

    def __post_init__(self):
        if not self.task_id:
            self.task_id = str(uuid.uuid4())
        if not self.created_at:
            self.created_at = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "schema_version": self.schema_version,
            "source_file": self.source_file,
            "created_at": self.created_at,
            "pages": [
                {
                    **page.to_dict(),
                    "layout": item.page.to_dict(),
                    "recognition": page.ocr.to_dict() if page.ocr else None,
                }
                for page, item in zip(self.pages, self.export_pages)
            ],
            "outputs": {fmt: str(path) for fmt, path in self.outputs.items()},
            "metrics": self.metrics.to_dict() if self.metrics else {},
        }


# ============================================================================
# Scan Pipeline
# ============================================================================

class ScanPipeline:
    """
    Orchestrates the scan pipeline.

    Coordinates:
    - Page capture and rectification
    - Batch text recognition
    - Optional edits (find/replace) through the editable document model
    - Export to txt / html / docx / pdf
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        profile: Optional[DeviceProfile] = None,
        engine_factory: Optional[EngineFactory] = None,
        output_dir: Optional[Union[str, Path]] = None,
        history_dir: Optional[Union[str, Path]] = None,
        on_progress: Optional[Callable[[ProgressPayload], None]] = None
    ):
        self.config = config or PipelineConfig()
        self.profile = profile
        self.engine_factory = engine_factory
        self.output_dir = Path(output_dir) if output_dir else None
        self.history_dir = Path(history_dir) if history_dir else None
        self.on_progress = on_progress

    def _needs_text(self, formats: List[str]) -> bool:
        if "all" in formats or any(f in formats for f in ("txt", "html", "docx")):
            return True
        return "pdf" in formats and self.config.export.pdf_mode != "image"

    def capture_pages(self, images: List[Tuple[str, bytes]]) -> List[CapturedPage]:
        """Rectify every image (serially, with the per-page timeout)."""
        with CaptureSession(profile=self.profile, config=self.config.geometry) as capture:
            for index, (name, data) in enumerate(images, 1):
                capture.capture(data, page_id=f"page-{index:04d}", name=name)
            capture.wait()
            return capture.pages

    def process(
        self,
        images: List[Tuple[str, bytes]],
        source_file: str,
        formats: Optional[List[str]] = None,
        replacements: Optional[List[Tuple[str, str]]] = None
    ) -> ScanResult:
        """
        Run the whole pipeline.

        Args:
            images: (name, encoded bytes) per page, in page order
            source_file: Source path, for the result envelope
            formats: Export formats; nothing is written without an output dir
            replacements: (find, replace) pairs applied to every page

        Returns:
            ScanResult
        """
        start_time = time.time()
        formats = formats or ["txt"]
        result = ScanResult(source_file=source_file)

        pages = self.capture_pages(images)
        result.pages = pages
        if self.config.debug_mode:
            self._save_debug_images(pages)

        if self._needs_text(formats) or replacements:
            ensure_recognized(
                pages,
                language=self.config.recognition.language,
                on_progress=self.on_progress,
                profile=self.profile,
                engine_factory=self.engine_factory,
                config=self.config,
            )

        editor = self._open_editor(pages, replacements)
        try:
            result.export_pages = build_export_pages(pages, editor, self.config.layout)
        finally:
            editor.close()

        if self.output_dir:
            exporter = DocumentExporter(self.output_dir, config=self.config.export)
            result.outputs = exporter.export(result.export_pages, formats)

        result.metrics = self._calculate_metrics(result, editor, time.time() - start_time)
        return result

    def _open_editor(
        self,
        pages: List[CapturedPage],
        replacements: Optional[List[Tuple[str, str]]]
    ) -> DocumentEditor:
        store = JsonHistoryStore(self.history_dir) if self.history_dir else None
        editor = DocumentEditor(
            store=store,
            config=self.config.editor,
            layout_config=self.config.layout,
        )

        for page in pages:
            # Resume pages that were edited in an earlier run
            if store is not None and store.load_history(page.id) is not None:
                editor.session(page.id, page.ocr)

        for find, replace_with in replacements or []:
            for page in pages:
                session = editor.session(page.id, page.ocr)
                if session.replace_all(find, replace_with):
                    logger.debug(f"Applied replacement {find!r} on page {page.id}")

        return editor

    def _calculate_metrics(
        self,
        result: ScanResult,
        editor: DocumentEditor,
        elapsed: float
    ) -> DocumentMetrics:
        metrics = DocumentMetrics(processing_time_seconds=elapsed)
        metrics.pages_total = len(result.pages)

        confidences = []
        for page in result.pages:
            if page.detected_corners is not None:
                metrics.pages_rectified += 1
            if page.needs_manual_adjustment:
                metrics.pages_needing_adjustment += 1
            if page.ocr is not None:
                metrics.pages_recognized += 1
                metrics.words_total += len(page.ocr.words)
                confidences.extend(w.confidence for w in page.ocr.words)
            if editor.has_session(page.id):
                metrics.pages_edited += 1

        if confidences:
            metrics.mean_confidence = float(np.mean(confidences))
        return metrics

    def _save_debug_images(self, pages: List[CapturedPage]) -> None:
        """Save rectified pages and detected outlines."""
        if not self.output_dir:
            return

        from .geometry import decode_image, draw_corners
        from .io import save_image

        debug_dir = self.output_dir / "debug"
        for page in pages:
            try:
                overlay = draw_corners(decode_image(page.raw_image), page.detected_corners)
            except Exception as e:
                logger.warning(f"Could not draw debug overlay for {page.id}: {e}")
                continue
            save_image(overlay, debug_dir / f"{page.id}_outline.jpg")
            save_image(page.processed_image, debug_dir / f"{page.id}_processed.jpg")
        logger.debug(f"Saved debug images to {debug_dir}")
