"""
Utility modules for the scanflow pipeline.
"""

from .io import load_pdf, load_image_bytes, load_images_from_folder, save_json, ensure_dir
from .models import BoundingBox, Point, PageRecognitionResult, PageNode, BlockNode
from .geometry import detect_and_rectify, order_corners, RectifiedPage
from .recognition import TesseractEngine, build_page_result
from .scheduler import RecognitionScheduler, ProgressPayload
from .layout import reconstruct_page, reading_order_blocks, flatten_text
from .editor import DocumentEditor, EditSession
from .history_store import JsonHistoryStore, MemoryHistoryStore
from .capture import CaptureSession, CapturedPage
from .export import DocumentExporter, ExportPage
from .pipeline import ScanPipeline, ScanResult, ensure_recognized

__all__ = [
    # IO
    "load_pdf", "load_image_bytes", "load_images_from_folder", "save_json", "ensure_dir",
    # Models
    "BoundingBox", "Point", "PageRecognitionResult", "PageNode", "BlockNode",
    # Geometry
    "detect_and_rectify", "order_corners", "RectifiedPage",
    # Recognition
    "TesseractEngine", "build_page_result", "RecognitionScheduler", "ProgressPayload",
    # Layout
    "reconstruct_page", "reading_order_blocks", "flatten_text",
    # Editing
    "DocumentEditor", "EditSession", "JsonHistoryStore", "MemoryHistoryStore",
    # Capture
    "CaptureSession", "CapturedPage",
    # Export
    "DocumentExporter", "ExportPage",
    # Pipeline
    "ScanPipeline", "ScanResult", "ensure_recognized",
]
