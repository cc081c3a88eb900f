"""
Configuration and constants for the scanflow pipeline.

This module provides:
- Global logging setup
- Geometry, recognition, layout, editor and export settings
- Environment overrides
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple
import logging

# ============================================================================
# Logging Configuration
# ============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("scanflow")


# ============================================================================
# Processing Configuration
# ============================================================================

@dataclass
class GeometryConfig:
    """Page detection and rectification configuration."""
    max_process_side: int = 1500
    preview_max_side: int = 850
    jpeg_quality: int = 88
    # Candidate filtering
    min_area_ratio: float = 0.2
    min_aspect: float = 0.5
    max_aspect: float = 1.8
    approx_epsilon: float = 0.02
    # Edge detection
    blur_kernel: int = 5
    canny_low: int = 60
    canny_high: int = 180
    # Enhancement
    clahe_clip_limit: float = 3.0
    clahe_grid_size: int = 8
    sharpen_sigma: float = 1.2
    sharpen_amount: float = 1.5
    low_end_contrast: float = 1.12
    # Capture queue
    timeout_seconds: float = 12.0
    backend: str = "process"  # process (killable on timeout), thread
    start_timeout_seconds: float = 60.0


@dataclass
class RecognitionConfig:
    """Text recognition configuration."""
    language: str = "eng"
    tesseract_config: str = "--oem 1 --psm 3"
    backend: str = "process"  # process, thread
    worker_count: Optional[int] = None  # None = derived from device profile
    init_timeout_seconds: float = 60.0
    task_timeout_seconds: Optional[float] = 300.0  # per page, None = wait forever


@dataclass
class LayoutConfig:
    """Reading-order reconstruction configuration."""
    column_gap_threshold: float = 18
    empty_column_range: Tuple[float, float] = (0, 100)


@dataclass
class EditorConfig:
    """Editable document model configuration."""
    line_height: int = 12
    line_box_height: int = 10
    split_offset: int = 14
    fallback_text: str = "No text was recognized on this page."
    # Debounced history persistence
    save_delay_seconds: float = 0.55
    save_retry_delay_seconds: float = 0.25
    save_error_delay_seconds: float = 0.7


@dataclass
class QualityPreset:
    """Image compression settings for PDF export."""
    max_image_long_edge: int
    jpeg_quality: int
    render_scale: float


@dataclass
class ExportConfig:
    """Export configuration."""
    pdf_mode: str = "searchable-hq"  # image, searchable-fast, searchable-hq
    quality: str = "medium"  # low, medium, high
    base_name: str = "scanflow-document"
    min_font_size: float = 6.0
    font_scale: float = 2.8
    quality_presets: Dict[str, QualityPreset] = field(default_factory=lambda: {
        "low": QualityPreset(max_image_long_edge=1400, jpeg_quality=60, render_scale=0.92),
        "medium": QualityPreset(max_image_long_edge=2100, jpeg_quality=76, render_scale=1.0),
        "high": QualityPreset(max_image_long_edge=3200, jpeg_quality=90, render_scale=1.08),
    })


@dataclass
class PipelineConfig:
    """Main pipeline configuration."""
    geometry: GeometryConfig = field(default_factory=GeometryConfig)
    recognition: RecognitionConfig = field(default_factory=RecognitionConfig)
    layout: LayoutConfig = field(default_factory=LayoutConfig)
    editor: EditorConfig = field(default_factory=EditorConfig)
    export: ExportConfig = field(default_factory=ExportConfig)

    # Global settings
    debug_mode: bool = False


# ============================================================================
# Default Configuration Instance
# ============================================================================

def get_config() -> PipelineConfig:
    """Get the default pipeline configuration with environment overrides."""
    config = PipelineConfig()

    if os.environ.get("SCANFLOW_DEBUG", "").lower() == "true":
        config.debug_mode = True

    language = os.environ.get("SCANFLOW_OCR_LANGUAGE")
    if language:
        config.recognition.language = language

    backend = os.environ.get("SCANFLOW_OCR_BACKEND")
    if backend in ("process", "thread"):
        config.recognition.backend = backend

    workers = os.environ.get("SCANFLOW_OCR_WORKERS")
    if workers and workers.isdigit():
        config.recognition.worker_count = int(workers)

    timeout = os.environ.get("SCANFLOW_GEOMETRY_TIMEOUT")
    if timeout:
        try:
            config.geometry.timeout_seconds = float(timeout)
        except ValueError:
            logger.warning(f"Ignoring invalid SCANFLOW_GEOMETRY_TIMEOUT: {timeout!r}")

    geometry_backend = os.environ.get("SCANFLOW_GEOMETRY_BACKEND")
    if geometry_backend in ("process", "thread"):
        config.geometry.backend = geometry_backend

    return config


def config_summary(config: PipelineConfig) -> Dict[str, Any]:
    """Flat summary of the settings that matter for a run, for logging."""
    return {
        "language": config.recognition.language,
        "backend": config.recognition.backend,
        "workers": config.recognition.worker_count or "auto",
        "pdf_mode": config.export.pdf_mode,
        "quality": config.export.quality,
        "geometry_backend": config.geometry.backend,
        "geometry_timeout": config.geometry.timeout_seconds,
    }
