"""
Error types for the scanflow pipeline.

A photographed page that contains no detectable document outline is NOT an
error: the geometry engine reports it as ``detected_corners=None``.
"""

from typing import Optional


class ScanflowError(Exception):
    """Base class for all scanflow errors."""


class DecodeError(ScanflowError, ValueError):
    """Raised when input bytes cannot be decoded as a raster image."""


class ProcessingTimeout(ScanflowError, TimeoutError):
    """Raised when geometry or recognition exceeds its time budget."""

    def __init__(self, stage: str, seconds: float):
        super().__init__(f"{stage} exceeded {seconds:.1f}s")
        self.stage = stage
        self.seconds = seconds


class WorkerInitError(ScanflowError, RuntimeError):
    """Raised when a recognition worker fails to start."""

    def __init__(self, message: str, worker_id: Optional[str] = None):
        super().__init__(message)
        self.worker_id = worker_id


class RecognitionTaskError(ScanflowError, RuntimeError):
    """Raised (through the task's future) when one recognition task fails."""

    def __init__(self, message: str, page_index: Optional[int] = None):
        super().__init__(message)
        self.page_index = page_index


class SchedulerClosedError(ScanflowError, RuntimeError):
    """Raised when tasks are submitted to a scheduler that is not running."""
