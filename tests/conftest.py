"""
Shared fixtures for the scanflow test suite.
"""

import os
import sys
import threading
import time
from pathlib import Path

import pytest
import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent))


class FakeEngine:
    """
    Engine stand-in: the image bytes are the page text.

    ``b"boom"`` raises, anything starting with ``b"slow"`` waits on the
    shared gate first.
    """

    gate = threading.Event()

    def __init__(self, language="eng"):
        self.language = language
        self.closed = False

    def recognize(self, image, on_progress=None):
        from scanflow.utils.models import BoundingBox
        from scanflow.utils.recognition import RawRecognition, RawWord

        report = on_progress or (lambda fraction: None)
        report(0.0)
        if isinstance(image, np.ndarray):
            text = "array"
        else:
            text = bytes(image).decode("utf-8", "replace")
        if text == "boom":
            raise RuntimeError("engine exploded")
        if text.startswith("slow"):
            FakeEngine.gate.wait(timeout=5)
        report(0.5)

        words = [
            RawWord(
                text=token,
                bbox=BoundingBox(10 + i * 60, 10, 60 + i * 60, 30),
                confidence=0.9,
                line_key="L1",
                block_key="B1",
            )
            for i, token in enumerate(text.split())
        ]
        report(1.0)
        return RawRecognition(text=text, words=words)

    def close(self):
        self.closed = True


class ExitingEngine(FakeEngine):
    """Kills its own process on ``b"die"``; only use with process workers."""

    def recognize(self, image, on_progress=None):
        if image == b"die":
            os._exit(3)
        return super().recognize(image, on_progress)


def sleepy_rectifier(data):
    """Picklable rectifier: hangs on ``b"sleep"``, tags everything else."""
    from scanflow.utils.geometry import RectifiedPage

    if data.startswith(b"sleep"):
        time.sleep(30)
    return RectifiedPage(processed_image=b"done:" + data)


def failing_engine_factory(language):
    raise RuntimeError(f"no traineddata for {language}")


@pytest.fixture
def fake_engine_factory():
    FakeEngine.gate.set()
    return FakeEngine


@pytest.fixture
def device_profile():
    """A mid-range device so nothing probes real hardware."""
    from scanflow.utils.device import DeviceProfile
    return DeviceProfile(cpu_cores=8, memory_gb=16.0)


@pytest.fixture
def document_photo():
    """A light page on a dark table, encoded as PNG."""
    import cv2

    img = np.full((600, 800, 3), 40, dtype=np.uint8)
    cv2.rectangle(img, (200, 80), (600, 520), (235, 235, 235), thickness=-1)
    for y in range(130, 480, 40):
        cv2.putText(img, "Lorem ipsum dolor", (230, y),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.8, (20, 20, 20), 2)
    ok, encoded = cv2.imencode(".png", img)
    assert ok
    return encoded.tobytes()


@pytest.fixture
def blank_gradient():
    """A smooth horizontal gradient with no edges."""
    import cv2

    row = np.linspace(0, 255, 640).astype(np.uint8)
    img = np.tile(row, (480, 1))
    ok, encoded = cv2.imencode(".png", img)
    assert ok
    return encoded.tobytes()
