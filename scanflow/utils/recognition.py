"""
Text recognition engine and result shaping.

Provides:
- RawWord / RawRecognition: what an engine emits for one page
- TesseractEngine: full-page recognition through pytesseract
- build_page_result: group raw words into lines and blocks

Engines are created inside recognition workers (see ``workers.py``) from a
picklable factory called with the language, e.g. ``TesseractEngine`` or
``functools.partial(TesseractEngine, config="--psm 4")``.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Callable, Union

import numpy as np

from .models import (
    BoundingBox,
    RecognizedWord,
    RecognizedLine,
    RecognizedBlock,
    PageRecognitionResult,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class RawWord:
    """One word as reported by an engine."""
    text: str
    bbox: BoundingBox
    confidence: float  # 0-1
    line_key: Optional[str] = None
    block_key: Optional[str] = None


@dataclass
class RawRecognition:
    """Engine output for one page."""
    text: str = ""
    words: List[RawWord] = field(default_factory=list)


# ============================================================================
# Result Shaping
# ============================================================================

def _mean(values: List[float]) -> float:
    return float(np.mean(values)) if values else 0.0


def build_page_result(raw: RawRecognition) -> PageRecognitionResult:
    """
    Shape engine output into words, lines and blocks.

    Empty words are dropped. A word without a line key gets ``line-{i}`` and
    without a block key ``block-{i}``, where ``i`` is its index among the
    kept words. Lines and blocks keep first-seen order; boxes are unions and
    confidences are means.

    Args:
        raw: Engine output

    Returns:
        PageRecognitionResult
    """
    words: List[RecognizedWord] = []
    for raw_word in raw.words:
        text = raw_word.text.strip()
        if not text:
            continue
        i = len(words)
        words.append(RecognizedWord(
            text=text,
            bbox=raw_word.bbox.copy(),
            confidence=float(raw_word.confidence),
            line_id=raw_word.line_key or f"line-{i}",
            block_id=raw_word.block_key or f"block-{i}",
        ))

    # Group words into lines (dicts preserve first-seen order)
    line_words: Dict[str, List[int]] = {}
    for index, word in enumerate(words):
        line_words.setdefault(word.line_id, []).append(index)

    lines: List[RecognizedLine] = []
    for line_id, indexes in line_words.items():
        members = [words[i] for i in indexes]
        lines.append(RecognizedLine(
            id=line_id,
            block_id=members[0].block_id,
            text=" ".join(w.text for w in members),
            bbox=BoundingBox.enclosing(w.bbox for w in members),
            confidence=_mean([w.confidence for w in members]),
            word_ids=list(indexes),
        ))

    # Group lines into blocks
    block_lines: Dict[str, List[RecognizedLine]] = {}
    for line in lines:
        block_lines.setdefault(line.block_id, []).append(line)

    blocks: List[RecognizedBlock] = []
    for block_id, members in block_lines.items():
        blocks.append(RecognizedBlock(
            id=block_id,
            text="\n".join(l.text for l in members),
            bbox=BoundingBox.enclosing(l.bbox for l in members),
            confidence=_mean([l.confidence for l in members]),
            line_ids=[l.id for l in members],
        ))

    return PageRecognitionResult(raw_text=raw.text, words=words, lines=lines, blocks=blocks)


# ============================================================================
# Tesseract Engine
# ============================================================================

class TesseractEngine:
    """Full-page OCR using Tesseract."""

    def __init__(
        self,
        language: str = "eng",
        config: str = "--oem 1 --psm 3"
    ):
        try:
            import pytesseract
            self.pytesseract = pytesseract

            # Test that tesseract is installed
            pytesseract.get_tesseract_version()

        except Exception as e:
            raise RuntimeError(
                f"Tesseract not available: {e}\n"
                "Install with: pip install pytesseract\n"
                "Also install Tesseract: https://github.com/tesseract-ocr/tesseract"
            ) from e

        self.language = language
        self.config = config

    def _prepare(self, image: Union[bytes, np.ndarray]) -> np.ndarray:
        """Decode encoded bytes and convert to grayscale."""
        from .geometry import decode_image, to_grayscale

        if isinstance(image, (bytes, bytearray)):
            image = decode_image(bytes(image))
        return to_grayscale(image)

    def recognize(
        self,
        image: Union[bytes, np.ndarray],
        on_progress: Optional[ProgressCallback] = None
    ) -> RawRecognition:
        """
        Recognize all text on a page.

        Progress is reported at stage boundaries: decode, recognition, shaping.

        Args:
            image: Encoded image bytes or a decoded array
            on_progress: Called with a fraction in [0, 1]

        Returns:
            RawRecognition with words keyed by Tesseract's block/paragraph/line
        """
        report = on_progress or (lambda fraction: None)
        report(0.0)

        prepared = self._prepare(image)
        report(0.1)

        data = self.pytesseract.image_to_data(
            prepared,
            lang=self.language,
            config=self.config,
            output_type=self.pytesseract.Output.DICT
        )
        report(0.9)

        raw = self._parse_data(data)
        report(1.0)
        return raw

    def _parse_data(self, data: Dict[str, List[Any]]) -> RawRecognition:
        words: List[RawWord] = []
        line_texts: Dict[str, List[str]] = {}

        for i in range(len(data['text'])):
            text = str(data['text'][i]).strip()
            conf = float(data['conf'][i])

            if conf < 0:  # -1 means no valid confidence
                continue
            if not text:
                continue

            block_key = f"{data['block_num'][i]}-{data['par_num'][i]}"
            line_key = f"{block_key}-{data['line_num'][i]}"
            left, top = data['left'][i], data['top'][i]

            words.append(RawWord(
                text=text,
                bbox=BoundingBox(left, top, left + data['width'][i], top + data['height'][i]),
                confidence=conf / 100.0,
                line_key=line_key,
                block_key=block_key,
            ))
            line_texts.setdefault(line_key, []).append(text)

        full_text = "\n".join(" ".join(parts) for parts in line_texts.values())
        logger.debug(f"Tesseract returned {len(words)} words in {len(line_texts)} lines")
        return RawRecognition(text=full_text, words=words)

    def close(self) -> None:
        """Tesseract runs as a subprocess per call; nothing to release."""
