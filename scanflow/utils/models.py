"""
Shared data model for the scanflow pipeline.

Provides:
- Geometry primitives (Point, Quadrilateral, BoundingBox)
- Recognition output (words, lines, blocks, per-page result)
- The page tree (page -> columns -> blocks -> lines -> words) produced by
  layout reconstruction and mutated by the editor

Every type round-trips through plain dicts (``to_dict`` / ``from_dict``) so
it can cross worker process boundaries and be handed to a history store.
Line and block ids are opaque engine keys and are never parsed.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Dict, Any, Iterable


# ============================================================================
# Geometry
# ============================================================================

@dataclass(frozen=True)
class Point:
    """A 2D coordinate in source-image pixel space."""
    x: float
    y: float

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Point':
        return cls(float(data["x"]), float(data["y"]))


# Ordered [top_left, top_right, bottom_right, bottom_left]
Quadrilateral = Tuple[Point, Point, Point, Point]


@dataclass
class BoundingBox:
    """Axis-aligned box with (x0, y0) top-left and (x1, y1) bottom-right."""
    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def width(self) -> float:
        return self.x1 - self.x0

    @property
    def height(self) -> float:
        return self.y1 - self.y0

    @property
    def area(self) -> float:
        return self.width * self.height

    def to_tuple(self) -> Tuple[float, float, float, float]:
        return (self.x0, self.y0, self.x1, self.y1)

    def union(self, other: 'BoundingBox') -> 'BoundingBox':
        return BoundingBox(
            min(self.x0, other.x0),
            min(self.y0, other.y0),
            max(self.x1, other.x1),
            max(self.y1, other.y1),
        )

    def copy(self) -> 'BoundingBox':
        return BoundingBox(self.x0, self.y0, self.x1, self.y1)

    @classmethod
    def enclosing(cls, boxes: Iterable['BoundingBox']) -> Optional['BoundingBox']:
        """Union of all boxes, or None for an empty iterable."""
        result = None
        for box in boxes:
            result = box.copy() if result is None else result.union(box)
        return result

    def to_dict(self) -> Dict[str, float]:
        return {"x0": self.x0, "y0": self.y0, "x1": self.x1, "y1": self.y1}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BoundingBox':
        return cls(data.get("x0", 0), data.get("y0", 0), data.get("x1", 0), data.get("y1", 0))


def quad_to_list(quad: Optional[Quadrilateral]) -> Optional[List[Dict[str, float]]]:
    if quad is None:
        return None
    return [p.to_dict() for p in quad]


def quad_from_list(data: Optional[List[Dict[str, Any]]]) -> Optional[Quadrilateral]:
    if not data:
        return None
    points = [Point.from_dict(p) for p in data]
    return (points[0], points[1], points[2], points[3])


# ============================================================================
# Recognition Output
# ============================================================================

@dataclass
class RecognizedWord:
    """A single word emitted by the recognition engine."""
    text: str
    bbox: BoundingBox
    confidence: float
    line_id: str
    block_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            **self.bbox.to_dict(),
            "confidence": self.confidence,
            "line_id": self.line_id,
            "block_id": self.block_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RecognizedWord':
        return cls(
            text=data.get("text", ""),
            bbox=BoundingBox.from_dict(data),
            confidence=float(data.get("confidence", 0.0)),
            line_id=str(data.get("line_id", "")),
            block_id=str(data.get("block_id", "")),
        )


@dataclass
class RecognizedLine:
    """Words sharing a line id; box is the union, confidence the mean."""
    id: str
    block_id: str
    text: str
    bbox: BoundingBox
    confidence: float
    word_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "block_id": self.block_id,
            "text": self.text,
            **self.bbox.to_dict(),
            "confidence": self.confidence,
            "word_ids": list(self.word_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RecognizedLine':
        return cls(
            id=str(data["id"]),
            block_id=str(data.get("block_id", "")),
            text=data.get("text", ""),
            bbox=BoundingBox.from_dict(data),
            confidence=float(data.get("confidence", 0.0)),
            word_ids=list(data.get("word_ids", [])),
        )


@dataclass
class RecognizedBlock:
    """Lines sharing a block id; text is the line texts joined by newlines."""
    id: str
    text: str
    bbox: BoundingBox
    confidence: float
    line_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            **self.bbox.to_dict(),
            "confidence": self.confidence,
            "line_ids": list(self.line_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RecognizedBlock':
        return cls(
            id=str(data["id"]),
            text=data.get("text", ""),
            bbox=BoundingBox.from_dict(data),
            confidence=float(data.get("confidence", 0.0)),
            line_ids=[str(i) for i in data.get("line_ids", [])],
        )


@dataclass
class PageRecognitionResult:
    """
    Recognition output for one page image.

    Replaced wholesale on re-recognition; never merged incrementally.
    """
    raw_text: str = ""
    words: List[RecognizedWord] = field(default_factory=list)
    lines: List[RecognizedLine] = field(default_factory=list)
    blocks: List[RecognizedBlock] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.blocks

    @property
    def confidence(self) -> float:
        if not self.blocks:
            return 0.0
        return sum(b.confidence for b in self.blocks) / len(self.blocks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw_text": self.raw_text,
            "words": [w.to_dict() for w in self.words],
            "lines": [l.to_dict() for l in self.lines],
            "blocks": [b.to_dict() for b in self.blocks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PageRecognitionResult':
        return cls(
            raw_text=data.get("raw_text", ""),
            words=[RecognizedWord.from_dict(w) for w in data.get("words", [])],
            lines=[RecognizedLine.from_dict(l) for l in data.get("lines", [])],
            blocks=[RecognizedBlock.from_dict(b) for b in data.get("blocks", [])],
        )


# ============================================================================
# Page Tree
# ============================================================================

@dataclass
class WordNode:
    id: str
    text: str
    bbox: BoundingBox

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, **self.bbox.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WordNode':
        return cls(str(data["id"]), data.get("text", ""), BoundingBox.from_dict(data))


@dataclass
class LineNode:
    id: str
    text: str
    block_id: str
    bbox: BoundingBox
    words: List[WordNode] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "block_id": self.block_id,
            **self.bbox.to_dict(),
            "words": [w.to_dict() for w in self.words],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LineNode':
        return cls(
            id=str(data["id"]),
            text=data.get("text", ""),
            block_id=str(data.get("block_id", "")),
            bbox=BoundingBox.from_dict(data),
            words=[WordNode.from_dict(w) for w in data.get("words", [])],
        )


@dataclass
class BlockNode:
    id: str
    text: str
    bbox: BoundingBox
    lines: List[LineNode] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            **self.bbox.to_dict(),
            "lines": [l.to_dict() for l in self.lines],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BlockNode':
        return cls(
            id=str(data["id"]),
            text=data.get("text", ""),
            bbox=BoundingBox.from_dict(data),
            lines=[LineNode.from_dict(l) for l in data.get("lines", [])],
        )


@dataclass
class ColumnNode:
    """A left-to-right horizontal band of blocks."""
    id: str
    x0: float
    x1: float
    blocks: List[BlockNode] = field(default_factory=list)

    @property
    def x_range(self) -> Tuple[float, float]:
        return (self.x0, self.x1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "x0": self.x0,
            "x1": self.x1,
            "blocks": [b.to_dict() for b in self.blocks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ColumnNode':
        return cls(
            id=str(data["id"]),
            x0=data.get("x0", 0),
            x1=data.get("x1", 0),
            blocks=[BlockNode.from_dict(b) for b in data.get("blocks", [])],
        )


PAGE_SOURCE_RECOGNITION = "recognition"
PAGE_SOURCE_EDITED = "edited"


@dataclass
class PageNode:
    id: str
    columns: List[ColumnNode] = field(default_factory=list)
    source: str = PAGE_SOURCE_RECOGNITION

    @property
    def blocks(self) -> List[BlockNode]:
        """All blocks in column order."""
        return [block for column in self.columns for block in column.blocks]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "columns": [c.to_dict() for c in self.columns],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PageNode':
        return cls(
            id=str(data["id"]),
            columns=[ColumnNode.from_dict(c) for c in data.get("columns", [])],
            source=data.get("source", PAGE_SOURCE_RECOGNITION),
        )
