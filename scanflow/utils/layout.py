"""
Reading-order reconstruction for recognized pages.

Provides:
- Column detection from block spans (merge gap of 18 units)
- Canonical line and block text from word geometry
- Linearized (top-to-bottom, left-to-right) traversal for flat export

Everything here is a pure function of its input: identical boxes always
produce identical columns and order.
"""

import logging
from typing import List, Optional, Dict

from ..config import LayoutConfig
from .models import (
    PageRecognitionResult,
    WordNode,
    LineNode,
    BlockNode,
    ColumnNode,
    PageNode,
    PAGE_SOURCE_EDITED,
)

logger = logging.getLogger(__name__)


def normalize_space(text: str) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return " ".join(text.split())


# ============================================================================
# Tree Construction
# ============================================================================

def _build_lines(result: PageRecognitionResult) -> Dict[str, List[LineNode]]:
    """Line nodes grouped by block id, with words sorted left to right."""
    words_by_line: Dict[str, List[WordNode]] = {}

    # Stable sort keeps engine order for words starting at the same x
    indexed = sorted(enumerate(result.words), key=lambda item: item[1].bbox.x0)
    for index, word in indexed:
        words_by_line.setdefault(word.line_id, []).append(
            WordNode(id=f"word-{index}", text=word.text, bbox=word.bbox.copy())
        )

    lines_by_block: Dict[str, List[LineNode]] = {}
    for line in result.lines:
        words = words_by_line.get(line.id, [])
        if words:
            text = normalize_space(" ".join(w.text for w in words))
        else:
            text = normalize_space(line.text)

        lines_by_block.setdefault(line.block_id, []).append(LineNode(
            id=line.id,
            text=text,
            block_id=line.block_id,
            bbox=line.bbox.copy(),
            words=words,
        ))

    return lines_by_block


def _build_blocks(result: PageRecognitionResult) -> List[BlockNode]:
    lines_by_block = _build_lines(result)
    blocks = []

    for block in result.blocks:
        lines = sorted(
            lines_by_block.get(block.id, []),
            key=lambda l: (l.bbox.y0, l.bbox.x0)
        )
        if lines:
            text = "\n".join(l.text for l in lines)
        else:
            text = "\n".join(normalize_space(part) for part in block.text.split("\n"))

        blocks.append(BlockNode(id=block.id, text=text, bbox=block.bbox.copy(), lines=lines))

    return blocks


def assign_columns(
    blocks: List[BlockNode],
    page_id: str,
    gap_threshold: float = 18
) -> List[ColumnNode]:
    """
    Group blocks into columns by horizontal span.

    Blocks are visited by (x0, y0). A block joins the first column, in
    creation order, whose span overlaps its own by at least
    ``-gap_threshold``; the column then widens to cover it. Otherwise the
    block starts a new column.

    Args:
        blocks: Blocks in any order
        page_id: Used to name columns ``{page_id}-col-{n}``
        gap_threshold: Largest horizontal gap still treated as one column

    Returns:
        Columns sorted by x0, blocks inside each sorted by y0
    """
    columns: List[ColumnNode] = []

    for block in sorted(blocks, key=lambda b: (b.bbox.x0, b.bbox.y0)):
        b = block.bbox
        for column in columns:
            overlap = min(column.x1, b.x1) - max(column.x0, b.x0)
            if overlap >= -gap_threshold:
                column.blocks.append(block)
                column.x0 = min(column.x0, b.x0)
                column.x1 = max(column.x1, b.x1)
                break
        else:
            columns.append(ColumnNode(
                id=f"{page_id}-col-{len(columns) + 1}",
                x0=b.x0,
                x1=b.x1,
                blocks=[block],
            ))

    columns.sort(key=lambda c: c.x0)
    for column in columns:
        column.blocks.sort(key=lambda blk: blk.bbox.y0)

    return columns


def reconstruct_page(
    result: PageRecognitionResult,
    page_id: str,
    config: Optional[LayoutConfig] = None
) -> PageNode:
    """
    Rebuild columns, blocks, lines and words in reading order.

    Args:
        result: Recognition output for the page
        page_id: Page identifier used for column ids
        config: Layout configuration (gap threshold, empty-page column span)

    Returns:
        PageNode; a page without blocks has one empty column
    """
    config = config or LayoutConfig()
    blocks = _build_blocks(result)

    if not blocks:
        x0, x1 = config.empty_column_range
        return PageNode(id=page_id, columns=[ColumnNode(f"{page_id}-col-1", x0, x1, [])])

    columns = assign_columns(blocks, page_id, config.column_gap_threshold)
    logger.debug(f"Page {page_id}: {len(blocks)} blocks in {len(columns)} columns")
    return PageNode(id=page_id, columns=columns)


# ============================================================================
# Traversal
# ============================================================================

def linearize(page: PageNode) -> List[BlockNode]:
    """All blocks sorted by (y0, x0), ignoring columns."""
    return sorted(page.blocks, key=lambda b: (b.bbox.y0, b.bbox.x0))


def reading_order_blocks(page: PageNode) -> List[BlockNode]:
    """
    Blocks in the order exporters should emit them.

    Edited pages keep the user's block order; recognized pages are
    linearized.
    """
    if page.source == PAGE_SOURCE_EDITED:
        return list(page.blocks)
    return linearize(page)


def block_lines(block: BlockNode) -> List[str]:
    """Non-empty line texts of a block."""
    if block.lines:
        texts = [line.text for line in block.lines]
    else:
        texts = block.text.split("\n")
    return [t for t in texts if t.strip()]


def flatten_text(page: PageNode) -> str:
    """Plain text of a page: one line per text line, in reading order."""
    lines = []
    for block in reading_order_blocks(page):
        lines.extend(block_lines(block))
    return "\n".join(lines)
