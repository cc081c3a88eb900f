"""
Editable document model.

Provides:
- HistoryState: linear undo/redo over full page snapshots
- build_editable_page: single-column editable tree from a recognition result
- EditSession: block edits (text, merge, split, replace, reorder) for one page
- DocumentEditor: per-page sessions backed by an optional history store

Each edit deep-copies the present page, mutates the copy and pushes the old
page onto the undo stack. Edits that would change nothing (unknown block id,
merging the last block, splitting a single paragraph, empty search string,
reordering a block onto itself) record no history step.

Manual edits collapse word boxes to the block box; lines get synthetic
vertical offsets.
"""

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Callable, Tuple

from ..config import EditorConfig, LayoutConfig
from .history_store import DebouncedSaver
from .layout import reconstruct_page
from .models import (
    BoundingBox,
    PageRecognitionResult,
    WordNode,
    LineNode,
    BlockNode,
    ColumnNode,
    PageNode,
    PAGE_SOURCE_EDITED,
)

logger = logging.getLogger(__name__)

FALLBACK_BLOCK_ID = "fallback"

# Mutators return False to signal that nothing changed
Mutator = Callable[[PageNode], Optional[bool]]


def _uid() -> str:
    return uuid.uuid4().hex[:8]


# ============================================================================
# History
# ============================================================================

@dataclass
class HistoryState:
    """Undo stack, current page and redo stack (oldest first in ``past``)."""
    present: PageNode
    past: List[PageNode] = field(default_factory=list)
    future: List[PageNode] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "past": [p.to_dict() for p in self.past],
            "present": self.present.to_dict(),
            "future": [p.to_dict() for p in self.future],
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'HistoryState':
        """
        Restore a saved history.

        A bare page dict (present-only persistence) is accepted and yields
        empty undo/redo stacks.
        """
        if "present" not in payload:
            return cls(present=PageNode.from_dict(payload))
        return cls(
            present=PageNode.from_dict(payload["present"]),
            past=[PageNode.from_dict(p) for p in payload.get("past", [])],
            future=[PageNode.from_dict(p) for p in payload.get("future", [])],
        )


# ============================================================================
# Tree Helpers
# ============================================================================

def derive_lines(block: BlockNode, text: str, config: Optional[EditorConfig] = None) -> List[LineNode]:
    """
    Rebuild a block's lines from raw text.

    Empty lines are dropped. Line ``i`` sits at ``block.y0 + i * line_height``
    and every word box equals the block box.
    """
    config = config or EditorConfig()
    b = block.bbox
    lines = []

    for i, line_text in enumerate(t for t in text.split("\n") if t):
        line_id = f"{block.id}-line-{i}"
        y0 = b.y0 + i * config.line_height
        words = [
            WordNode(id=f"{line_id}-w{j}", text=word, bbox=b.copy())
            for j, word in enumerate(line_text.split())
        ]
        lines.append(LineNode(
            id=line_id,
            text=line_text,
            block_id=block.id,
            bbox=BoundingBox(b.x0, y0, b.x1, y0 + config.line_box_height),
            words=words,
        ))

    return lines


def find_block(page: PageNode, block_id: str) -> Tuple[Optional[ColumnNode], int]:
    """Column holding ``block_id`` and its index there, or (None, -1)."""
    for column in page.columns:
        for index, block in enumerate(column.blocks):
            if block.id == block_id:
                return column, index
    return None, -1


def fallback_page(page_id: str, config: Optional[EditorConfig] = None) -> PageNode:
    config = config or EditorConfig()
    bbox = BoundingBox(10, 10, 90, 20)
    line = LineNode(
        id=f"{FALLBACK_BLOCK_ID}-line-0",
        text=config.fallback_text,
        block_id=FALLBACK_BLOCK_ID,
        bbox=bbox.copy(),
    )
    block = BlockNode(id=FALLBACK_BLOCK_ID, text=config.fallback_text, bbox=bbox, lines=[line])
    return PageNode(
        id=page_id,
        columns=[ColumnNode(f"{page_id}-col-1", bbox.x0, bbox.x1, [block])],
        source=PAGE_SOURCE_EDITED,
    )


def build_editable_page(
    result: Optional[PageRecognitionResult],
    page_id: str,
    config: Optional[EditorConfig] = None,
    layout_config: Optional[LayoutConfig] = None
) -> PageNode:
    """
    Build the editable tree for a page.

    All reconstructed blocks go into one column ``{page_id}-col-1``, in
    column reading order. A page with no recognized text gets a single
    placeholder block.
    """
    if result is None or result.is_empty:
        return fallback_page(page_id, config)

    reconstructed = reconstruct_page(result, page_id, layout_config)
    blocks = reconstructed.blocks
    x0 = min(b.bbox.x0 for b in blocks)
    x1 = max(b.bbox.x1 for b in blocks)

    return PageNode(
        id=page_id,
        columns=[ColumnNode(f"{page_id}-col-1", x0, x1, blocks)],
        source=PAGE_SOURCE_EDITED,
    )


# ============================================================================
# Edit Session
# ============================================================================

class EditSession:
    """
    Undoable edits for one page.

    Calls are serialized by a lock, so a session may be shared between
    threads. Every state change is handed to the saver (debounced) or, when
    there is none, directly to the store.
    """

    def __init__(
        self,
        page_id: str,
        history: HistoryState,
        store=None,
        saver=None,
        config: Optional[EditorConfig] = None,
        layout_config: Optional[LayoutConfig] = None
    ):
        self.page_id = page_id
        self.store = store
        self.saver = saver
        self.config = config or EditorConfig()
        self.layout_config = layout_config
        self._history = history
        self._lock = threading.RLock()

    @classmethod
    def from_result(
        cls,
        page_id: str,
        result: Optional[PageRecognitionResult],
        **kwargs
    ) -> 'EditSession':
        config = kwargs.get("config")
        layout_config = kwargs.get("layout_config")
        page = build_editable_page(result, page_id, config, layout_config)
        return cls(page_id, HistoryState(present=page), **kwargs)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def history(self) -> HistoryState:
        return self._history

    @property
    def present(self) -> PageNode:
        return self._history.present

    @property
    def blocks(self) -> List[BlockNode]:
        return self.present.blocks

    @property
    def can_undo(self) -> bool:
        return bool(self._history.past)

    @property
    def can_redo(self) -> bool:
        return bool(self._history.future)

    def block_text(self, block_id: str) -> Optional[str]:
        column, index = find_block(self.present, block_id)
        if column is None:
            return None
        return column.blocks[index].text

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self._history.to_payload()

    def _persist(self) -> None:
        if self.saver is not None:
            self.saver.mark_dirty(self.page_id, self.snapshot)
        elif self.store is not None:
            self.store.save_history(self.page_id, self.snapshot())

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def apply(self, mutator: Mutator) -> bool:
        """
        Run ``mutator`` on a deep copy of the present page.

        The old page is pushed onto ``past`` and ``future`` is cleared. If the
        mutator returns False the copy is discarded and nothing is recorded.

        Returns:
            True if a history step was recorded
        """
        with self._lock:
            draft = copy.deepcopy(self._history.present)
            if mutator(draft) is False:
                return False
            draft.source = PAGE_SOURCE_EDITED
            self._history = HistoryState(
                present=draft,
                past=self._history.past + [self._history.present],
                future=[],
            )
        self._persist()
        return True

    def undo(self) -> bool:
        with self._lock:
            history = self._history
            if not history.past:
                return False
            self._history = HistoryState(
                present=history.past[-1],
                past=history.past[:-1],
                future=[history.present] + history.future,
            )
        self._persist()
        return True

    def redo(self) -> bool:
        with self._lock:
            history = self._history
            if not history.future:
                return False
            self._history = HistoryState(
                present=history.future[0],
                past=history.past + [history.present],
                future=history.future[1:],
            )
        self._persist()
        return True

    def hydrate(self, result: Optional[PageRecognitionResult]) -> None:
        """Reset to a fresh tree built from ``result``, discarding history."""
        page = build_editable_page(result, self.page_id, self.config, self.layout_config)
        with self._lock:
            self._history = HistoryState(present=page)
        logger.debug(f"Hydrated editor for page {self.page_id}")
        self._persist()

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def update_block_text(self, block_id: str, text: str) -> bool:
        """Replace a block's text and re-derive its lines and words."""
        def mutate(page: PageNode) -> bool:
            column, index = find_block(page, block_id)
            if column is None:
                return False
            block = column.blocks[index]
            block.text = text
            block.lines = derive_lines(block, text, self.config)
            return True

        return self.apply(mutate)

    def merge_with_next(self, block_id: str) -> bool:
        """
        Merge a block with the block after it in the same column.

        The merged block gets a new id, the texts joined by a blank line, both
        line lists and the union of both boxes.
        """
        def mutate(page: PageNode) -> bool:
            column, index = find_block(page, block_id)
            if column is None or index >= len(column.blocks) - 1:
                return False
            first, second = column.blocks[index], column.blocks[index + 1]
            merged = BlockNode(
                id=_uid(),
                # Blank-line separator so split_block undoes the merge
                text=f"{first.text}\n\n{second.text}",
                bbox=first.bbox.union(second.bbox),
                lines=first.lines + second.lines,
            )
            column.blocks[index:index + 2] = [merged]
            return True

        return self.apply(mutate)

    def split_block(self, block_id: str) -> bool:
        """Split a block at blank lines into one block per paragraph."""
        def mutate(page: PageNode) -> bool:
            column, index = find_block(page, block_id)
            if column is None:
                return False
            block = column.blocks[index]
            chunks = [part.strip() for part in block.text.split("\n\n")]
            chunks = [part for part in chunks if part]
            if len(chunks) < 2:
                return False

            offset = self.config.split_offset
            parts = []
            for i, chunk in enumerate(chunks):
                b = block.bbox
                part = BlockNode(
                    id=f"{block.id}-part-{i}-{_uid()}",
                    text=chunk,
                    bbox=BoundingBox(b.x0, b.y0 + i * offset, b.x1, b.y1 + i * offset),
                )
                part.lines = derive_lines(part, chunk, self.config)
                parts.append(part)

            column.blocks[index:index + 1] = parts
            return True

        return self.apply(mutate)

    def replace_all(self, find: str, replace_with: str) -> bool:
        """Replace every literal occurrence of ``find`` in every block."""
        if not find:
            return False

        def mutate(page: PageNode) -> bool:
            for block in page.blocks:
                block.text = block.text.replace(find, replace_with)
                block.lines = derive_lines(block, block.text, self.config)
            return True

        return self.apply(mutate)

    def reorder_block(self, dragged_id: str, target_id: str) -> bool:
        """Move a block to the target block's position in the same column."""
        if dragged_id == target_id:
            return False

        def mutate(page: PageNode) -> bool:
            column, from_index = find_block(page, dragged_id)
            target_column, to_index = find_block(page, target_id)
            if column is None or target_column is not column:
                return False
            block = column.blocks.pop(from_index)
            column.blocks.insert(to_index, block)
            return True

        return self.apply(mutate)


# ============================================================================
# Document Editor
# ============================================================================

class DocumentEditor:
    """
    Editing sessions for every page of a document.

    With a store, a saved history is resumed (undo included) when a session
    is first opened; otherwise the page is built from its recognition result.
    """

    def __init__(
        self,
        store=None,
        config: Optional[EditorConfig] = None,
        layout_config: Optional[LayoutConfig] = None,
        debounce: bool = True
    ):
        self.store = store
        self.config = config or EditorConfig()
        self.layout_config = layout_config
        self.saver = None
        if store is not None and debounce:
            self.saver = DebouncedSaver(
                store,
                delay=self.config.save_delay_seconds,
                retry_delay=self.config.save_retry_delay_seconds,
                error_delay=self.config.save_error_delay_seconds,
            )
        self._sessions: Dict[str, EditSession] = {}
        self._lock = threading.Lock()

    def _load(self, page_id: str) -> Optional[HistoryState]:
        if self.store is None:
            return None
        payload = self.store.load_history(page_id)
        if not payload:
            return None
        try:
            return HistoryState.from_payload(payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable history for page {page_id}: {e}")
            return None

    def session(
        self,
        page_id: str,
        result: Optional[PageRecognitionResult] = None
    ) -> EditSession:
        """Open (or return the already open) session for a page."""
        with self._lock:
            existing = self._sessions.get(page_id)
            if existing is not None:
                return existing

            history = self._load(page_id)
            if history is None:
                page = build_editable_page(result, page_id, self.config, self.layout_config)
                history = HistoryState(present=page)
            else:
                logger.info(f"Resumed saved history for page {page_id}")

            session = EditSession(
                page_id,
                history,
                store=self.store,
                saver=self.saver,
                config=self.config,
                layout_config=self.layout_config,
            )
            self._sessions[page_id] = session
            return session

    def has_session(self, page_id: str) -> bool:
        return page_id in self._sessions

    def edited_pages(self) -> Dict[str, PageNode]:
        """Present page of every open session."""
        return {page_id: s.present for page_id, s in self._sessions.items()}

    def flush(self) -> None:
        if self.saver is not None:
            self.saver.flush()

    def close(self) -> None:
        if self.saver is not None:
            self.saver.close()

    def __enter__(self) -> 'DocumentEditor':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
