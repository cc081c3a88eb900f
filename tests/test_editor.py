"""
Tests for the editable document model.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def two_block_result():
    """Two stacked paragraphs in one column."""
    from scanflow.utils.models import BoundingBox
    from scanflow.utils.recognition import RawRecognition, RawWord, build_page_result

    def word(text, x0, y0, line, block):
        return RawWord(text, BoundingBox(x0, y0, x0 + 40, y0 + 12), 0.9, line, block)

    return build_page_result(RawRecognition(words=[
        word("First", 10, 10, "L1", "B1"),
        word("paragraph", 55, 10, "L1", "B1"),
        word("Second", 10, 80, "L2", "B2"),
        word("one", 55, 80, "L2", "B2"),
    ]))


@pytest.fixture
def session(two_block_result):
    from scanflow.utils.editor import EditSession
    return EditSession.from_result("page-1", two_block_result)


class TestEditablePage:
    """Test building the editable tree."""

    def test_single_column(self, session):
        page = session.present

        assert len(page.columns) == 1
        assert page.columns[0].id == "page-1-col-1"
        assert [b.text for b in page.blocks] == ["First paragraph", "Second one"]

    def test_fallback_for_empty_result(self):
        from scanflow.utils.editor import EditSession, FALLBACK_BLOCK_ID
        from scanflow.utils.models import PageRecognitionResult

        session = EditSession.from_result("p", PageRecognitionResult())

        assert [b.id for b in session.blocks] == [FALLBACK_BLOCK_ID]
        assert session.blocks[0].text == "No text was recognized on this page."

    def test_fallback_for_missing_result(self):
        from scanflow.utils.editor import EditSession

        session = EditSession.from_result("p", None)
        assert len(session.blocks) == 1

    def test_derive_lines(self):
        from scanflow.utils.editor import derive_lines
        from scanflow.utils.models import BlockNode, BoundingBox

        block = BlockNode("b", "", BoundingBox(0, 100, 50, 140))
        lines = derive_lines(block, "one two\n\nthree")

        assert [l.text for l in lines] == ["one two", "three"]
        assert [l.id for l in lines] == ["b-line-0", "b-line-1"]
        assert lines[1].bbox.to_tuple() == (0, 112, 50, 122)
        assert lines[0].words[1].id == "b-line-0-w1"
        assert lines[0].words[1].bbox.to_tuple() == block.bbox.to_tuple()


class TestEdits:
    """Test block edits."""

    def test_update_block_text(self, session):
        block_id = session.blocks[0].id

        assert session.update_block_text(block_id, "Edited\ntext")
        assert session.block_text(block_id) == "Edited\ntext"
        assert [l.text for l in session.blocks[0].lines] == ["Edited", "text"]
        assert session.can_undo

    def test_unknown_block_is_noop(self, session):
        assert not session.update_block_text("nope", "x")
        assert not session.merge_with_next("nope")
        assert not session.split_block("nope")
        assert not session.reorder_block("nope", session.blocks[0].id)
        assert not session.can_undo

    def test_merge_last_block_is_noop(self, session):
        assert not session.merge_with_next(session.blocks[-1].id)

    def test_merge_with_next(self, session):
        first, second = session.blocks

        assert session.merge_with_next(first.id)

        merged = session.blocks
        assert len(merged) == 1
        assert merged[0].id not in (first.id, second.id)
        assert merged[0].text == "First paragraph\n\nSecond one"
        assert merged[0].bbox.to_tuple() == first.bbox.union(second.bbox).to_tuple()
        assert len(merged[0].lines) == 2

    def test_merge_then_split_recovers_text(self, session):
        before = "".join(b.text for b in session.blocks)

        session.merge_with_next(session.blocks[0].id)
        assert session.split_block(session.blocks[0].id)

        after = session.blocks
        assert len(after) == 2
        assert "".join(b.text for b in after) == before

    def test_split_single_paragraph_is_noop(self, session):
        assert not session.split_block(session.blocks[0].id)
        assert not session.can_undo

    def test_split_offsets(self, session):
        block_id = session.blocks[0].id
        session.update_block_text(block_id, "a\n\n\n\nb\n\nc")
        y0 = session.blocks[0].bbox.y0

        session.split_block(block_id)

        parts = session.blocks[:3]
        assert [p.text for p in parts] == ["a", "b", "c"]
        assert [p.bbox.y0 - y0 for p in parts] == [0, 14, 28]
        assert all(p.id.startswith(f"{block_id}-part-") for p in parts)

    def test_replace_all(self, session):
        assert session.replace_all("e", "E")
        assert [b.text for b in session.blocks] == ["First paragraph", "SEcond onE"]

    def test_replace_all_empty_search_is_noop(self, session):
        assert not session.replace_all("", "x")
        assert not session.can_undo

    def test_reorder_block(self, session):
        first, second = [b.id for b in session.blocks]

        assert session.reorder_block(second, first)
        assert [b.id for b in session.blocks] == [second, first]

    def test_reorder_onto_itself_is_noop(self, session):
        block_id = session.blocks[0].id
        assert not session.reorder_block(block_id, block_id)

    def test_edit_marks_page_edited(self, session):
        from scanflow.utils.models import PAGE_SOURCE_EDITED

        session.replace_all("First", "1st")
        assert session.present.source == PAGE_SOURCE_EDITED


class TestHistory:
    """Test undo/redo."""

    def test_undo_all_restores_original(self, session):
        original = session.present.to_dict()
        ids = [b.id for b in session.blocks]

        session.update_block_text(ids[0], "changed")
        session.replace_all("one", "two")
        session.merge_with_next(ids[0])

        for _ in range(3):
            assert session.undo()

        assert session.present.to_dict() == original
        assert not session.undo()

    def test_undo_then_redo(self, session):
        session.replace_all("First", "1st")
        edited = session.present.to_dict()

        session.undo()
        assert session.redo()
        assert session.present.to_dict() == edited
        assert not session.redo()

    def test_new_edit_clears_redo(self, session):
        session.replace_all("First", "1st")
        session.undo()
        session.replace_all("Second", "2nd")

        assert not session.can_redo

    def test_undo_does_not_alias(self, session):
        """Mutating after undo never leaks into the undone state."""
        session.replace_all("First", "1st")
        session.undo()
        session.blocks[0].text = "scribble"

        session.redo()
        assert session.blocks[0].text == "1st paragraph"

    def test_payload_round_trip(self, session):
        from scanflow.utils.editor import HistoryState

        session.replace_all("First", "1st")
        session.undo()
        payload = session.history.to_payload()
        restored = HistoryState.from_payload(payload)

        assert restored.to_payload() == payload
        assert len(restored.past) == 0
        assert len(restored.future) == 1

    def test_bare_page_payload(self, session):
        from scanflow.utils.editor import HistoryState

        restored = HistoryState.from_payload(session.present.to_dict())

        assert restored.present.to_dict() == session.present.to_dict()
        assert restored.past == [] and restored.future == []

    def test_hydrate_resets(self, session, two_block_result):
        session.replace_all("First", "1st")
        session.hydrate(two_block_result)

        assert not session.can_undo
        assert session.blocks[0].text == "First paragraph"


class TestDocumentEditor:
    """Test per-page sessions and persistence."""

    def test_edits_reach_store(self, two_block_result):
        from scanflow.utils.editor import DocumentEditor
        from scanflow.utils.history_store import MemoryHistoryStore

        store = MemoryHistoryStore()
        editor = DocumentEditor(store=store, debounce=False)
        editor.session("p1", two_block_result).replace_all("First", "1st")

        saved = store.load_history("p1")
        assert saved["present"]["columns"][0]["blocks"][0]["text"] == "1st paragraph"
        assert len(saved["past"]) == 1

    def test_resumes_saved_history(self, two_block_result):
        from scanflow.utils.editor import DocumentEditor
        from scanflow.utils.history_store import MemoryHistoryStore

        store = MemoryHistoryStore()
        with DocumentEditor(store=store) as editor:
            editor.session("p1", two_block_result).replace_all("First", "1st")

        resumed = DocumentEditor(store=store).session("p1", two_block_result)
        assert resumed.blocks[0].text == "1st paragraph"
        assert resumed.undo()
        assert resumed.blocks[0].text == "First paragraph"

    def test_unreadable_history_is_discarded(self, two_block_result):
        from scanflow.utils.editor import DocumentEditor
        from scanflow.utils.history_store import MemoryHistoryStore

        store = MemoryHistoryStore()
        store.save_history("p1", {"present": {"columns": []}})

        session = DocumentEditor(store=store).session("p1", two_block_result)
        assert session.blocks[0].text == "First paragraph"

    def test_same_session_returned(self, two_block_result):
        from scanflow.utils.editor import DocumentEditor

        editor = DocumentEditor()
        assert editor.session("p1", two_block_result) is editor.session("p1")
        assert editor.has_session("p1")
        assert set(editor.edited_pages()) == {"p1"}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
