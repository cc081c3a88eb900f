"""
Tests for document export.
"""

import sys
from pathlib import Path

import pytest
import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def page_image():
    """A white page with one dark bar, encoded as JPEG."""
    import cv2

    img = np.full((400, 300, 3), 255, dtype=np.uint8)
    cv2.rectangle(img, (20, 20), (200, 40), (0, 0, 0), thickness=-1)
    ok, encoded = cv2.imencode(".jpg", img)
    assert ok
    return encoded.tobytes()


@pytest.fixture
def export_pages(page_image):
    """Two pages: a two-column recognized page and a blank one."""
    from scanflow.utils.export import ExportPage
    from scanflow.utils.layout import reconstruct_page
    from scanflow.utils.models import BoundingBox, PageRecognitionResult
    from scanflow.utils.recognition import RawRecognition, RawWord, build_page_result

    def word(text, x0, line, block):
        return RawWord(text, BoundingBox(x0, 20, x0 + 40, 40), 0.9, line, block)

    ocr = build_page_result(RawRecognition(words=[
        word("Hello", 10, "L1", "B1"),
        word("World", 55, "L1", "B1"),
        word("Tom&Jerry", 200, "L2", "B2"),
    ]))
    return [
        ExportPage(page=reconstruct_page(ocr, "p1"), image=page_image, ocr=ocr),
        ExportPage(page=reconstruct_page(PageRecognitionResult(), "p2"), image=page_image, ocr=None),
    ]


class TestTextExporter:
    """Test plain text export."""

    def test_render(self, export_pages):
        from scanflow.utils.export import TextExporter

        text = TextExporter().render(export_pages)

        assert text == "Page 1\nHello World\nTom&Jerry\n\nPage 2"

    def test_export_writes_utf8(self, export_pages, tmp_path):
        from scanflow.utils.export import TextExporter

        path = TextExporter().export(export_pages, tmp_path / "out.txt")
        assert path.read_text(encoding="utf-8").startswith("Page 1")


class TestHtmlExporter:
    """Test HTML export."""

    def test_columns_and_escaping(self, export_pages):
        from scanflow.utils.export import HtmlExporter

        html = HtmlExporter(title="Scan <1>").render(export_pages)

        assert "<title>Scan &lt;1&gt;</title>" in html
        assert html.count('class="ocr-page"') == 2
        assert html.count('class="ocr-column"') == 3
        assert "<p>Hello World</p>" in html
        assert "Tom&amp;Jerry" in html
        assert "<h2>Page 2</h2>" in html

    def test_multiline_block_uses_breaks(self):
        from scanflow.utils.export import HtmlExporter, ExportPage
        from scanflow.utils.models import PageNode, ColumnNode, BlockNode, BoundingBox

        block = BlockNode("b", "one\ntwo", BoundingBox(0, 0, 10, 10))
        page = PageNode("p", columns=[ColumnNode("c", 0, 10, [block])])

        assert "<p>one<br />two</p>" in HtmlExporter().render([ExportPage(page=page)])


class TestDocxExporter:
    """Test DOCX export."""

    def test_section_per_page(self, export_pages):
        from docx.oxml.ns import qn
        from scanflow.utils.export import DocxExporter

        doc = DocxExporter().build(export_pages)

        assert len(doc.sections) == 2
        cols = doc.sections[0]._sectPr.find(qn('w:cols'))
        assert cols.get(qn('w:num')) == "2"
        texts = [p.text for p in doc.paragraphs]
        assert texts[:4] == ["Page 1", "Hello World", "", "Tom&Jerry"]
        assert "Page 2" in texts

    def test_export(self, export_pages, tmp_path):
        from scanflow.utils.export import DocxExporter

        path = DocxExporter().export(export_pages, tmp_path / "out.docx")
        assert path.exists()
        assert path.stat().st_size > 0


class TestPdfExporter:
    """Test PDF export."""

    @pytest.mark.parametrize("mode", ["image", "searchable-fast", "searchable-hq"])
    def test_render_modes(self, export_pages, mode):
        from scanflow.utils.export import PdfExporter

        data = PdfExporter(mode=mode, quality="low").render(export_pages)

        assert data.startswith(b"%PDF")

    def test_page_without_image(self, export_pages):
        from scanflow.utils.export import PdfExporter, ExportPage

        pages = export_pages + [ExportPage(page=export_pages[1].page, image=None)]
        assert PdfExporter().render(pages).startswith(b"%PDF")

    def test_unknown_mode(self):
        from scanflow.utils.export import PdfExporter

        with pytest.raises(ValueError):
            PdfExporter(mode="ocr-everything")

    def test_unknown_quality(self):
        from scanflow.utils.export import PdfExporter

        with pytest.raises(ValueError):
            PdfExporter(quality="ultra")

    def test_compress_image_never_upscales(self, page_image):
        from scanflow.config import QualityPreset
        from scanflow.utils.export import compress_image
        from scanflow.utils.geometry import decode_image

        preset = QualityPreset(max_image_long_edge=2000, jpeg_quality=70, render_scale=1.08)
        assert decode_image(compress_image(page_image, preset)).shape[:2] == (400, 300)

    def test_compress_image_caps_long_edge(self, page_image):
        from scanflow.config import QualityPreset
        from scanflow.utils.export import compress_image
        from scanflow.utils.geometry import decode_image

        preset = QualityPreset(max_image_long_edge=200, jpeg_quality=70, render_scale=1.0)
        assert decode_image(compress_image(page_image, preset)).shape[:2] == (200, 150)


class TestDocumentExporter:
    """Test multi-format export."""

    def test_all_formats(self, export_pages, tmp_path):
        from scanflow.utils.export import DocumentExporter

        outputs = DocumentExporter(tmp_path, base_name="scan").export(export_pages, ["all"])

        assert set(outputs) == {"txt", "html", "docx", "pdf"}
        for fmt, path in outputs.items():
            assert path == tmp_path / f"scan.{fmt}"
            assert path.exists()

    def test_unknown_format(self, export_pages, tmp_path):
        from scanflow.utils.export import DocumentExporter

        with pytest.raises(ValueError):
            DocumentExporter(tmp_path).export(export_pages, ["markdown"])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
