"""
Export module for scanned documents.

Provides:
- Plain text export (linearized reading order)
- HTML export (one column container per detected column)
- DOCX export (using python-docx, section columns per page)
- PDF export (using fpdf2: page images with optional invisible text layer)
"""

import html
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, List, Union

from ..config import ExportConfig, QualityPreset
from .layout import reading_order_blocks, block_lines
from .models import PageNode, PageRecognitionResult

logger = logging.getLogger(__name__)

PDF_MODES = ("image", "searchable-fast", "searchable-hq")
EXPORT_FORMATS = ("txt", "html", "docx", "pdf")


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ExportPage:
    """Everything the exporters need for one page."""
    page: PageNode
    image: Optional[bytes] = None
    ocr: Optional[PageRecognitionResult] = None


def _block_text(block) -> str:
    return "\n".join(block_lines(block)) or block.text


# ============================================================================
# Text Exporter
# ============================================================================

class TextExporter:
    """Export pages as plain text, one ``Page n`` section per page."""

    def render(self, pages: List[ExportPage]) -> str:
        sections = []
        for index, item in enumerate(pages):
            lines = []
            for block in reading_order_blocks(item.page):
                lines.extend(block_lines(block))
            sections.append(f"Page {index + 1}\n" + "\n".join(lines))
        return "\n\n".join(s.strip() for s in sections).strip()

    def export(self, pages: List[ExportPage], output_path: Union[str, Path]) -> Path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(self.render(pages), encoding="utf-8")
        logger.info(f"Exported text to: {output_path}")
        return output_path


# ============================================================================
# HTML Exporter
# ============================================================================

HTML_TEMPLATE = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>{title}</title>
    <style>
      body {{ font-family: Arial, sans-serif; margin: 24px; color: #111; }}
      .ocr-page {{ margin-bottom: 24px; }}
      .ocr-columns {{ display: grid; gap: 16px; align-items: start; }}
      .ocr-column {{ border-left: 3px solid #d9d9d9; padding-left: 12px; }}
      p {{ margin: 0 0 12px; line-height: 1.45; }}
      @media (min-width: 768px) {{
        .ocr-columns {{ grid-template-columns: repeat(auto-fit, minmax(220px, 1fr)); }}
      }}
    </style>
  </head>
  <body>
{sections}
  </body>
</html>
"""


class HtmlExporter:
    """Export pages as a standalone HTML document."""

    def __init__(self, title: str = "scanflow-document"):
        self.title = title

    def render(self, pages: List[ExportPage]) -> str:
        sections = []
        for index, item in enumerate(pages):
            columns = []
            for column in item.page.columns:
                paragraphs = [
                    "<p>" + "<br />".join(html.escape(line) for line in block_lines(block)) + "</p>"
                    for block in column.blocks
                ]
                columns.append('<div class="ocr-column">' + "\n".join(paragraphs) + "</div>")

            sections.append(
                f'    <section class="ocr-page"><h2>Page {index + 1}</h2>'
                f'<div class="ocr-columns">{"".join(columns)}</div></section>'
            )

        return HTML_TEMPLATE.format(title=html.escape(self.title), sections="\n".join(sections))

    def export(self, pages: List[ExportPage], output_path: Union[str, Path]) -> Path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(self.render(pages), encoding="utf-8")
        logger.info(f"Exported HTML to: {output_path}")
        return output_path


# ============================================================================
# DOCX Exporter
# ============================================================================

class DocxExporter:
    """Export document to DOCX format using python-docx."""

    COLUMN_SPACE_TWIPS = 708

    def __init__(self, template_path: Optional[str] = None):
        self.template_path = template_path

    def build(self, pages: List[ExportPage]):
        """Build the python-docx Document (one section per page)."""
        from docx import Document as DocxDocument
        from docx.enum.section import WD_SECTION

        if self.template_path and Path(self.template_path).exists():
            doc = DocxDocument(self.template_path)
        else:
            doc = DocxDocument()

        for index, item in enumerate(pages):
            if index > 0:
                doc.add_section(WD_SECTION.NEW_PAGE)
            columns = item.page.columns
            self._set_columns(doc.sections[-1], max(len(columns), 1))

            doc.add_paragraph(f"Page {index + 1}")
            for column_index, column in enumerate(columns):
                for block in column.blocks:
                    doc.add_paragraph(_block_text(block))
                if column_index < len(columns) - 1:
                    doc.add_paragraph("")

        return doc

    def _set_columns(self, section, count: int) -> None:
        from docx.oxml import OxmlElement
        from docx.oxml.ns import qn

        sect_pr = section._sectPr
        cols = sect_pr.find(qn('w:cols'))
        if cols is None:
            cols = OxmlElement('w:cols')
            sect_pr.append(cols)
        cols.set(qn('w:num'), str(count))
        cols.set(qn('w:space'), str(self.COLUMN_SPACE_TWIPS))

    def export(self, pages: List[ExportPage], output_path: Union[str, Path]) -> Path:
        """
        Export pages to a DOCX file.

        Args:
            pages: Pages to export
            output_path: Output file path

        Returns:
            Path to the generated DOCX file
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        doc = self.build(pages)
        doc.save(str(output_path))
        logger.info(f"Exported DOCX to: {output_path}")
        return output_path


# ============================================================================
# PDF Exporter
# ============================================================================

def compress_image(image: bytes, preset: QualityPreset) -> bytes:
    """
    Downscale and re-encode a page image for the PDF.

    The long edge is capped at the preset size, then multiplied by the render
    scale; the result never upscales.
    """
    import cv2

    from .geometry import decode_image, encode_jpeg

    decoded = decode_image(image)
    h, w = decoded.shape[:2]
    longest = max(w, h)
    base_scale = preset.max_image_long_edge / longest if longest > preset.max_image_long_edge else 1.0
    scale = min(base_scale * preset.render_scale, 1.0)

    if scale < 1.0:
        new_size = (max(1, round(w * scale)), max(1, round(h * scale)))
        decoded = cv2.resize(decoded, new_size, interpolation=cv2.INTER_AREA)

    return encode_jpeg(decoded, preset.jpeg_quality)


class PdfExporter:
    """
    Export page images to an A4 PDF, optionally searchable.

    Modes:
    - ``image``: images only
    - ``searchable-fast``: invisible text per recognized line
    - ``searchable-hq``: invisible text per recognized word

    Text boxes are mapped from source-image pixels with the same scale used to
    place the image on the page.
    """

    def __init__(
        self,
        mode: str = "searchable-hq",
        quality: str = "medium",
        config: Optional[ExportConfig] = None
    ):
        self.config = config or ExportConfig()
        if mode not in PDF_MODES:
            raise ValueError(f"Unknown PDF mode: {mode}")
        if quality not in self.config.quality_presets:
            raise ValueError(f"Unknown quality preset: {quality}")
        self.mode = mode
        self.quality = quality

    @property
    def preset(self) -> QualityPreset:
        return self.config.quality_presets[self.quality]

    def render(self, pages: List[ExportPage]) -> bytes:
        from fpdf import FPDF

        pdf = FPDF(orientation="P", unit="mm", format="A4")
        pdf.set_auto_page_break(auto=False)
        pdf.set_title(self.config.base_name)
        pdf.set_creator("scanflow")

        for index, item in enumerate(pages):
            pdf.add_page()
            if item.image is None:
                logger.warning(f"Page {index + 1} has no image; leaving it blank")
                continue
            try:
                self._add_page(pdf, item)
            except Exception as e:
                logger.warning(f"Failed to render page {index + 1} into PDF: {e}")

        return bytes(pdf.output())

    def _add_page(self, pdf, item: ExportPage) -> None:
        from .geometry import decode_image

        source_h, source_w = decode_image(item.image).shape[:2]
        compressed = compress_image(item.image, self.preset)

        image_scale = min(pdf.w / source_w, pdf.h / source_h)
        rendered_w = source_w * image_scale
        rendered_h = source_h * image_scale
        x_offset = (pdf.w - rendered_w) / 2
        y_offset = (pdf.h - rendered_h) / 2

        pdf.image(io.BytesIO(compressed), x=x_offset, y=y_offset, w=rendered_w, h=rendered_h)

        if self.mode == "image" or item.ocr is None:
            return

        if self.mode == "searchable-fast":
            entries = [(line.text, line.bbox) for line in item.ocr.lines]
        else:
            entries = [(word.text, word.bbox) for word in item.ocr.words]

        self._add_text_layer(
            pdf, entries, (source_w, source_h), (x_offset, y_offset), (rendered_w, rendered_h)
        )

    def _add_text_layer(self, pdf, entries, source_size, offset, rendered_size) -> None:
        from fpdf.enums import TextMode

        source_w, source_h = source_size
        x_offset, y_offset = offset
        rendered_w, rendered_h = rendered_size

        pdf.set_font("Helvetica", size=self.config.min_font_size)
        previous_mode = pdf.text_mode
        pdf.text_mode = TextMode.INVISIBLE

        for text, bbox in entries:
            text = (text or "").strip()
            if not text:
                continue
            # Core fonts only cover latin-1
            text = text.encode("latin-1", "replace").decode("latin-1")

            width_px = max(bbox.x1 - bbox.x0, 1)
            height_px = max(bbox.y1 - bbox.y0, 1)
            x = x_offset + (bbox.x0 / source_w) * rendered_w
            y = y_offset + (bbox.y1 / source_h) * rendered_h
            font_size = max((height_px / source_h) * rendered_h * self.config.font_scale,
                            self.config.min_font_size)
            max_width = (width_px / source_w) * rendered_w

            pdf.set_font_size(font_size)
            string_width = pdf.get_string_width(text)
            if string_width > max_width:
                pdf.set_font_size(max(font_size * max_width / string_width, 1))

            pdf.text(x, y, text)

        pdf.text_mode = previous_mode

    def export(self, pages: List[ExportPage], output_path: Union[str, Path]) -> Path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(self.render(pages))
        logger.info(f"Exported PDF ({self.mode}, {self.quality}) to: {output_path}")
        return output_path


# ============================================================================
# Multi-format Export
# ============================================================================

class DocumentExporter:
    """Convenience class for exporting to multiple formats."""

    def __init__(
        self,
        output_dir: Union[str, Path],
        base_name: Optional[str] = None,
        config: Optional[ExportConfig] = None
    ):
        self.config = config or ExportConfig()
        self.output_dir = Path(output_dir)
        self.base_name = base_name or self.config.base_name

        self.text_exporter = TextExporter()
        self.html_exporter = HtmlExporter(title=self.base_name)
        self.docx_exporter = DocxExporter()
        self.pdf_exporter = PdfExporter(
            mode=self.config.pdf_mode,
            quality=self.config.quality,
            config=self.config
        )

    def export(
        self,
        pages: List[ExportPage],
        formats: Optional[List[str]] = None
    ) -> Dict[str, Path]:
        """
        Export pages to multiple formats.

        Args:
            pages: Pages to export
            formats: Any of 'txt', 'html', 'docx', 'pdf', or 'all'

        Returns:
            Dictionary mapping format to output path
        """
        if formats is None:
            formats = ["txt"]
        if "all" in formats:
            formats = list(EXPORT_FORMATS)

        unknown = [f for f in formats if f not in EXPORT_FORMATS]
        if unknown:
            raise ValueError(f"Unknown export format(s): {', '.join(unknown)}")

        self.output_dir.mkdir(parents=True, exist_ok=True)
        exporters = {
            "txt": self.text_exporter,
            "html": self.html_exporter,
            "docx": self.docx_exporter,
            "pdf": self.pdf_exporter,
        }

        results = {}
        for fmt in EXPORT_FORMATS:
            if fmt not in formats:
                continue
            path = self.output_dir / f"{self.base_name}.{fmt}"
            results[fmt] = exporters[fmt].export(pages, path)

        return results
