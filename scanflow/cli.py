#!/usr/bin/env python
"""
Command-line interface for the scanflow pipeline.

Usage:
    scanflow --input <pdf_image_or_folder> --output <output_dir> [options]

Examples:
    # Scan a folder of photos into a searchable PDF
    scanflow --input ./photos --output ./out --format pdf

    # Everything, with thread workers and a fixed pool size
    scanflow --input notes.pdf --output ./out --format all --backend thread --workers 2

    # Fix a recurring misread before exporting
    scanflow --input ./photos --output ./out --replace "teh" "the"
"""

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Tuple

from .config import get_config, config_summary

logger = logging.getLogger("scanflow")


def setup_argparser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        description="scanflow - Turn photographed pages into clean, searchable documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Export every format:
    scanflow --input ./photos --output ./out --format all

  Image-only PDF (no text recognition):
    scanflow --input ./photos --output ./out --format pdf --pdf-mode image

  Keep edit history between runs:
    scanflow --input ./photos --output ./out --history-dir ./history --replace colour color
        """
    )

    # Required arguments
    parser.add_argument(
        "--input", "-i",
        required=True,
        help="Input PDF, image file or folder of images"
    )

    parser.add_argument(
        "--output", "-o",
        required=True,
        help="Output directory for generated files"
    )

    # Optional arguments
    parser.add_argument(
        "--format", "-f",
        nargs="+",
        default=["txt", "pdf"],
        choices=["txt", "html", "docx", "pdf", "all"],
        help="Output format(s) (default: txt pdf)"
    )

    parser.add_argument(
        "--pdf-mode",
        choices=["image", "searchable-fast", "searchable-hq"],
        default=None,
        help="PDF export mode (default: searchable-hq)"
    )

    parser.add_argument(
        "--quality",
        choices=["low", "medium", "high"],
        default=None,
        help="PDF image quality preset (default: medium)"
    )

    parser.add_argument(
        "--language", "-l",
        default=None,
        help="Tesseract language code, e.g. 'eng' or 'eng+deu' (default: eng)"
    )

    parser.add_argument(
        "--backend",
        choices=["process", "thread"],
        default=None,
        help="Recognition worker backend (default: process)"
    )

    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of recognition workers (default: derived from the device)"
    )

    parser.add_argument(
        "--dpi",
        type=int,
        default=200,
        help="DPI for PDF to image conversion (default: 200)"
    )

    parser.add_argument(
        "--pages",
        type=str,
        default=None,
        help="Page range to process, e.g., '1-5' or '1,3,5' (default: all)"
    )

    parser.add_argument(
        "--history-dir",
        default=None,
        help="Directory for per-page edit history (resumed on the next run)"
    )

    parser.add_argument(
        "--replace",
        nargs=2,
        action="append",
        metavar=("FIND", "REPLACE"),
        default=None,
        help="Replace text on every page before export (repeatable)"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (outputs detected page outlines)"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output"
    )

    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress non-error output"
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 1.0.0"
    )

    return parser


def parse_page_range(page_str: str, max_pages: int) -> List[int]:
    """Parse page range string to list of page numbers."""
    pages = []

    for part in page_str.split(","):
        part = part.strip()
        if "-" in part:
            start, end = part.split("-")
            start = max(int(start), 1)
            end = min(int(end), max_pages)
            pages.extend(range(start, end + 1))
        else:
            page = int(part)
            if 1 <= page <= max_pages:
                pages.append(page)

    return sorted(set(pages))


def check_dependencies(needs_text: bool) -> bool:
    """Check that the external tools for this run are available."""
    missing = []

    try:
        import pytesseract
        try:
            pytesseract.get_tesseract_version()
        except Exception:
            missing.append("tesseract-ocr (system package)")
    except ImportError:
        missing.append("pytesseract")

    if missing and needs_text:
        logger.error("Missing required dependencies:")
        for dep in missing:
            logger.error(f"  - {dep}")
        return False

    if missing:
        logger.warning("Text recognition is unavailable; only image output will work")
    return True


def load_input(input_path: Path, dpi: int) -> List[Tuple[str, bytes]]:
    """Load the input as (name, encoded bytes) pages."""
    from .utils.io import load_pdf, load_image_bytes, load_images_from_folder, detect_input_type

    input_type = detect_input_type(input_path)
    logger.info(f"Input type detected: {input_type}")

    if input_type == "pdf":
        return [
            (f"{input_path.stem}-{i:04d}.png", data)
            for i, data in enumerate(load_pdf(input_path, dpi=dpi), 1)
        ]
    if input_type == "image":
        return [(input_path.name, load_image_bytes(input_path))]
    if input_type == "image_folder":
        return load_images_from_folder(input_path)

    raise ValueError(f"Unsupported input: {input_path}")


def apply_args(config, args) -> None:
    """Copy command-line overrides onto the configuration."""
    if args.pdf_mode:
        config.export.pdf_mode = args.pdf_mode
    if args.quality:
        config.export.quality = args.quality
    if args.language:
        config.recognition.language = args.language
    if args.backend:
        config.recognition.backend = args.backend
    if args.workers:
        config.recognition.worker_count = args.workers
    if args.debug:
        config.debug_mode = True


def run_pipeline(args) -> int:
    """Run the scan pipeline."""
    from .utils.io import save_json, ensure_dir
    from .utils.pipeline import ScanPipeline

    start_time = time.time()

    config = get_config()
    apply_args(config, args)
    config.export.base_name = Path(args.input).stem or config.export.base_name
    logger.debug(f"Configuration: {config_summary(config)}")

    formats = args.format
    needs_text = (
        any(f in formats for f in ("txt", "html", "docx", "all"))
        or ("pdf" in formats and config.export.pdf_mode != "image")
        or bool(args.replace)
    )
    if not check_dependencies(needs_text):
        return 1

    output_dir = ensure_dir(args.output)
    input_path = Path(args.input)

    try:
        images = load_input(input_path, args.dpi)
    except (ValueError, FileNotFoundError, RuntimeError) as e:
        logger.error(str(e))
        return 1

    if not images:
        logger.error("No images to process")
        return 1

    if args.pages:
        page_numbers = parse_page_range(args.pages, len(images))
        images = [images[i - 1] for i in page_numbers]
        logger.info(f"Processing pages: {page_numbers}")

    logger.info(f"Loaded {len(images)} page(s)")

    def report(payload):
        logger.info(
            f"Recognition {payload.overall_progress:.0%} "
            f"({payload.completed_pages}/{payload.total_pages} pages)"
        )

    pipeline = ScanPipeline(
        config=config,
        output_dir=output_dir,
        history_dir=args.history_dir,
        on_progress=report if args.verbose else None,
    )

    try:
        result = pipeline.process(
            images,
            source_file=str(input_path),
            formats=formats,
            replacements=[tuple(pair) for pair in args.replace or []],
        )
    except Exception as e:
        logger.error(f"Processing failed: {e}")
        if args.debug:
            raise
        return 1

    manifest_path = save_json(result.to_dict(), output_dir / f"{config.export.base_name}.json")
    logger.info(f"Saved manifest: {manifest_path}")

    for fmt, path in result.outputs.items():
        logger.info(f"Exported {fmt}: {path}")

    elapsed = time.time() - start_time
    metrics = result.metrics

    if not args.quiet:
        print("\n" + "=" * 60)
        print("SCAN COMPLETE")
        print("=" * 60)
        print(f"Source: {input_path}")
        print(f"Output: {output_dir}")
        print(f"Pages: {metrics.pages_total}")
        print(f"Processing time: {elapsed:.2f}s")
        print()
        print("Metrics:")
        print(f"  Rectified: {metrics.pages_rectified} "
              f"(need manual adjustment: {metrics.pages_needing_adjustment})")
        print(f"  Recognized: {metrics.pages_recognized} "
              f"({metrics.words_total} words, mean confidence {metrics.mean_confidence:.2%})")
        print(f"  Edited: {metrics.pages_edited}")
        print("=" * 60)

    return 0


def main():
    """Main entry point."""
    parser = setup_argparser()
    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger().setLevel(logging.ERROR)

    try:
        exit_code = run_pipeline(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if args.debug:
            raise
        sys.exit(1)


if __name__ == "__main__":
    main()
