"""
I/O utilities for the scanflow pipeline.

Handles:
- Reading photographed pages as encoded bytes
- PDF pages rendered to images (pdf2image)
- JSON serialization
- Directory management
"""

import json
import logging
from pathlib import Path
from typing import List, Union, Optional, Any, Tuple
from dataclasses import asdict

import numpy as np

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.tiff', '.tif', '.bmp', '.webp')


# ============================================================================
# PDF to Image Conversion
# ============================================================================

def load_pdf(
    pdf_path: Union[str, Path],
    dpi: int = 200,
    first_page: Optional[int] = None,
    last_page: Optional[int] = None
) -> List[bytes]:
    """
    Render PDF pages to PNG bytes using pdf2image (poppler backend).

    Args:
        pdf_path: Path to the PDF file
        dpi: Rendering resolution
        first_page: First page to convert (1-indexed, None = first)
        last_page: Last page to convert (1-indexed, None = last)

    Returns:
        One encoded PNG per page

    Raises:
        FileNotFoundError: If PDF file doesn't exist
        RuntimeError: If the PDF cannot be parsed or poppler is missing
    """
    import cv2
    from pdf2image import convert_from_path
    from pdf2image.exceptions import PDFPageCountError, PDFSyntaxError

    pdf_path = Path(pdf_path)
    if not pdf_path.exists():
        raise FileNotFoundError(f"PDF file not found: {pdf_path}")

    try:
        logger.info(f"Converting PDF to images: {pdf_path} at {dpi} DPI")
        pil_images = convert_from_path(
            pdf_path,
            dpi=dpi,
            first_page=first_page,
            last_page=last_page,
            fmt='png',
            thread_count=4
        )
    except (PDFPageCountError, PDFSyntaxError) as e:
        raise RuntimeError(f"Failed to parse PDF: {e}") from e
    except Exception as e:
        if "poppler" in str(e).lower():
            raise RuntimeError(
                "Poppler is not installed. Install with:\n"
                "  macOS: brew install poppler\n"
                "  Linux: sudo apt-get install poppler-utils"
            ) from e
        raise

    pages = []
    for pil_img in pil_images:
        img_array = np.array(pil_img.convert("RGB"))[:, :, ::-1].copy()  # RGB -> BGR
        ok, encoded = cv2.imencode(".png", img_array)
        if not ok:
            raise RuntimeError(f"Failed to encode page {len(pages) + 1} of {pdf_path}")
        pages.append(encoded.tobytes())

    logger.info(f"Converted {len(pages)} pages from PDF")
    return pages


# ============================================================================
# Image Loading
# ============================================================================

def load_image_bytes(image_path: Union[str, Path]) -> bytes:
    """
    Read an image file without decoding it.

    Raises:
        FileNotFoundError: If image file doesn't exist
    """
    image_path = Path(image_path)
    if not image_path.exists():
        raise FileNotFoundError(f"Image file not found: {image_path}")

    data = image_path.read_bytes()
    logger.debug(f"Loaded image: {image_path} ({len(data)} bytes)")
    return data


def load_images_from_folder(
    folder_path: Union[str, Path],
    extensions: tuple = IMAGE_EXTENSIONS
) -> List[Tuple[str, bytes]]:
    """
    Read all images in a folder, sorted by file name.

    Returns:
        List of (file name, encoded bytes)
    """
    folder_path = Path(folder_path)
    if not folder_path.is_dir():
        raise NotADirectoryError(f"Not a directory: {folder_path}")

    image_files = sorted(f for f in folder_path.iterdir() if f.suffix.lower() in extensions)
    logger.info(f"Found {len(image_files)} images in {folder_path}")

    images = []
    for img_path in image_files:
        try:
            images.append((img_path.name, load_image_bytes(img_path)))
        except OSError as e:
            logger.warning(f"Failed to load {img_path}: {e}")

    return images


def save_image(
    image: Union[bytes, np.ndarray],
    output_path: Union[str, Path],
    quality: int = 95
) -> Path:
    """
    Save an image to file.

    Encoded bytes are written as-is; arrays are encoded from the suffix.

    Args:
        image: Encoded bytes or numpy array
        output_path: Path to save the image
        quality: JPEG quality (1-100)

    Returns:
        Path to the saved image
    """
    import cv2

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if isinstance(image, (bytes, bytearray)):
        output_path.write_bytes(image)
    elif output_path.suffix.lower() in ('.jpg', '.jpeg'):
        cv2.imwrite(str(output_path), image, [cv2.IMWRITE_JPEG_QUALITY, quality])
    else:
        cv2.imwrite(str(output_path), image)

    logger.debug(f"Saved image: {output_path}")
    return output_path


# ============================================================================
# JSON Serialization
# ============================================================================

class EnhancedJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy values, dataclasses and paths."""

    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if hasattr(obj, 'to_dict'):
            return obj.to_dict()
        if hasattr(obj, '__dataclass_fields__'):
            return asdict(obj)
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def save_json(
    data: Any,
    output_path: Union[str, Path],
    indent: int = 2,
    ensure_ascii: bool = False
) -> Path:
    """
    Save data to a JSON file.

    Args:
        data: Data to serialize (dict, list, dataclass, etc.)
        output_path: Path to save the JSON file
        indent: Indentation level for pretty printing
        ensure_ascii: If True, escape non-ASCII characters

    Returns:
        Path to the saved file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=indent, ensure_ascii=ensure_ascii, cls=EnhancedJSONEncoder)

    logger.debug(f"Saved JSON: {output_path}")
    return output_path


def load_json(json_path: Union[str, Path]) -> Any:
    """
    Load data from a JSON file.

    Args:
        json_path: Path to the JSON file

    Returns:
        Parsed JSON data
    """
    json_path = Path(json_path)
    if not json_path.exists():
        raise FileNotFoundError(f"JSON file not found: {json_path}")

    with open(json_path, 'r', encoding='utf-8') as f:
        return json.load(f)


# ============================================================================
# Directory Management
# ============================================================================

def ensure_dir(path: Union[str, Path]) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Path to the directory

    Returns:
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


# ============================================================================
# File Type Detection
# ============================================================================

def detect_input_type(input_path: Union[str, Path]) -> str:
    """
    Detect the type of input file or directory.

    Args:
        input_path: Path to file or directory

    Returns:
        One of: 'pdf', 'image', 'image_folder', 'unknown'
    """
    input_path = Path(input_path)

    if input_path.is_dir():
        has_images = any(
            f.suffix.lower() in IMAGE_EXTENSIONS
            for f in input_path.iterdir()
        )
        return 'image_folder' if has_images else 'unknown'

    if not input_path.exists():
        return 'unknown'

    suffix = input_path.suffix.lower()
    if suffix == '.pdf':
        return 'pdf'
    elif suffix in IMAGE_EXTENSIONS:
        return 'image'

    return 'unknown'
