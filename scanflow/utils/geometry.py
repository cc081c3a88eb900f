"""
Page geometry for the scanflow pipeline.

Provides:
- Document outline detection (edge detection + quadrilateral search)
- Canonical corner ordering
- Perspective rectification
- Contrast enhancement (CLAHE on luminance + unsharp mask)
- Image decode/encode helpers

Finding no document outline is the expected fallback path, not an error:
``detect_and_rectify`` then returns the input bytes untouched with
``detected_corners=None`` so the page can be cropped manually.
"""

import logging
import math
from dataclasses import dataclass
from typing import Tuple, Optional, List, Sequence

import cv2
import numpy as np

from ..config import GeometryConfig
from .device import DeviceProfile, resolve_tuning
from .errors import DecodeError
from .models import Point, Quadrilateral

logger = logging.getLogger(__name__)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class RectifiedPage:
    """Result of page detection and rectification."""
    processed_image: bytes
    detected_corners: Optional[Quadrilateral] = None

    @property
    def needs_manual_adjustment(self) -> bool:
        return self.detected_corners is None


# ============================================================================
# Image Helpers
# ============================================================================

def decode_image(data: bytes) -> np.ndarray:
    """
    Decode encoded image bytes into a BGR array.

    Raises:
        DecodeError: If the bytes are not a decodable raster image
    """
    if not data:
        raise DecodeError("Empty image data")

    buffer = np.frombuffer(data, dtype=np.uint8)
    try:
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    except cv2.error as e:
        raise DecodeError(f"Could not decode image: {e}") from e

    if image is None:
        raise DecodeError("Could not decode image")
    return image


def encode_jpeg(image: np.ndarray, quality: int = 88) -> bytes:
    """Encode an image as JPEG bytes."""
    ok, encoded = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return encoded.tobytes()


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """
    Convert image to grayscale if it's color.

    Args:
        image: Input image (BGR, BGRA or grayscale)

    Returns:
        Grayscale image
    """
    if len(image.shape) == 2:
        return image
    elif len(image.shape) == 3:
        if image.shape[2] == 3:
            return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        elif image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        elif image.shape[2] == 1:
            return image.squeeze()

    raise ValueError(f"Unexpected image shape: {image.shape}")


def to_bgr(image: np.ndarray) -> np.ndarray:
    """Convert grayscale or BGRA images to 3-channel BGR."""
    if len(image.shape) == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if image.shape[2] == 1:
        return cv2.cvtColor(image.squeeze(), cv2.COLOR_GRAY2BGR)
    return image


def resize_long_edge(image: np.ndarray, max_side: int) -> Tuple[np.ndarray, float]:
    """
    Downscale so the longest edge is at most ``max_side``. Never upscales.

    Returns:
        Tuple of (resized image, scale factor applied)
    """
    h, w = image.shape[:2]
    longest = max(w, h)
    scale = min(max_side / max(longest, 1), 1.0)
    if scale >= 1.0:
        return image, 1.0

    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)
    return resized, scale


def enhance_contrast(
    image: np.ndarray,
    clip_limit: float = 3.0,
    grid_size: int = 8
) -> np.ndarray:
    """
    Enhance contrast using CLAHE on the luminance channel only.

    Args:
        image: Input image (BGR or grayscale)
        clip_limit: Threshold for contrast limiting
        grid_size: Tile grid size for histogram equalization

    Returns:
        Contrast-enhanced image
    """
    clahe = cv2.createCLAHE(
        clipLimit=clip_limit,
        tileGridSize=(grid_size, grid_size)
    )

    if len(image.shape) == 2:
        return clahe.apply(image)

    lab = cv2.cvtColor(image, cv2.COLOR_BGR2LAB)
    l, a, b = cv2.split(lab)
    l = clahe.apply(l)
    enhanced = cv2.merge([l, a, b])
    return cv2.cvtColor(enhanced, cv2.COLOR_LAB2BGR)


def unsharp_mask(image: np.ndarray, sigma: float = 1.2, amount: float = 1.5) -> np.ndarray:
    """Sharpen as ``image * amount - blurred * (amount - 1)``."""
    blurred = cv2.GaussianBlur(image, (0, 0), sigma)
    return cv2.addWeighted(image, amount, blurred, 1.0 - amount, 0)


# ============================================================================
# Corner Detection
# ============================================================================

def distance(a: Point, b: Point) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)


def order_corners(points: Sequence[Point]) -> Quadrilateral:
    """
    Canonically order four corners as [top_left, top_right, bottom_right, bottom_left].

    The smallest x+y is top-left, the largest is bottom-right; of the other
    two, the one with greater x is top-right. Equal sums and equal x values
    are broken by coordinates, so every permutation of the same four points
    yields the same tuple.
    """
    if len(points) != 4:
        raise ValueError(f"Expected 4 corners, got {len(points)}")

    by_sum = sorted(points, key=lambda p: (p.x + p.y, p.x, p.y))
    top_left = by_sum[0]
    bottom_right = by_sum[3]
    p1, p2 = by_sum[1], by_sum[2]

    if (p1.x, -p1.y) > (p2.x, -p2.y):
        top_right, bottom_left = p1, p2
    else:
        top_right, bottom_left = p2, p1

    return (top_left, top_right, bottom_right, bottom_left)


def quad_size(corners: Quadrilateral) -> Tuple[float, float]:
    """Average edge width and height of an ordered quadrilateral."""
    tl, tr, br, bl = corners
    avg_width = (distance(tl, tr) + distance(bl, br)) / 2
    avg_height = (distance(tl, bl) + distance(tr, br)) / 2
    return avg_width, avg_height


def find_document_corners(
    image: np.ndarray,
    config: Optional[GeometryConfig] = None
) -> Optional[Quadrilateral]:
    """
    Find the quadrilateral most likely to be a document page.

    Candidates must have 4 vertices, be convex, cover at least
    ``min_area_ratio`` of the image and have an aspect ratio inside
    [min_aspect, max_aspect]. The largest surviving candidate wins; on equal
    areas the first one found is kept.

    Args:
        image: Input image (BGR or grayscale), usually a preview-sized copy
        config: Geometry configuration

    Returns:
        Ordered corners in the input image's coordinates, or None
    """
    config = config or GeometryConfig()

    gray = to_grayscale(image)
    k = config.blur_kernel
    blurred = cv2.GaussianBlur(gray, (k, k), 0)
    edges = cv2.Canny(blurred, config.canny_low, config.canny_high)

    contours, _ = cv2.findContours(edges, cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)

    image_area = image.shape[0] * image.shape[1]
    best_quad = None
    best_score = 0.0

    for contour in contours:
        perimeter = cv2.arcLength(contour, True)
        approx = cv2.approxPolyDP(contour, config.approx_epsilon * perimeter, True)

        if len(approx) != 4 or not cv2.isContourConvex(approx):
            continue

        area = abs(cv2.contourArea(approx))
        if area < image_area * config.min_area_ratio:
            continue

        points = [Point(float(x), float(y)) for x, y in approx.reshape(-1, 2)]
        ordered = order_corners(points)
        avg_width, avg_height = quad_size(ordered)
        aspect_ratio = avg_width / max(avg_height, 1)

        if aspect_ratio < config.min_aspect or aspect_ratio > config.max_aspect:
            logger.debug(f"Rejected quad with aspect ratio {aspect_ratio:.2f}")
            continue

        if area > best_score:
            best_score = area
            best_quad = ordered

    if best_quad is None:
        logger.debug(f"No document outline among {len(contours)} contours")
    return best_quad


def scale_corners(corners: Quadrilateral, scale: float) -> Quadrilateral:
    """Map corners found on a copy resized by ``scale`` back to the source."""
    tl, tr, br, bl = (Point(p.x / scale, p.y / scale) for p in corners)
    return (tl, tr, br, bl)


# ============================================================================
# Rectification
# ============================================================================

def warp_and_enhance(
    image: np.ndarray,
    corners: Quadrilateral,
    low_resource: bool = False,
    config: Optional[GeometryConfig] = None
) -> np.ndarray:
    """
    Warp the quadrilateral onto an axis-aligned rectangle and enhance it.

    Args:
        image: Source image (BGR)
        corners: Ordered corners in the source image's coordinates
        low_resource: Use a plain linear contrast boost instead of CLAHE + sharpening
        config: Geometry configuration

    Returns:
        Rectified, enhanced BGR image
    """
    config = config or GeometryConfig()
    avg_width, avg_height = quad_size(corners)
    width = max(int(round(avg_width)), 1)
    height = max(int(round(avg_height)), 1)

    src = np.float32([[p.x, p.y] for p in corners])
    dst = np.float32([
        [0, 0],
        [width - 1, 0],
        [width - 1, height - 1],
        [0, height - 1],
    ])

    matrix = cv2.getPerspectiveTransform(src, dst)
    warped = cv2.warpPerspective(
        image,
        matrix,
        (width, height),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0
    )

    if low_resource:
        enhanced = cv2.convertScaleAbs(warped, alpha=config.low_end_contrast, beta=0)
        logger.debug("Applied linear contrast boost (low-resource path)")
    else:
        enhanced = enhance_contrast(
            warped,
            clip_limit=config.clahe_clip_limit,
            grid_size=config.clahe_grid_size
        )
        enhanced = unsharp_mask(enhanced, sigma=config.sharpen_sigma, amount=config.sharpen_amount)

    return enhanced


def rectify_image(
    image: np.ndarray,
    low_resource: bool = False,
    config: Optional[GeometryConfig] = None
) -> Tuple[Optional[np.ndarray], Optional[Quadrilateral]]:
    """
    Detect and rectify a page in a decoded image.

    The image is capped to ``max_process_side`` for processing and the corner
    search runs on a ``preview_max_side`` copy of that.

    Returns:
        Tuple of (rectified image, corners in the input image's coordinates),
        or (None, None) when no page outline was found
    """
    config = config or GeometryConfig()
    image = to_bgr(image)

    processing, process_scale = resize_long_edge(image, config.max_process_side)
    preview, preview_scale = resize_long_edge(processing, config.preview_max_side)

    preview_corners = find_document_corners(preview, config)
    if preview_corners is None:
        return None, None

    corners = scale_corners(preview_corners, preview_scale)
    rectified = warp_and_enhance(processing, corners, low_resource=low_resource, config=config)

    return rectified, scale_corners(corners, process_scale)


def detect_and_rectify(
    raw_image: bytes,
    profile: Optional[DeviceProfile] = None,
    config: Optional[GeometryConfig] = None
) -> RectifiedPage:
    """
    Turn a photographed page into a flat, enhanced, cropped JPEG.

    Args:
        raw_image: Encoded image bytes
        profile: Device profile selecting the enhancement path (probed if None)
        config: Geometry configuration

    Returns:
        RectifiedPage; when no page is found its ``processed_image`` is
        ``raw_image`` itself and ``detected_corners`` is None

    Raises:
        DecodeError: If ``raw_image`` cannot be decoded
    """
    config = config or GeometryConfig()
    image = decode_image(raw_image)

    tuning = resolve_tuning(profile)
    rectified, corners = rectify_image(image, low_resource=tuning.low_resource, config=config)

    if rectified is None:
        logger.info("No document outline found; keeping original image")
        return RectifiedPage(processed_image=raw_image, detected_corners=None)

    h, w = rectified.shape[:2]
    logger.info(
        f"Rectified page to {w}x{h}"
        f"{' (low-resource enhancement)' if tuning.low_resource else ''}"
    )
    return RectifiedPage(
        processed_image=encode_jpeg(rectified, config.jpeg_quality),
        detected_corners=corners
    )


# ============================================================================
# Debug Visualization
# ============================================================================

def draw_corners(
    image: np.ndarray,
    corners: Optional[Quadrilateral],
    color: Tuple[int, int, int] = (0, 255, 0),
    line_width: int = 3
) -> np.ndarray:
    """
    Draw a detected outline and labelled corners on a copy of the image.

    Args:
        image: Input image
        corners: Ordered corners, or None (image is returned as a color copy)
        color: Outline color (BGR)
        line_width: Line thickness

    Returns:
        Annotated image
    """
    debug_img = to_bgr(image).copy()
    if corners is None:
        return debug_img

    pts = np.array([[int(round(p.x)), int(round(p.y))] for p in corners], dtype=np.int32)
    cv2.polylines(debug_img, [pts.reshape(-1, 1, 2)], True, color, line_width)

    labels: List[str] = ["TL", "TR", "BR", "BL"]
    for label, (x, y) in zip(labels, pts):
        cv2.circle(debug_img, (int(x), int(y)), line_width * 2, (0, 0, 255), -1)
        cv2.putText(
            debug_img,
            label,
            (int(x) + 5, int(y) - 5),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.6,
            (0, 0, 255),
            2
        )

    return debug_img
