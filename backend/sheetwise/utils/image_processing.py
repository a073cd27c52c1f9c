"""Image utilities for splitting a sheet into receipts.

The segmenter reports regions on a 0-1000 normalised grid. The helpers
here map those regions to pixel boxes, crop each receipt out of the
source image with a small safety margin, and draw an annotated copy of
the sheet for auditing. Pillow is the imaging backend; all outputs are
RGB JPEG bytes.
"""

from __future__ import annotations

import math
from io import BytesIO
from typing import Iterable, Optional, Tuple

from PIL import Image, ImageDraw, ImageOps

from sheetwise.models.schemas import Region

GRID_SIZE = 1000
OVERLAY_COLOR = (255, 0, 0)
EXIF_ORIENTATION = 0x0112


def _round(value: float) -> int:
    """Round half away from zero (``round`` uses banker's rounding)."""
    return int(math.floor(value + 0.5)) if value >= 0 else -int(math.floor(-value + 0.5))


def _to_jpeg(img: Image.Image, quality: int = 90) -> bytes:
    buf = BytesIO()
    img.convert("RGB").save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def normalise_orientation(image_data: bytes) -> bytes:
    """Apply EXIF orientation so the segmenter and the cropper see the same pixels.

    Returns the original bytes when no rotation is needed. Raises if the
    data is not a readable image.
    """
    with Image.open(BytesIO(image_data)) as img:
        img.load()
        if img.getexif().get(EXIF_ORIENTATION, 1) == 1:
            return image_data
        return _to_jpeg(ImageOps.exif_transpose(img))


def image_size(image_data: bytes) -> Tuple[int, int]:
    """Return ``(width, height)`` of an encoded image."""
    with Image.open(BytesIO(image_data)) as img:
        return img.size


def region_to_pixels(region: Region, width: int, height: int) -> Tuple[int, int, int, int]:
    """Convert a grid region into a pixel ``(left, top, width, height)`` box."""
    return (
        _round(region.x / GRID_SIZE * width),
        _round(region.y / GRID_SIZE * height),
        _round(region.width / GRID_SIZE * width),
        _round(region.height / GRID_SIZE * height),
    )


def padded_box(
    region: Region, width: int, height: int, padding_ratio: float = 0.05
) -> Optional[Tuple[int, int, int, int]]:
    """Return the clamped ``(left, top, right, bottom)`` crop box for a region.

    Each side is widened by ``padding_ratio`` of the region's size to absorb
    detection inaccuracies. Returns ``None`` when the box starts outside the
    image or has no area after clamping.
    """
    px, py, pw, ph = region_to_pixels(region, width, height)
    pad_w = _round(pw * padding_ratio)
    pad_h = _round(ph * padding_ratio)

    left = max(0, px - pad_w)
    top = max(0, py - pad_h)
    if left >= width or top >= height:
        return None

    crop_w = min(pw + pad_w * 2, width - left)
    crop_h = min(ph + pad_h * 2, height - top)
    if crop_w <= 0 or crop_h <= 0:
        return None
    return left, top, left + crop_w, top + crop_h


def crop_region(image_data: bytes, region: Region, padding_ratio: float = 0.05) -> Optional[bytes]:
    """Crop one receipt out of the sheet; ``None`` if the region is unusable."""
    with Image.open(BytesIO(image_data)) as img:
        box = padded_box(region, img.width, img.height, padding_ratio)
        if box is None:
            return None
        return _to_jpeg(img.crop(box))


def draw_region_overlay(image_data: bytes, regions: Iterable[Region], stroke_width: int = 5) -> bytes:
    """Return a copy of the sheet with every region outlined in red."""
    with Image.open(BytesIO(image_data)) as img:
        marked = img.convert("RGB")
        draw = ImageDraw.Draw(marked)
        for region in regions:
            left, top, w, h = region_to_pixels(region, marked.width, marked.height)
            draw.rectangle([left, top, left + w, top + h], outline=OVERLAY_COLOR, width=stroke_width)
        return _to_jpeg(marked)
