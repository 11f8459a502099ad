from __future__ import annotations

import io
import logging
import mimetypes

from PIL import Image, UnidentifiedImageError

from config import MAX_IMAGE_SIDE


logger = logging.getLogger(__name__)

# Modes PNG can store without conversion.
PNG_MODES = {"1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16"}


def guess_content_type(filename: str) -> str:
    """Resolve the declared MIME type of an upload from its filename."""
    guessed, _ = mimetypes.guess_type(filename or "")
    return guessed or "application/octet-stream"


def is_image_type(content_type: str) -> bool:
    return (content_type or "").lower().startswith("image/")


def detect_orientation(data: bytes) -> str:
    """Classify the intrinsic aspect ratio; 'unknown' when the header can't be read."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.warning("orientation unreadable reason=%s", exc)
        return "unknown"
    if width > height:
        return "landscape"
    if width < height:
        return "portrait"
    return "square"


def resize_to_png(data: bytes, max_side: int = MAX_IMAGE_SIDE) -> bytes:
    """Fit the image inside max_side x max_side (never upscaling) and encode as PNG."""
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        # thumbnail() keeps the aspect ratio and only ever shrinks.
        img.thumbnail((max_side, max_side), Image.Resampling.LANCZOS)
        if img.mode not in PNG_MODES:
            img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG", optimize=True)
    return buffer.getvalue()
