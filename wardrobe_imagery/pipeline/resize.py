"""
Resizer

Downsamples an image to fit a square bounding box, preserving aspect ratio.
Never upscales; an image that already fits is returned untouched.
"""

import io
from typing import Tuple

from PIL import Image, UnidentifiedImageError

from wardrobe_imagery.core.exceptions import ImageDecodeError
from wardrobe_imagery.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_DIMENSION = 1024


def target_size(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """Scaled dimensions, each rounded and floored at 1px."""
    scale = min(max_dimension / width, max_dimension / height)
    return max(1, round(width * scale)), max(1, round(height * scale))


def resize_to_fit(data: bytes, max_dimension: int = DEFAULT_MAX_DIMENSION) -> bytes:
    """
    Scale `data` down so both sides are <= max_dimension.

    Returns the input object itself when no resize is needed, otherwise
    PNG-encoded bytes (lossless, alpha preserved).

    Raises:
        ImageDecodeError: if Pillow cannot decode the bytes
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
            if width <= max_dimension and height <= max_dimension:
                return data

            new_size = target_size(width, height, max_dimension)
            image.load()
            if image.mode not in ("RGB", "RGBA", "L", "LA"):
                image = image.convert("RGBA")
            resized = image.resize(new_size, Image.Resampling.LANCZOS)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise ImageDecodeError(f"Unable to decode image for resize: {e}")

    buffer = io.BytesIO()
    resized.save(buffer, format="PNG", optimize=True)
    logger.info(
        "image_resized",
        original_size=f"{width}x{height}",
        new_size=f"{new_size[0]}x{new_size[1]}"
    )
    return buffer.getvalue()


def resize_best_effort(data: bytes, max_dimension: int = DEFAULT_MAX_DIMENSION) -> bytes:
    """Resize, falling back to the original bytes if decoding fails."""
    try:
        return resize_to_fit(data, max_dimension)
    except ImageDecodeError as e:
        logger.warning("image_resize_skipped", error=e.message)
        return data
