"""
Format Validator

Byte-level sniffing of declared vs. actual image type. Mismatch is an
expected outcome, so everything here returns plain values and never raises.
"""

from typing import Dict, Optional, Tuple

JPEG_SIGNATURE = b"\xff\xd8\xff"
PNG_SIGNATURE = b"\x89PNG"
GIF_SIGNATURE = b"GIF8"
RIFF_SIGNATURE = b"RIFF"
WEBP_SIGNATURE = b"WEBP"

PNG_COLOR_TYPE_OFFSET = 25
PNG_ALPHA_COLOR_TYPES = (4, 6)  # grayscale+alpha, RGBA

MIME_EXTENSIONS: Dict[str, str] = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


def _subtype(declared_type: str) -> str:
    return declared_type.strip().lower().rsplit("/", 1)[-1]


def matches_declared_type(data: bytes, declared_type: Optional[str]) -> bool:
    """
    Check the magic bytes of `data` against a declared type.

    Args:
        data: Raw file bytes
        declared_type: MIME type (`image/png`) or bare subtype (`png`)

    Returns:
        True only if the signature matches a supported declared type
    """
    if not data or not declared_type:
        return False

    subtype = _subtype(declared_type)
    if subtype == "jpeg":
        return data.startswith(JPEG_SIGNATURE)
    if subtype == "png":
        return data.startswith(PNG_SIGNATURE)
    if subtype == "gif":
        return data.startswith(GIF_SIGNATURE)
    if subtype == "webp":
        return data[0:4] == RIFF_SIGNATURE and data[8:12] == WEBP_SIGNATURE
    return False


def has_alpha_channel(data: bytes) -> bool:
    """True for PNGs whose IHDR color type carries an alpha channel."""
    if len(data) < PNG_COLOR_TYPE_OFFSET + 1:
        return False
    if not matches_declared_type(data, "png"):
        return False
    return data[PNG_COLOR_TYPE_OFFSET] in PNG_ALPHA_COLOR_TYPES


def extension_for_mime(mime_type: Optional[str]) -> str:
    return MIME_EXTENSIONS.get((mime_type or "").lower(), "jpg")


def detect_content_type(header_value: Optional[str]) -> Tuple[str, str]:
    """
    Content type and extension for a downloaded result.

    Anything other than WebP or JPEG is assumed to be PNG.
    """
    value = (header_value or "").lower()
    if "image/webp" in value:
        return "image/webp", "webp"
    if "image/jpeg" in value:
        return "image/jpeg", "jpg"
    return "image/png", "png"
