"""Request payload checks for the analyze endpoints.

Images arrive as base64 ``data:`` URLs; user text is stripped of angle
brackets and capped before it is forwarded to the compute endpoint.
"""

from __future__ import annotations

import base64
import binascii
import re

MAX_IMAGE_BYTES = 10 * 1024 * 1024
MAX_TEXT_CHARS = 1000

_DATA_URL = re.compile(r"^data:image/(jpeg|jpg|png|webp);base64,")
_ANGLE_BRACKETS = re.compile(r"[<>]")


def validate_image_data_url(image_data_url: object) -> str:
    """Return *image_data_url* unchanged if it is an acceptable image.

    Raises
    ------
    ValueError
        With a user-facing message: wrong type or format, oversized
        payload, or a body that is not valid base64.
    """
    if not image_data_url or not isinstance(image_data_url, str):
        raise ValueError("Invalid image data")
    if not _DATA_URL.match(image_data_url):
        raise ValueError("Invalid image format")

    encoded = image_data_url.split(",", 1)[1]
    if not encoded:
        raise ValueError("Invalid image data")
    # Approximate decoded size without decoding.
    if len(encoded) * 3 / 4 > MAX_IMAGE_BYTES:
        raise ValueError("Image too large (max 10MB)")

    try:
        base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Invalid base64 encoding") from exc
    return image_data_url


def sanitize_text(value: str | None) -> str:
    """Strip ``<``/``>``, trim, and cap at :data:`MAX_TEXT_CHARS` characters."""
    if not value:
        return ""
    return _ANGLE_BRACKETS.sub("", str(value)).strip()[:MAX_TEXT_CHARS]
