"""Content hashing for decoded images."""

from __future__ import annotations

from typing import Final

import xxhash
from PIL import Image

CONTENT_HASH_ALGO: Final[str] = "xxhash64-rgb-v1"


def compute_content_hash(image: Image.Image) -> str:
    """Compute the 64-bit content hash of a decoded image.

    The hash covers the image size and its RGB pixel bytes, so two decodes of
    the same source at the same bounded dimension hash identically while
    metadata-only edits to the file do not change it.

    Returns:
        Content hash as a 16-character lowercase hexadecimal string.
    """

    rgb = image if image.mode == "RGB" else image.convert("RGB")
    hasher = xxhash.xxh64()
    width, height = rgb.size
    hasher.update(f"{width}x{height}:".encode("ascii"))
    hasher.update(rgb.tobytes())
    return f"{hasher.intdigest():016x}"


__all__ = ["CONTENT_HASH_ALGO", "compute_content_hash"]
