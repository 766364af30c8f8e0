"""Canonical embedding model identifiers and named presets.

Configuration files refer to presets by name so raw Hugging Face checkpoint
identifiers live in one place.
"""

from __future__ import annotations

SIGLIP2_BASE_PATCH16_224 = "google/siglip2-base-patch16-224"
SIGLIP2_LARGE_PATCH16_384 = "google/siglip2-large-patch16-384"

HISTOGRAM_V1 = "rgb-histogram-v1"

SIGLIP_PRESETS: dict[str, str] = {
    # Default image-similarity model.
    "default": SIGLIP2_BASE_PATCH16_224,
    # Higher-quality, higher-cost variant for capable hardware.
    "hq_384": SIGLIP2_LARGE_PATCH16_384,
}

__all__ = [
    "SIGLIP2_BASE_PATCH16_224",
    "SIGLIP2_LARGE_PATCH16_384",
    "HISTOGRAM_V1",
    "SIGLIP_PRESETS",
]
