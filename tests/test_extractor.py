"""Tests for feature extraction and downsampling."""

from __future__ import annotations

import numpy as np
from PIL import Image

from photo_embeddings.config import EmbeddingModelConfig
from photo_embeddings.extractor import (
    HistogramFeatureExtractor,
    SiglipFeatureExtractor,
    build_extractor,
    downsample,
)
from photo_embeddings.hasher import compute_content_hash
from photo_embeddings.similarity import cosine_similarity


def _gradient(width: int, height: int, tint: tuple[int, int, int] = (0, 0, 0)) -> Image.Image:
    xs = np.linspace(0, 255, width, dtype=np.float64)
    ys = np.linspace(0, 255, height, dtype=np.float64)
    grid = np.zeros((height, width, 3), dtype=np.float64)
    grid[..., 0] = xs[None, :]
    grid[..., 1] = ys[:, None]
    grid[..., 2] = 128
    grid = np.clip(grid + np.asarray(tint, dtype=np.float64), 0, 255)
    return Image.fromarray(grid.astype(np.uint8))


def test_downsample_bounds_longest_side_and_keeps_aspect() -> None:
    image = Image.new("RGBA", (2000, 1000))

    resized = downsample(image, 512)

    assert resized.size == (512, 256)
    assert resized.mode == "RGB"
    assert image.size == (2000, 1000)


def test_histogram_extractor_is_deterministic_and_normalized() -> None:
    extractor = HistogramFeatureExtractor()
    image = _gradient(320, 240)

    first = extractor.extract(image, 128)
    second = extractor.extract(image.copy(), 128)

    assert first.ok and second.ok
    assert first.vector.shape == (extractor.dimension,)
    assert first.vector.dtype == np.float32
    np.testing.assert_array_equal(first.vector, second.vector)
    assert abs(float(np.linalg.norm(first.vector)) - 1.0) < 1e-5


def test_histogram_extractor_separates_different_images() -> None:
    extractor = HistogramFeatureExtractor()
    base = extractor.extract(_gradient(200, 200), 128).vector
    resized = extractor.extract(_gradient(400, 400), 128).vector
    other = extractor.extract(Image.new("RGB", (200, 200), (250, 10, 10)), 128).vector

    assert cosine_similarity(base, resized) > 0.9
    assert cosine_similarity(base, other) < cosine_similarity(base, resized)


def test_extraction_errors_are_reported_not_raised() -> None:
    class ExplodingExtractor(HistogramFeatureExtractor):
        def _features(self, image):
            raise RuntimeError("model crashed")

    result = ExplodingExtractor().extract(_gradient(10, 10), 64)

    assert not result.ok
    assert result.error == "model crashed"


def test_build_extractor_selects_backend() -> None:
    assert isinstance(build_extractor(EmbeddingModelConfig(backend="histogram")), HistogramFeatureExtractor)

    siglip = build_extractor(EmbeddingModelConfig(backend="siglip", preset="default"))
    assert isinstance(siglip, SiglipFeatureExtractor)
    assert siglip.model_name == "google/siglip2-base-patch16-224"


def test_content_hash_tracks_pixels_not_object_identity() -> None:
    image = _gradient(32, 16)

    assert compute_content_hash(image) == compute_content_hash(image.copy())
    assert len(compute_content_hash(image)) == 16
    assert compute_content_hash(image) != compute_content_hash(_gradient(32, 16, tint=(5, 0, 0)))
