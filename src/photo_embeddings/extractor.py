"""Feature extractors: decoded image in, fixed-length float32 vector out.

Extractors never raise for a bad image. Any problem while computing features
is reported as a failed :class:`ExtractionResult` so batch callers can count
it against the retry cap and move on.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, cast

import numpy as np
from numpy.typing import NDArray
from PIL import Image
from PIL.Image import Resampling

from photo_embeddings.config import EmbeddingModelConfig
from photo_embeddings.ml.model_presets import HISTOGRAM_V1
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "extractor"})

Vector = NDArray[np.float32]


def downsample(image: Image.Image, max_dimension: int) -> Image.Image:
    """Return an RGB copy of ``image`` whose longest side is at most ``max_dimension``."""

    safe_side = max(1, int(max_dimension))
    resized = image.convert("RGB") if image.mode != "RGB" else image.copy()
    resized.thumbnail((safe_side, safe_side), resample=Resampling.LANCZOS)
    return resized


def l2_normalize(vector: NDArray[np.floating]) -> Vector:
    """Return ``vector`` as float32 scaled to unit length; zero vectors stay zero."""

    vec = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(vec))
    if norm == 0.0 or not np.isfinite(norm):
        return vec
    return cast(Vector, (vec / norm).astype(np.float32))


@dataclass(frozen=True)
class ExtractionResult:
    """Outcome of one extraction: a vector, or an error message."""

    vector: Vector | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.vector is not None

    @classmethod
    def success(cls, vector: Vector) -> "ExtractionResult":
        return cls(vector=vector)

    @classmethod
    def failure(cls, error: str) -> "ExtractionResult":
        return cls(error=error)


class FeatureExtractor(Protocol):
    """Stateless image → vector function under a fixed model version."""

    model_name: str

    def extract(self, image: Image.Image, max_dimension: int) -> ExtractionResult:
        ...


class _BaseExtractor:
    """Shared downsample + error capture around a backend ``_features`` call."""

    model_name: str = ""

    def extract(self, image: Image.Image, max_dimension: int) -> ExtractionResult:
        try:
            prepared = downsample(image, max_dimension)
            raw = self._features(prepared)
        except Exception as exc:
            LOGGER.warning(
                "feature_extraction_error",
                extra={"model_name": self.model_name, "error": str(exc)},
            )
            return ExtractionResult.failure(str(exc))

        vector = l2_normalize(raw)
        if vector.size == 0 or not np.all(np.isfinite(vector)):
            return ExtractionResult.failure("extractor produced an empty or non-finite vector")
        return ExtractionResult.success(vector)

    def _features(self, image: Image.Image) -> NDArray[np.floating]:
        raise NotImplementedError


class HistogramFeatureExtractor(_BaseExtractor):
    """Colour-histogram plus coarse luminance layout descriptor.

    The vector concatenates a ``bins``³ joint RGB histogram with a ``grid``×``grid``
    mean-centred grayscale thumbnail, so both palette and composition
    contribute to cosine similarity. Needs only numpy and Pillow.
    """

    def __init__(self, bins: int = 8, grid: int = 8) -> None:
        self.model_name = HISTOGRAM_V1
        self._bins = bins
        self._grid = grid

    @property
    def dimension(self) -> int:
        return self._bins**3 + self._grid**2

    def _features(self, image: Image.Image) -> NDArray[np.floating]:
        pixels = np.asarray(image, dtype=np.uint8).reshape(-1, 3)
        if pixels.size == 0:
            raise ValueError("image has no pixels")

        quantized = (pixels.astype(np.int64) * self._bins) // 256
        flat_index = (quantized[:, 0] * self._bins + quantized[:, 1]) * self._bins + quantized[:, 2]
        histogram = np.bincount(flat_index, minlength=self._bins**3).astype(np.float64)
        histogram /= float(pixels.shape[0])

        layout_image = image.convert("L").resize((self._grid, self._grid), resample=Resampling.BILINEAR)
        layout = np.asarray(layout_image, dtype=np.float64).reshape(-1) / 255.0
        layout -= layout.mean()

        return np.concatenate([np.sqrt(histogram), layout * 0.5])


class SiglipFeatureExtractor(_BaseExtractor):
    """SigLIP image-tower embeddings, L2-normalised.

    The model is resolved lazily through :mod:`photo_embeddings.ml.models` so
    constructing the extractor stays cheap until the first image arrives.
    """

    def __init__(self, config: EmbeddingModelConfig) -> None:
        self._config = config
        self.model_name = config.resolved_model_name()

    def _features(self, image: Image.Image) -> NDArray[np.floating]:
        from photo_embeddings.ml.models import siglip_image_features

        return siglip_image_features(self._config, image)


def build_extractor(config: EmbeddingModelConfig) -> FeatureExtractor:
    """Instantiate the extractor backend named by ``config.backend``."""

    if config.backend == "histogram":
        return HistogramFeatureExtractor()
    if config.backend == "siglip":
        return SiglipFeatureExtractor(config)
    raise ValueError(f"Unsupported embedding backend: {config.backend!r}")


__all__ = [
    "ExtractionResult",
    "FeatureExtractor",
    "HistogramFeatureExtractor",
    "SiglipFeatureExtractor",
    "Vector",
    "build_extractor",
    "downsample",
    "l2_normalize",
]
