"""Shared fixtures: an in-memory asset source, a scripted extractor and a tmp_path-backed context."""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np
import pytest
from PIL import Image

from photo_embeddings.assets import PhotoRef, sort_refs
from photo_embeddings.config import Settings
from photo_embeddings.context import IndexContext, open_context
from photo_embeddings.extractor import ExtractionResult


class InMemoryAssets:
    """Asset source whose photos are plain :class:`PhotoRef` values."""

    def __init__(self) -> None:
        self.photos: dict[str, PhotoRef] = {}
        self.unreadable: set[str] = set()
        self.loads: list[str] = []

    def add(self, photo_id: str, creation_time: float, modification_time: float | None = None) -> PhotoRef:
        ref = PhotoRef(
            photo_id=photo_id,
            creation_time=float(creation_time),
            modification_time=float(creation_time if modification_time is None else modification_time),
        )
        self.photos[photo_id] = ref
        return ref

    def touch(self, photo_id: str, modification_time: float) -> PhotoRef:
        current = self.photos[photo_id]
        return self.add(photo_id, current.creation_time, modification_time)

    def remove(self, photo_id: str) -> None:
        self.photos.pop(photo_id, None)

    def enumerate(self, created_after: float | None = None, newest_first: bool = True) -> list[PhotoRef]:
        refs = [ref for ref in self.photos.values() if created_after is None or ref.creation_time > created_after]
        return sort_refs(refs, newest_first)

    def get(self, photo_id: str) -> PhotoRef | None:
        return self.photos.get(photo_id)

    def exists(self, photo_id: str) -> bool:
        return photo_id in self.photos

    def load_image(self, photo_id: str, max_dimension: int) -> Image.Image | None:
        self.loads.append(photo_id)
        if photo_id not in self.photos or photo_id in self.unreadable:
            return None
        image = Image.new("RGB", (8, 6), color=(len(photo_id) % 256, 90, 160))
        image.info["photo_id"] = photo_id
        return image


class ScriptedExtractor:
    """Returns preset vectors keyed by the ``photo_id`` the asset source tags on each image."""

    model_name = "scripted-v1"

    def __init__(self) -> None:
        self.vectors: dict[str, np.ndarray] = {}
        self.failing: set[str] = set()
        self.calls: list[str] = []

    def set(self, photo_id: str, vector: Sequence[float]) -> None:
        self.vectors[photo_id] = np.asarray(vector, dtype=np.float32)

    def extract(self, image: Image.Image, max_dimension: int) -> ExtractionResult:
        photo_id = str(image.info.get("photo_id"))
        self.calls.append(photo_id)
        if photo_id in self.failing:
            return ExtractionResult.failure(f"scripted failure for {photo_id}")
        vector = self.vectors.get(photo_id)
        if vector is None:
            vector = np.array([1.0, 0.0, 0.0], dtype=np.float32)
        return ExtractionResult.success(vector)


def vector_at(similarity: float) -> list[float]:
    """Unit vector whose cosine similarity with ``[1, 0, 0]`` is ``similarity``."""

    return [similarity, math.sqrt(max(0.0, 1.0 - similarity * similarity)), 0.0]


@pytest.fixture
def assets() -> InMemoryAssets:
    return InMemoryAssets()


@pytest.fixture
def extractor() -> ScriptedExtractor:
    return ScriptedExtractor()


@pytest.fixture
def ctx(tmp_path, assets, extractor) -> IndexContext:
    return open_context(Settings(), assets=assets, extractor=extractor, database_url=tmp_path / "embeddings.db")
