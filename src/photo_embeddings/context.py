"""Explicit context object passed to every indexing operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from photo_embeddings.assets import AssetSource, DirectoryAssetSource
from photo_embeddings.config import Settings, load_settings
from photo_embeddings.extractor import FeatureExtractor, build_extractor
from photo_embeddings.failures import FailureTracker
from photo_embeddings.preferences import PreferenceStore, StackIdAllocator
from photo_embeddings.store import EmbeddingStore
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "context"})


@dataclass
class IndexContext:
    """Owns the store, failure tracker, preferences and collaborators for one library.

    Nothing in the package keeps module-level service state: the scanner,
    similarity search, duplicate grouping and stack builder all receive this
    object explicitly.
    """

    settings: Settings
    store: EmbeddingStore
    preferences: PreferenceStore
    tracker: FailureTracker
    extractor: FeatureExtractor
    assets: AssetSource
    stack_ids: StackIdAllocator = field(init=False)

    def __post_init__(self) -> None:
        self.stack_ids = StackIdAllocator(self.preferences)

    @property
    def max_dimension(self) -> int:
        return self.settings.embedding.max_dimension


def open_context(
    settings: Settings | None = None,
    *,
    assets: AssetSource | None = None,
    extractor: FeatureExtractor | None = None,
    database_url: str | Path | None = None,
) -> IndexContext:
    """Build an :class:`IndexContext` from settings, allowing collaborator overrides.

    Args:
        settings: Pre-loaded settings; loaded from ``config/settings.yaml`` when omitted.
        assets: Asset source; defaults to a :class:`DirectoryAssetSource` over
            ``settings.library.roots``.
        extractor: Feature extractor; defaults to the configured backend.
        database_url: Overrides ``settings.databases.url``.
    """

    resolved = settings or load_settings()
    target = database_url or resolved.databases.url

    if assets is None:
        assets = DirectoryAssetSource(resolved.library.roots, resolved.library.extensions)
    if extractor is None:
        extractor = build_extractor(resolved.embedding)

    context = IndexContext(
        settings=resolved,
        store=EmbeddingStore(target),
        preferences=PreferenceStore(target),
        tracker=FailureTracker(max_retries=resolved.scan.max_retries),
        extractor=extractor,
        assets=assets,
    )
    LOGGER.info(
        "index_context_opened",
        extra={"database": str(target), "model_name": extractor.model_name, "max_dimension": context.max_dimension},
    )
    return context


__all__ = ["IndexContext", "open_context"]
