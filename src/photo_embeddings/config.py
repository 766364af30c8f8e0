"""Configuration loader and typed settings for the photo embedding index."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from photo_embeddings.ml.model_presets import HISTOGRAM_V1, SIGLIP2_BASE_PATCH16_224, SIGLIP_PRESETS

_SUPPORTED_BACKENDS: frozenset[str] = frozenset({"siglip", "histogram"})


@dataclass
class EmbeddingModelConfig:
    """Configuration for the feature extractor."""

    backend: str = "siglip"
    model_name: str = SIGLIP2_BASE_PATCH16_224
    preset: str | None = None
    device: str = "auto"
    max_dimension: int = 512

    def resolved_model_name(self) -> str:
        """Return the concrete model identifier used for stored embeddings.

        Resolution order:
        1. The histogram backend always reports :data:`HISTOGRAM_V1`.
        2. If ``preset`` is set, resolve via :data:`SIGLIP_PRESETS`.
        3. Otherwise, use ``model_name``, falling back to the SigLIP2 base checkpoint.
        """
        if self.backend == "histogram":
            return HISTOGRAM_V1

        if self.preset:
            preset_name = SIGLIP_PRESETS.get(self.preset)
            if preset_name is None:
                raise ValueError(f"Unsupported SigLIP preset: {self.preset!r}")
            return preset_name

        if self.model_name:
            return self.model_name

        return SIGLIP2_BASE_PATCH16_224


@dataclass
class DatabaseConfig:
    """Database connection target for embeddings, preferences and scan state."""

    url: str = "sqlite:///data/embeddings.db"


@dataclass
class LibraryConfig:
    """Album roots served by the filesystem asset source."""

    roots: list[str] = field(default_factory=list)
    extensions: list[str] = field(default_factory=lambda: [".jpg", ".jpeg", ".png", ".heic", ".webp"])


@dataclass
class ScanConfig:
    """Incremental scanner knobs."""

    max_retries: int = 3
    yield_every: int = 10


@dataclass
class SimilarityConfig:
    """Defaults for similarity search and duplicate grouping."""

    threshold: float = 0.7
    limit: int = 20
    duplicate_threshold: float = 0.95


@dataclass
class StackConfig:
    """Greedy time-ordered stacking parameters."""

    threshold: float = 0.95
    lookahead: int = 5
    max_items: int = 100


@dataclass
class Settings:
    """Top-level application settings."""

    databases: DatabaseConfig = field(default_factory=DatabaseConfig)
    embedding: EmbeddingModelConfig = field(default_factory=EmbeddingModelConfig)
    library: LibraryConfig = field(default_factory=LibraryConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)
    stacks: StackConfig = field(default_factory=StackConfig)


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover - defensive fallback
        return module_path.parent


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("PHOTO_EMBEDDINGS_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    cwd_candidate = (Path.cwd() / "config" / "settings.yaml").resolve()
    repo_candidate = (_project_root() / "config" / "settings.yaml").resolve()
    for candidate in (cwd_candidate, repo_candidate):
        if candidate.exists():
            return candidate
    return cwd_candidate


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    Missing files, non-mapping documents and wrongly typed values are ignored
    so a partial ``settings.yaml`` only overrides what it names.
    """
    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if not path.exists() or not path.is_file():
        return settings

    with path.open("r", encoding="utf-8") as fp:
        raw = yaml.safe_load(fp) or {}

    if not isinstance(raw, dict):
        return settings

    databases_raw = _as_dict(raw.get("databases"))
    if isinstance(databases_raw.get("url"), str):
        settings.databases.url = databases_raw["url"]

    models_raw = _as_dict(raw.get("models"))
    embedding_raw = _as_dict(models_raw.get("embedding"))
    embedding_cfg = settings.embedding
    backend = embedding_raw.get("backend")
    if isinstance(backend, str):
        if backend not in _SUPPORTED_BACKENDS:
            raise ValueError(f"Unsupported embedding backend: {backend!r}")
        embedding_cfg.backend = backend
    if isinstance(embedding_raw.get("model_name"), str):
        embedding_cfg.model_name = embedding_raw["model_name"]
    if isinstance(embedding_raw.get("preset"), str):
        embedding_cfg.preset = embedding_raw["preset"]
    if isinstance(embedding_raw.get("device"), str):
        embedding_cfg.device = embedding_raw["device"]
    if isinstance(embedding_raw.get("max_dimension"), int):
        embedding_cfg.max_dimension = max(1, embedding_raw["max_dimension"])

    library_raw = _as_dict(raw.get("library"))
    if isinstance(library_raw.get("roots"), list):
        settings.library.roots = [str(root) for root in library_raw["roots"] if str(root)]
    if isinstance(library_raw.get("extensions"), list):
        settings.library.extensions = [str(ext).lower() for ext in library_raw["extensions"] if str(ext)]

    scan_raw = _as_dict(raw.get("scan"))
    if isinstance(scan_raw.get("max_retries"), int):
        settings.scan.max_retries = max(1, scan_raw["max_retries"])
    if isinstance(scan_raw.get("yield_every"), int):
        settings.scan.yield_every = max(1, scan_raw["yield_every"])

    similarity_raw = _as_dict(raw.get("similarity"))
    if _is_number(similarity_raw.get("threshold")):
        settings.similarity.threshold = float(similarity_raw["threshold"])
    if isinstance(similarity_raw.get("limit"), int):
        settings.similarity.limit = similarity_raw["limit"]
    if _is_number(similarity_raw.get("duplicate_threshold")):
        settings.similarity.duplicate_threshold = float(similarity_raw["duplicate_threshold"])

    stacks_raw = _as_dict(raw.get("stacks"))
    if _is_number(stacks_raw.get("threshold")):
        settings.stacks.threshold = float(stacks_raw["threshold"])
    if isinstance(stacks_raw.get("lookahead"), int):
        settings.stacks.lookahead = max(0, stacks_raw["lookahead"])
    if isinstance(stacks_raw.get("max_items"), int):
        settings.stacks.max_items = max(0, stacks_raw["max_items"])

    return settings


__all__ = [
    "DatabaseConfig",
    "EmbeddingModelConfig",
    "LibraryConfig",
    "ScanConfig",
    "SimilarityConfig",
    "StackConfig",
    "Settings",
    "load_settings",
]
