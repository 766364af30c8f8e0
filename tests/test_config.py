"""Tests for YAML settings loading."""

from __future__ import annotations

import pytest

from photo_embeddings.config import Settings, load_settings
from photo_embeddings.ml.model_presets import HISTOGRAM_V1, SIGLIP2_LARGE_PATCH16_384


def test_missing_file_yields_defaults(tmp_path) -> None:
    settings = load_settings(tmp_path / "absent.yaml")

    assert settings == Settings()
    assert settings.similarity.threshold == 0.7
    assert settings.similarity.limit == 20
    assert settings.stacks.threshold == 0.95
    assert settings.stacks.lookahead == 5
    assert settings.stacks.max_items == 100
    assert settings.scan.max_retries == 3


def test_partial_file_overrides_only_named_keys(tmp_path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text(
        "\n".join(
            [
                "databases:",
                "  url: sqlite:///tmp/index.db",
                "models:",
                "  embedding:",
                "    preset: hq_384",
                "    max_dimension: 384",
                "library:",
                "  roots: [/photos/a, /photos/b]",
                "  extensions: ['.JPG']",
                "similarity:",
                "  threshold: 0.8",
                "stacks:",
                "  lookahead: 3",
                "  threshold: not-a-number",
            ]
        ),
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.databases.url == "sqlite:///tmp/index.db"
    assert settings.embedding.resolved_model_name() == SIGLIP2_LARGE_PATCH16_384
    assert settings.embedding.max_dimension == 384
    assert settings.library.roots == ["/photos/a", "/photos/b"]
    assert settings.library.extensions == [".jpg"]
    assert settings.similarity.threshold == 0.8
    assert settings.similarity.limit == 20
    assert settings.stacks.lookahead == 3
    assert settings.stacks.threshold == 0.95


def test_environment_variable_selects_settings_file(tmp_path, monkeypatch) -> None:
    path = tmp_path / "custom.yaml"
    path.write_text("models:\n  embedding:\n    backend: histogram\n", encoding="utf-8")
    monkeypatch.setenv("PHOTO_EMBEDDINGS_SETTINGS", str(path))

    settings = load_settings()

    assert settings.embedding.backend == "histogram"
    assert settings.embedding.resolved_model_name() == HISTOGRAM_V1


def test_unknown_backend_is_rejected(tmp_path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text("models:\n  embedding:\n    backend: clip\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_settings(path)
