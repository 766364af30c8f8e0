"""Tests for near-duplicate grouping."""

from __future__ import annotations

import numpy as np

from conftest import vector_at
from photo_embeddings.compute import compute_or_fetch
from photo_embeddings.duplicates import find_duplicates, group_duplicates
from photo_embeddings.store import Embedding


def _embedding(photo_id: str, vector) -> Embedding:
    return Embedding(
        photo_id=photo_id,
        vector=np.asarray(vector, dtype=np.float32),
        content_hash=photo_id,
        computed_at=0.0,
        source_modified_at=0.0,
    )


def _at_degrees(angle: float) -> list[float]:
    radians = np.deg2rad(angle)
    return [float(np.cos(radians)), float(np.sin(radians)), 0.0]


def test_groups_seed_with_matches_in_id_order() -> None:
    embeddings = [
        _embedding("b", vector_at(0.99)),
        _embedding("a", [1.0, 0.0, 0.0]),
        _embedding("c", [0.0, 0.0, 1.0]),
        _embedding("d", vector_at(0.97)),
    ]

    groups = group_duplicates(embeddings, threshold=0.95)

    assert len(groups) == 1
    assert groups[0].original == "a"
    assert groups[0].duplicates == ["b", "d"]
    assert groups[0].count == 3
    assert groups[0].members == ["a", "b", "d"]


def test_no_photo_appears_in_two_groups() -> None:
    # b sits between a and c: close to both, while a and c are not close to each other.
    embeddings = [
        _embedding("a", _at_degrees(0.0)),
        _embedding("b", _at_degrees(15.0)),
        _embedding("c", _at_degrees(30.0)),
        _embedding("x", [0.0, 0.0, 1.0]),
        _embedding("y", [0.0, 0.01, 1.0]),
    ]

    groups = group_duplicates(embeddings, threshold=0.95)
    members = [photo_id for group in groups for photo_id in group.members]

    assert len(members) == len(set(members))
    assert [group.members for group in groups] == [["a", "b"], ["x", "y"]]


def test_singletons_are_not_reported() -> None:
    embeddings = [_embedding("a", [1.0, 0.0, 0.0]), _embedding("b", [0.0, 1.0, 0.0])]

    assert group_duplicates(embeddings) == []


def test_find_duplicates_reads_every_stored_embedding(ctx, assets, extractor) -> None:
    extractor.set("copy", vector_at(0.999))
    extractor.set("other", [0.0, 0.0, 1.0])
    for index, photo_id in enumerate(["orig", "copy", "other"]):
        compute_or_fetch(ctx, assets.add(photo_id, creation_time=float(index)))

    groups = find_duplicates(ctx)

    assert len(groups) == 1
    assert sorted(groups[0].members) == ["copy", "orig"]
    assert groups[0].similarities[groups[0].duplicates[0]] > 0.99


def test_vectors_of_another_dimension_are_never_grouped() -> None:
    embeddings = [
        _embedding("a", [1.0, 0.0, 0.0]),
        _embedding("b", [1.0, 0.0]),
        _embedding("c", [0.0, 1.0, 0.0]),
    ]

    groups = group_duplicates(embeddings, threshold=0.0)

    assert [group.members for group in groups] == [["a", "c"]]
