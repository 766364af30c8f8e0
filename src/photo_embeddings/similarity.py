"""Cosine similarity and brute-force nearest-neighbour search over stored vectors.

The scan is linear in the number of stored embeddings, which is fine for
libraries in the low thousands. Whether larger libraries need an
approximate index is an open question; nothing here assumes one.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

from photo_embeddings.compute import ComputeResult, compute_or_fetch
from photo_embeddings.context import IndexContext
from photo_embeddings.store import Embedding
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "similarity"})


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Return ``dot(a, b) / (|a| * |b|)``.

    Defined as 0.0 when either vector has zero norm or the dimensions differ.
    """

    lhs = np.asarray(a, dtype=np.float64).reshape(-1)
    rhs = np.asarray(b, dtype=np.float64).reshape(-1)
    if lhs.shape != rhs.shape:
        return 0.0

    lhs_norm = float(np.linalg.norm(lhs))
    rhs_norm = float(np.linalg.norm(rhs))
    if lhs_norm == 0.0 or rhs_norm == 0.0:
        return 0.0

    value = float(np.dot(lhs, rhs) / (lhs_norm * rhs_norm))
    return max(-1.0, min(1.0, value))


def comparable_mask(target: np.ndarray, candidates: Sequence[Embedding]) -> np.ndarray:
    """Boolean mask of candidates whose dimension matches ``target``."""

    dim = np.asarray(target).reshape(-1).shape[0]
    return np.array([candidate.dim == dim for candidate in candidates], dtype=bool)


def similarities_to(target: np.ndarray, candidates: Sequence[Embedding]) -> np.ndarray:
    """Vectorised :func:`cosine_similarity` of ``target`` against each candidate."""

    scores = np.zeros(len(candidates), dtype=np.float64)
    query = np.asarray(target, dtype=np.float64).reshape(-1)
    query_norm = float(np.linalg.norm(query))
    if query_norm == 0.0 or not candidates:
        return scores

    matching = [idx for idx, candidate in enumerate(candidates) if candidate.dim == query.shape[0]]
    if not matching:
        return scores

    matrix = np.stack([candidates[idx].vector for idx in matching]).astype(np.float64)
    norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        values = np.where(norms > 0.0, dots / (norms * query_norm), 0.0)
    scores[matching] = np.clip(values, -1.0, 1.0)
    return scores


@dataclass(frozen=True)
class SimilarPhoto:
    """One ranked search hit."""

    photo_id: str
    similarity: float

    @property
    def percentage(self) -> int:
        return int(self.similarity * 100)


@dataclass
class SimilarityReport:
    """Ranked matches plus timings for diagnostics."""

    target_id: str
    results: list[SimilarPhoto] = field(default_factory=list)
    target: ComputeResult | None = None
    target_seconds: float = 0.0
    total_seconds: float = 0.0
    candidates_scanned: int = 0


def rank(target_id: str, target: np.ndarray, candidates: Sequence[Embedding], threshold: float, limit: int) -> list[SimilarPhoto]:
    """Keep candidates with ``similarity >= threshold``, best first, at most ``limit``.

    Ties are broken by ascending photo id so results are reproducible.
    """

    if limit <= 0:
        return []

    others = [candidate for candidate in candidates if candidate.photo_id != target_id]
    scores = similarities_to(target, others)
    hits = [
        SimilarPhoto(photo_id=candidate.photo_id, similarity=float(score))
        for candidate, score in zip(others, scores)
        if score >= threshold
    ]
    hits.sort(key=lambda hit: (-hit.similarity, hit.photo_id))
    return hits[:limit]


def find_similar(
    ctx: IndexContext,
    photo_id: str,
    threshold: float | None = None,
    limit: int | None = None,
) -> SimilarityReport:
    """Find stored photos visually similar to ``photo_id``.

    The target embedding is resolved through compute-or-fetch (timed on its
    own); when the asset source no longer has the photo, a cached embedding is
    still used. An unresolvable target yields an empty report.
    """

    started = time.perf_counter()
    threshold = ctx.settings.similarity.threshold if threshold is None else threshold
    limit = ctx.settings.similarity.limit if limit is None else limit
    report = SimilarityReport(target_id=photo_id)

    photo = ctx.assets.get(photo_id)
    target_embedding: Embedding | None
    if photo is not None:
        resolved = compute_or_fetch(ctx, photo)
        report.target = resolved
        report.target_seconds = resolved.elapsed
        target_embedding = resolved.embedding
    else:
        target_embedding = ctx.store.get(photo_id)

    if target_embedding is None:
        LOGGER.info("find_similar_no_target_embedding", extra={"photo_id": photo_id})
        report.total_seconds = time.perf_counter() - started
        return report

    candidates = ctx.store.all()
    report.candidates_scanned = max(0, len(candidates) - 1)
    report.results = rank(photo_id, target_embedding.vector, candidates, threshold, limit)
    report.total_seconds = time.perf_counter() - started

    LOGGER.info(
        "find_similar_complete",
        extra={
            "photo_id": photo_id,
            "threshold": threshold,
            "limit": limit,
            "results": len(report.results),
            "candidates": report.candidates_scanned,
            "target_cached": bool(report.target and report.target.cached),
            "target_seconds": round(report.target_seconds, 3),
            "total_seconds": round(report.total_seconds, 3),
        },
    )
    return report


__all__ = [
    "SimilarPhoto",
    "SimilarityReport",
    "comparable_mask",
    "cosine_similarity",
    "find_similar",
    "rank",
    "similarities_to",
]
