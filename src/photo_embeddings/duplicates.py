"""Near-duplicate grouping over every stored embedding."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

import numpy as np

from photo_embeddings.context import IndexContext
from photo_embeddings.similarity import comparable_mask, similarities_to
from photo_embeddings.store import Embedding
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "duplicates"})

DEFAULT_DUPLICATE_THRESHOLD = 0.95


@dataclass
class DuplicateGroup:
    """A seed photo plus every ungrouped photo that matched it."""

    original: str
    duplicates: list[str] = field(default_factory=list)
    similarities: dict[str, float] = field(default_factory=dict)

    @property
    def members(self) -> list[str]:
        return [self.original, *self.duplicates]

    @property
    def count(self) -> int:
        return 1 + len(self.duplicates)


def group_duplicates(embeddings: list[Embedding], threshold: float = DEFAULT_DUPLICATE_THRESHOLD) -> list[DuplicateGroup]:
    """Single greedy pass in photo-id order.

    Each ungrouped embedding seeds a group and claims every other ungrouped
    embedding with ``similarity >= threshold``. Groups without a match are not
    returned, and an id never lands in two groups.
    """

    ordered = sorted(embeddings, key=lambda item: item.photo_id)
    grouped = np.zeros(len(ordered), dtype=bool)
    groups: list[DuplicateGroup] = []

    for seed_index, seed in enumerate(ordered):
        if grouped[seed_index]:
            continue
        grouped[seed_index] = True

        scores = similarities_to(seed.vector, ordered)
        candidates = np.flatnonzero((scores >= threshold) & comparable_mask(seed.vector, ordered) & ~grouped)
        if candidates.size == 0:
            continue

        group = DuplicateGroup(original=seed.photo_id)
        for index in candidates:
            match = ordered[int(index)]
            group.duplicates.append(match.photo_id)
            group.similarities[match.photo_id] = float(scores[index])
            grouped[index] = True
        groups.append(group)

    return groups


def find_duplicates(ctx: IndexContext, threshold: float | None = None) -> list[DuplicateGroup]:
    """Group near-identical photos across the whole embedding store."""

    threshold = ctx.settings.similarity.duplicate_threshold if threshold is None else threshold
    started = time.perf_counter()
    embeddings = ctx.store.all()
    groups = group_duplicates(embeddings, threshold)

    LOGGER.info(
        "duplicate_groups_complete",
        extra={
            "embeddings": len(embeddings),
            "threshold": threshold,
            "duplicate_groups": len(groups),
            "duplicate_memberships": sum(len(group.duplicates) for group in groups),
            "elapsed": round(time.perf_counter() - started, 3),
        },
    )
    return groups


__all__ = ["DEFAULT_DUPLICATE_THRESHOLD", "DuplicateGroup", "find_duplicates", "group_duplicates"]
