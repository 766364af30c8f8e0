"""Group consecutive near-identical captures into stacks."""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from photo_embeddings.assets import PhotoRef
from photo_embeddings.context import IndexContext
from photo_embeddings.errors import PersistError
from photo_embeddings.extractor import Vector
from photo_embeddings.similarity import cosine_similarity
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "stacks"})

_YIELD_EVERY = 10


@dataclass
class PhotoStack:
    """Consecutive photos shown as one unit; ``stack_id`` is ``None`` for singletons."""

    photos: list[PhotoRef]
    stack_id: int | None = None

    @property
    def anchor(self) -> PhotoRef:
        return self.photos[0]

    @property
    def photo_ids(self) -> list[str]:
        return [photo.photo_id for photo in self.photos]

    def __len__(self) -> int:
        return len(self.photos)


class StackBuilder:
    """Sequential, greedy, bounded-lookahead stacking.

    Each unassigned anchor is compared against at most ``lookahead`` following
    photos. The stack grows while ``similarity(anchor, candidate) > threshold``
    and stops at the first candidate that misses or has no stored embedding;
    later candidates in the window are never tried. Nothing is reordered and
    there is no backtracking.

    Persisted stack ids are cleared once per builder, on the first
    :meth:`build`. Ids for new stacks come from the context's allocator and
    are never reused.
    """

    def __init__(
        self,
        ctx: IndexContext,
        on_missing_embeddings: Callable[[], None] | None = None,
        *,
        threshold: float | None = None,
        lookahead: int | None = None,
        max_items: int | None = None,
    ) -> None:
        config = ctx.settings.stacks
        self._ctx = ctx
        self._on_missing_embeddings = on_missing_embeddings
        self.threshold = config.threshold if threshold is None else threshold
        self.lookahead = config.lookahead if lookahead is None else lookahead
        self.max_items = config.max_items if max_items is None else max_items
        self._session_started = False
        self._scan_requested = False
        self.session_floor: int | None = None

    def _begin_session(self) -> None:
        # Pin the allocator floor before clearing so cleared ids stay retired.
        self.session_floor = self._ctx.stack_ids.floor()
        self._ctx.preferences.clear_all_stack_ids()
        self._session_started = True
        LOGGER.info("stack_session_start", extra={"floor": self.session_floor})

    def _vector_for(self, photo_id: str, cache: dict[str, Vector | None]) -> Vector | None:
        if photo_id not in cache:
            try:
                embedding = self._ctx.store.get(photo_id)
            except PersistError as exc:
                LOGGER.warning("stack_embedding_lookup_failed", extra={"photo_id": photo_id, "error": str(exc)})
                embedding = None
            cache[photo_id] = embedding.vector if embedding is not None else None
        return cache[photo_id]

    def _group(self, photos: Sequence[PhotoRef]) -> list[list[PhotoRef]]:
        cache: dict[str, Vector | None] = {}
        groups: list[list[PhotoRef]] = []
        index = 0
        processed = 0

        while index < len(photos):
            anchor = photos[index]
            members = [anchor]
            anchor_vector = self._vector_for(anchor.photo_id, cache)

            if anchor_vector is not None:
                window_end = min(len(photos), index + 1 + self.lookahead)
                for candidate in photos[index + 1 : window_end]:
                    candidate_vector = self._vector_for(candidate.photo_id, cache)
                    if candidate_vector is None or candidate_vector.shape != anchor_vector.shape:
                        break
                    if cosine_similarity(anchor_vector, candidate_vector) <= self.threshold:
                        break
                    members.append(candidate)

            groups.append(members)
            index += len(members)

            previous = processed
            processed += len(members)
            if processed // _YIELD_EVERY != previous // _YIELD_EVERY:
                time.sleep(0)

        return groups

    def build(self, photos: Sequence[PhotoRef]) -> list[PhotoStack]:
        """Split ``photos`` (already sorted by creation time) into stacks.

        Concatenating the returned stacks reproduces ``photos`` exactly.
        Photos beyond ``max_items`` are returned as singletons.
        """

        if not self._session_started:
            self._begin_session()

        if self._ctx.store.count() == 0:
            LOGGER.info("stack_build_no_embeddings", extra={"photos": len(photos)})
            if self._on_missing_embeddings is not None and not self._scan_requested:
                self._scan_requested = True
                self._on_missing_embeddings()
            return [PhotoStack(photos=[photo]) for photo in photos]

        cap = max(0, self.max_items)
        head, tail = photos[:cap], photos[cap:]

        stacks: list[PhotoStack] = []
        for members in self._group(head):
            stack = PhotoStack(photos=members)
            if len(members) >= 2:
                stack.stack_id = self._ctx.stack_ids.allocate()
                self._ctx.preferences.set_stack_ids([photo.photo_id for photo in members], stack.stack_id)
            stacks.append(stack)
        stacks.extend(PhotoStack(photos=[photo]) for photo in tail)

        multi = [stack for stack in stacks if stack.stack_id is not None]
        LOGGER.info(
            "stack_build_complete",
            extra={
                "photos": len(photos),
                "capped": len(tail),
                "stacks": len(stacks),
                "multi_stacks": len(multi),
                "stacked_photos": sum(len(stack) for stack in multi),
            },
        )
        return stacks


__all__ = ["PhotoStack", "StackBuilder"]
