"""
Write-time duplicate detection.
"""

import logging
from typing import Iterable, Optional

from .protocol import VectorStoreProtocol
from .types import DuplicateMatch

logger = logging.getLogger(__name__)

DEFAULT_CHECK_LIMIT = 5


class DuplicateGuard:
    """
    Finds existing records too similar to content about to be written.

    Args:
        store: Vector store to check against
        default_threshold: Similarity at or above which a record counts as
            a duplicate, unless a call overrides it
    """

    def __init__(self, store: VectorStoreProtocol, default_threshold: float = 0.85):
        self._store = store
        self._default_threshold = default_threshold

    def check(
        self,
        new_vector: list[float],
        new_content: str,
        threshold: Optional[float] = None,
        exclude_id: Optional[str] = None,
        *,
        exclude_ids: Iterable[str] = (),
        limit: int = DEFAULT_CHECK_LIMIT,
    ) -> list[DuplicateMatch]:
        """
        Return matches best first; empty when the write is safe.

        ``exclude_id`` is the record being rewritten (update);
        ``exclude_ids`` are records about to be replaced (merge).
        """
        threshold = self._default_threshold if threshold is None else threshold
        skip = set(exclude_ids)
        if exclude_id:
            skip.add(exclude_id)

        hits = self._store.find_similar(new_vector, limit + len(skip), threshold, exclude_id)
        matches = [
            DuplicateMatch(candidate=hit, score=hit.score or 0.0)
            for hit in hits
            if hit.id not in skip
        ]
        matches.sort(key=lambda m: m.score, reverse=True)
        matches = matches[:limit]
        if matches:
            logger.info("Duplicate check: %d match(es) at >= %.2f for %r (best %s %.2f)",
                        len(matches), threshold, new_content[:40],
                        matches[0].candidate.id, matches[0].score)
        return matches
