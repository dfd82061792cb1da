"""
Search for a single sub-question.

Level 1 searches with the question's own vector. Each further level
expands from the previous level's hits, searching around their stored
vectors at a stricter threshold, until enough candidates are collected.
Candidates are then reranked, unless the policy says the vector order is
already good enough.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from ..config import RerankPolicy, SearchLevelsConfig
from ..errors import SearchCancelled, StorageError
from ..protocol import VectorStoreProtocol
from ..providers.base import EmbeddingProvider, RerankProvider
from ..types import QueryResult, ScoreType, TimeRange

logger = logging.getLogger(__name__)


@dataclass
class LeafSearchResult:
    """Ranked results of one leaf and how they were produced."""
    results: list[QueryResult] = field(default_factory=list)
    thresholds: list[float] = field(default_factory=list)
    reranked: bool = False


def ranking_key(result: QueryResult):
    """Best first: score, then most recently updated, then id."""
    return (-(result.score or 0.0), -result.updated_at.timestamp(), result.id)


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise SearchCancelled("Search cancelled")


class SubQuerySearchEngine:
    """
    Multi-level vector search plus optional rerank for one question.

    Args:
        store: Vector store to search
        embedding: Provider used to embed the question
        reranker: Optional rerank provider; without one, results keep
            their vector order
        levels: Level thresholds and branching
        rerank_policy: When reranking is worth a call
    """

    def __init__(
        self,
        store: VectorStoreProtocol,
        embedding: EmbeddingProvider,
        reranker: Optional[RerankProvider] = None,
        *,
        levels: Optional[SearchLevelsConfig] = None,
        rerank_policy: Optional[RerankPolicy] = None,
    ):
        self._store = store
        self._embedding = embedding
        self._reranker = reranker
        self._levels = levels or SearchLevelsConfig()
        self._policy = rerank_policy or RerankPolicy()

    def search_leaf(
        self,
        text: str,
        base_threshold: float,
        candidates_per_query: int,
        top_n_per_leaf: int,
        *,
        time_range: Optional[TimeRange] = None,
        cancel: Optional[threading.Event] = None,
    ) -> LeafSearchResult:
        """
        Search one question.

        Returns at most ``top_n_per_leaf`` results. Provider failures
        propagate as ProviderCallError; cancellation raises SearchCancelled.
        """
        _check_cancel(cancel)
        vector = self._embedding.embed(text)

        candidates, thresholds = self._collect(
            vector, base_threshold, candidates_per_query, time_range, cancel,
        )
        if not candidates:
            return LeafSearchResult(thresholds=thresholds)

        _check_cancel(cancel)
        scores = [c.score or 0.0 for c in candidates]
        if self._reranker is None or not self._policy.should_rerank(scores, top_n_per_leaf):
            ranked = sorted(candidates, key=ranking_key)[:top_n_per_leaf]
            logger.debug("Leaf %r: %d candidates ranked by vector similarity",
                         text[:40], len(candidates))
            return LeafSearchResult(results=ranked, thresholds=thresholds)

        logger.debug("Leaf %r: reranking %d candidates", text[:40], len(candidates))
        items = self._reranker.rerank(
            text, [c.content for c in candidates], top_n=top_n_per_leaf,
        )
        results = []
        seen = set()
        for item in items:
            if not 0 <= item.index < len(candidates) or item.index in seen:
                continue
            seen.add(item.index)
            results.append(candidates[item.index].with_score(item.score, ScoreType.RERANK))
        results.sort(key=ranking_key)
        return LeafSearchResult(
            results=results[:top_n_per_leaf], thresholds=thresholds, reranked=True,
        )

    def _collect(
        self,
        vector: list[float],
        base_threshold: float,
        max_candidates: int,
        time_range: Optional[TimeRange],
        cancel: Optional[threading.Event],
    ) -> tuple[list[QueryResult], list[float]]:
        """Gather up to ``max_candidates`` distinct hits across levels."""
        levels = self._levels
        schedule = levels.thresholds(base_threshold)
        used: list[float] = []

        _check_cancel(cancel)
        used.append(schedule[0])
        layer = self._store.search_by_vector(
            vector, levels.branch_limit, schedule[0], time_range,
        )
        visited = set()
        candidates = []
        for hit in layer:
            if hit.id not in visited and len(candidates) < max_candidates:
                visited.add(hit.id)
                candidates.append(hit)
        layer = list(candidates)

        for threshold in schedule[1:]:
            if len(candidates) >= max_candidates or not layer:
                break
            _check_cancel(cancel)
            used.append(threshold)
            next_layer = []
            for hit in layer:
                for related in self._expand(hit, threshold, time_range):
                    if related.id in visited:
                        continue
                    visited.add(related.id)
                    candidates.append(related)
                    next_layer.append(related)
                    if len(candidates) >= max_candidates:
                        break
                if len(candidates) >= max_candidates:
                    break
            layer = next_layer

        return candidates, used

    def _expand(self, hit: QueryResult, threshold: float,
                time_range: Optional[TimeRange]) -> list[QueryResult]:
        """Neighbours of a stored record at ``threshold``."""
        levels = self._levels
        try:
            memory = self._store.find_memory_by_id(hit.id)
            if memory is None or not memory.vector:
                return []
            related = self._store.search_by_vector(
                memory.vector, levels.branch_limit * 2, threshold, time_range,
            )
        except StorageError as e:
            logger.warning("Branch search from %s failed: %s", hit.id, e)
            return []
        if levels.require_tag_overlap:
            related = [r for r in related if r.tags & memory.tags]
        return related[:levels.branch_limit]
