"""
Multi-query search: decompose, search leaves in parallel, merge, summarize.
"""

import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Optional

from ..config import DecompositionConfig, MultiQueryConfig
from ..errors import ProviderCallError, SearchCancelled
from ..types import QueryNode, QueryResult, TimeRange
from .decompose import QueryDecomposer
from .engine import LeafSearchResult, SubQuerySearchEngine
from .merge import LeafResults, merge_results
from .summarize import Summarizer

logger = logging.getLogger(__name__)


@dataclass
class LeafFailure:
    """A leaf whose search failed and contributed nothing."""
    query: str
    error: str


@dataclass
class SearchResponse:
    """
    Outcome of a multi-query search.

    Attributes:
        query: The original question
        results: Merged results, best first
        leaves: Leaf questions that were searched, in tree order
        failed_leaves: Leaves that degraded to empty results
        summary: Synthesized answer, if a completion provider is configured
        summary_error: Why summarization failed, if it did
    """
    query: str
    results: list[QueryResult] = field(default_factory=list)
    leaves: list[str] = field(default_factory=list)
    failed_leaves: list[LeafFailure] = field(default_factory=list)
    summary: Optional[str] = None
    summary_error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return bool(self.failed_leaves) or self.summary_error is not None


class MultiQuerySearch:
    """
    Orchestrates one search request.

    Without a decomposer the question is searched as a single leaf;
    without a summarizer no answer is synthesized.
    """

    def __init__(
        self,
        engine: SubQuerySearchEngine,
        *,
        decomposer: Optional[QueryDecomposer] = None,
        summarizer: Optional[Summarizer] = None,
        decomposition: Optional[DecompositionConfig] = None,
        multi_query: Optional[MultiQueryConfig] = None,
    ):
        self._engine = engine
        self._decomposer = decomposer
        self._summarizer = summarizer
        self._decomposition = decomposition or DecompositionConfig()
        self._multi_query = multi_query or MultiQueryConfig()

    def decompose(self, query: str) -> QueryNode:
        if self._decomposer is None:
            return QueryNode(text=query)
        cfg = self._decomposition
        return self._decomposer.decompose(query, cfg.max_level, cfg.max_total_leaves)

    def run(
        self,
        query: str,
        *,
        limit: int,
        threshold: float,
        time_range: Optional[TimeRange] = None,
        summarize: bool = True,
        cancel: Optional[threading.Event] = None,
    ) -> SearchResponse:
        """
        Run the full pipeline.

        Raises:
            SearchCancelled: If ``cancel`` is set before the merge
        """
        cancel = cancel or threading.Event()
        tree = self.decompose(query)
        leaves = tree.leaves()
        if cancel.is_set():
            raise SearchCancelled("Search cancelled")

        outcomes = self._search_leaves(leaves, threshold, time_range, cancel)

        response = SearchResponse(query=query, leaves=[leaf.text for leaf in leaves])
        per_leaf = []
        for leaf, outcome in zip(leaves, outcomes):
            if isinstance(outcome, LeafFailure):
                response.failed_leaves.append(outcome)
                continue
            per_leaf.append(LeafResults(label=f"{leaf.dimension}:{leaf.text}",
                                        results=outcome.results))

        mq = self._multi_query
        response.results = merge_results(
            per_leaf,
            min_per_leaf=mq.min_per_leaf,
            max_total_results=mq.max_total_results,
            requested_limit=limit,
        )
        logger.info("Search %r: %d leaves, %d failed, %d results",
                    query[:60], len(leaves), len(response.failed_leaves),
                    len(response.results))

        if summarize and self._summarizer is not None and response.results:
            try:
                response.summary = self._summarizer.summarize(query, response.results)
            except ProviderCallError as e:
                logger.warning("Summarization failed: %s", e)
                response.summary_error = str(e)
        return response

    def _search_leaves(
        self,
        leaves: list[QueryNode],
        threshold: float,
        time_range: Optional[TimeRange],
        cancel: threading.Event,
    ) -> list:
        """Search every leaf concurrently; results come back in leaf order."""
        mq = self._multi_query

        def search_one(leaf: QueryNode):
            try:
                return self._engine.search_leaf(
                    leaf.text,
                    threshold,
                    mq.candidates_per_query,
                    mq.top_n_per_leaf,
                    time_range=time_range,
                    cancel=cancel,
                )
            except (ProviderCallError, TimeoutError) as e:
                logger.warning("Leaf search failed for %r: %s", leaf.text[:60], e)
                return LeafFailure(query=leaf.text, error=str(e))

        workers = max(1, min(len(leaves), mq.max_workers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="memo-leaf") as pool:
            futures = []
            try:
                for leaf in leaves:
                    futures.append(pool.submit(search_one, leaf))
                wait(futures, return_when=FIRST_EXCEPTION)
            except BaseException:
                # Caller aborted (KeyboardInterrupt): pool exit must not run queued leaves
                cancel.set()
                for f in futures:
                    f.cancel()
                raise
            failed = next(
                (f for f in futures if f.done() and not f.cancelled() and f.exception()),
                None,
            )
            if failed is not None or cancel.is_set():
                # Stop queued leaves; running ones stop at their next checkpoint
                cancel.set()
                for f in futures:
                    f.cancel()
                wait(futures)
                if failed is not None:
                    raise failed.exception()
                raise SearchCancelled("Search cancelled")
            outcomes: list[LeafSearchResult | LeafFailure] = [f.result() for f in futures]
        return outcomes
