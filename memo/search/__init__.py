"""
Multi-query search: decomposition, per-leaf search, merge and summary.
"""

from .decompose import QueryDecomposer
from .engine import LeafSearchResult, SubQuerySearchEngine
from .merge import LeafResults, merge_results
from .pipeline import LeafFailure, MultiQuerySearch, SearchResponse
from .summarize import Summarizer

__all__ = [
    "LeafFailure",
    "LeafResults",
    "LeafSearchResult",
    "MultiQuerySearch",
    "QueryDecomposer",
    "SearchResponse",
    "SubQuerySearchEngine",
    "Summarizer",
    "merge_results",
]
