"""
memo: a personal knowledge base with multi-query semantic search.

Notes are stored as vectors. Searches decompose a question into
sub-questions, search them in parallel and merge the results fairly.
Writes are checked for near-duplicates first.
"""

from .api import Memo, StoreInfo, WriteResult
from .config import AppConfig, ProvidersConfig, ResolvedService
from .errors import (
    ConfigurationError,
    ConfigurationResolutionError,
    DimensionMismatchError,
    MemoError,
    MemoryNotFoundError,
    ProviderCallError,
    SearchCancelled,
    StorageError,
)
from .search import SearchResponse
from .types import DuplicateMatch, Memory, QueryResult, ScoreType, TimeRange

__all__ = [
    "AppConfig",
    "ConfigurationError",
    "ConfigurationResolutionError",
    "DimensionMismatchError",
    "DuplicateMatch",
    "Memo",
    "MemoError",
    "Memory",
    "MemoryNotFoundError",
    "ProviderCallError",
    "ProvidersConfig",
    "QueryResult",
    "ResolvedService",
    "ScoreType",
    "SearchCancelled",
    "SearchResponse",
    "StoreInfo",
    "StorageError",
    "TimeRange",
    "WriteResult",
]
