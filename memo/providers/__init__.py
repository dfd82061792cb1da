"""
Provider interfaces and implementations for embeddings, reranking and
completions.
"""

from .base import (
    CompletionProvider,
    EmbeddingProvider,
    ProviderRegistry,
    RerankItem,
    RerankProvider,
    get_registry,
    normalize_for_embedding,
)

__all__ = [
    "CompletionProvider",
    "EmbeddingProvider",
    "ProviderRegistry",
    "RerankItem",
    "RerankProvider",
    "get_registry",
    "normalize_for_embedding",
]
