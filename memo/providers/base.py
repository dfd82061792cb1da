"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.

Every concrete provider is built from a ResolvedService (see
memo.config) and a per-call timeout in seconds.
"""

import re
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from ..config import ResolvedService
from ..errors import ConfigurationResolutionError


_WHITESPACE_RE = re.compile(r"\s+")


def normalize_for_embedding(text: str) -> str:
    """Collapse runs of whitespace so formatting does not shift vectors."""
    return _WHITESPACE_RE.sub(" ", text).strip()


# -----------------------------------------------------------------------------
# Embedding
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings for text.

    Embeddings enable semantic similarity search. The same provider must
    be used for a store's whole lifetime, since vectors from different
    models are not comparable.

    Example implementation:
        class MyEmbedding:
            dimension = 1024

            def embed(self, text: str) -> list[float]:
                return my_model.encode(text).tolist()

            def embed_batch(self, texts: list[str]) -> list[list[float]]:
                return [self.embed(t) for t in texts]
    """

    @property
    def dimension(self) -> int:
        """Length of the vectors this provider returns."""
        ...

    def embed(self, text: str) -> list[float]:
        """
        Generate embedding for a single text.

        Raises:
            ProviderCallError: If the call fails or times out
        """
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts, in input order."""
        ...


# -----------------------------------------------------------------------------
# Rerank
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class RerankItem:
    """One reranked document: its index in the request and its relevance."""
    index: int
    score: float


@runtime_checkable
class RerankProvider(Protocol):
    """
    Scores candidate documents against a query with a cross-encoder.

    Results are ordered by relevance, best first, and refer to documents
    by their position in the request.
    """

    def rerank(
        self,
        query: str,
        documents: list[str],
        top_n: Optional[int] = None,
    ) -> list[RerankItem]:
        """
        Raises:
            ProviderCallError: If the call fails or times out
        """
        ...


# -----------------------------------------------------------------------------
# Completion
# -----------------------------------------------------------------------------

@runtime_checkable
class CompletionProvider(Protocol):
    """
    Single-turn text completion.

    Used for query decomposition and answer summarization. The prompt is
    sent as one user message; the reply text is returned.
    """

    def complete(self, prompt: str) -> str:
        """
        Raises:
            ProviderCallError: If the call fails, times out, or returns
                nothing
        """
        ...


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name. A service selects one with an
    explicit ``provider`` key in providers.toml; otherwise the name is
    inferred from the service's base URL.

    Example:
        registry = get_registry()
        embedder = registry.create_embedding(
            providers.resolve("aliyun.embed"), timeout=60,
        )
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._rerank_providers: dict[str, type] = {}
        self._completion_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Import provider modules so their registrations run."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        from . import embeddings, llm, rerank  # noqa: F401

    # Registration methods

    def register_embedding(self, name: str, provider_class: type) -> None:
        self._embedding_providers[name] = provider_class

    def register_rerank(self, name: str, provider_class: type) -> None:
        self._rerank_providers[name] = provider_class

    def register_completion(self, name: str, provider_class: type) -> None:
        self._completion_providers[name] = provider_class

    # Name inference

    @staticmethod
    def infer_embedding_name(service: ResolvedService) -> str:
        explicit = service.extra.get("provider")
        if explicit:
            return explicit
        if _is_ollama(service.base_url):
            return "ollama"
        return "openai"

    @staticmethod
    def infer_rerank_name(service: ResolvedService) -> str:
        explicit = service.extra.get("provider")
        if explicit:
            return explicit
        url = service.base_url.lower()
        if "dashscope" in url:
            return "dashscope"
        if "bigmodel.cn" in url:
            return "zhipu"
        raise ConfigurationResolutionError(
            f"Cannot infer rerank provider for {service.base_url!r}. "
            "Set provider = \"dashscope\" or \"zhipu\" on the service."
        )

    @staticmethod
    def infer_completion_name(service: ResolvedService) -> str:
        explicit = service.extra.get("provider")
        if explicit:
            return explicit
        url = service.base_url.lower()
        if "anthropic.com" in url:
            return "anthropic"
        if _is_ollama(url):
            return "ollama"
        return "openai"

    # Factory methods

    @staticmethod
    def _create_provider(kind: str, name: str, providers: dict,
                         service: ResolvedService, timeout: float):
        """Shared factory logic for all provider types."""
        if name not in providers:
            available = ", ".join(sorted(providers)) or "none"
            raise ConfigurationResolutionError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return providers[name](service, timeout=timeout)
        except (ValueError, TypeError) as e:
            raise ConfigurationResolutionError(
                f"Failed to create {kind} provider '{name}' "
                f"for {service.reference or service.base_url}: {e}"
            ) from e

    def create_embedding(self, service: ResolvedService, timeout: float = 60.0) -> EmbeddingProvider:
        self._ensure_providers_loaded()
        name = self.infer_embedding_name(service)
        return self._create_provider("embedding", name, self._embedding_providers, service, timeout)

    def create_rerank(self, service: ResolvedService, timeout: float = 60.0) -> RerankProvider:
        self._ensure_providers_loaded()
        name = self.infer_rerank_name(service)
        return self._create_provider("rerank", name, self._rerank_providers, service, timeout)

    def create_completion(self, service: ResolvedService, timeout: float = 60.0) -> CompletionProvider:
        self._ensure_providers_loaded()
        name = self.infer_completion_name(service)
        return self._create_provider("completion", name, self._completion_providers, service, timeout)


def _is_ollama(base_url: str) -> bool:
    url = base_url.lower()
    return ":11434" in url or "ollama" in url


# Global registry instance
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
