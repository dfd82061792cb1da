"""
Embedding providers.

- ``openai``: any OpenAI-compatible ``/embeddings`` endpoint (OpenAI,
  Aliyun DashScope compatible mode, Zhipu BigModel, local gateways)
- ``ollama``: Ollama's native ``/api/embed``
"""

import logging
import threading
from typing import Optional

import openai

from ..config import ResolvedService
from ..errors import DimensionMismatchError, ProviderCallError
from .base import get_registry, normalize_for_embedding
from .ollama_utils import ollama_base_url, ollama_post

logger = logging.getLogger(__name__)

# Most providers cap the batch size of one embeddings request
MAX_BATCH = 10


class _DimensionMixin:
    """Configured dimension, or learned from the first embedding."""

    _dimension: Optional[int]

    def _init_dimension(self, service: ResolvedService) -> None:
        self._dimension = service.get_int("dimension")
        self._dimension_lock = threading.Lock()

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            with self._dimension_lock:
                if self._dimension is None:
                    self._dimension = len(self._embed_raw(["dimension probe"])[0])
        return self._dimension

    def _check(self, vectors: list[list[float]]) -> list[list[float]]:
        for vector in vectors:
            if self._dimension is not None and len(vector) != self._dimension:
                raise DimensionMismatchError(self._dimension, len(vector))
        return vectors

    def _embed_raw(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        normalized = [normalize_for_embedding(t) for t in texts]
        vectors: list[list[float]] = []
        for start in range(0, len(normalized), MAX_BATCH):
            vectors.extend(self._embed_raw(normalized[start:start + MAX_BATCH]))
        return self._check(vectors)


class OpenAICompatibleEmbedding(_DimensionMixin):
    """
    Embeddings through the ``openai`` SDK pointed at any compatible base URL.

    The ``dimension`` service key, when set, is also sent as the
    ``dimensions`` request parameter (supported by text-embedding-3,
    DashScope text-embedding-v3/v4 and Zhipu embedding-3).
    """

    def __init__(self, service: ResolvedService, timeout: float = 60.0):
        if not service.api_key:
            raise ValueError("API key required for embedding service")
        self.model = service.model
        self._init_dimension(service)
        self._client = openai.OpenAI(
            api_key=service.api_key,
            base_url=service.base_url or None,
            timeout=timeout,
            max_retries=1,
        )

    def _embed_raw(self, texts: list[str]) -> list[list[float]]:
        kwargs = {}
        if self._dimension is not None:
            kwargs["dimensions"] = self._dimension
        try:
            response = self._client.embeddings.create(
                model=self.model, input=texts, **kwargs,
            )
        except openai.OpenAIError as e:
            raise ProviderCallError(
                f"Embedding request failed (model={self.model}): {e}", provider="openai"
            ) from e
        data = sorted(response.data, key=lambda d: d.index)
        if len(data) != len(texts):
            raise ProviderCallError(
                f"Embedding response has {len(data)} vectors for {len(texts)} inputs",
                provider="openai",
            )
        return [list(d.embedding) for d in data]


class OllamaEmbedding(_DimensionMixin):
    """
    Embeddings from a local Ollama server.

    Respects OLLAMA_HOST when the service has no base URL.
    """

    def __init__(self, service: ResolvedService, timeout: float = 60.0):
        self.model = service.model
        self.base_url = ollama_base_url(service.base_url or None)
        self.timeout = timeout
        self._init_dimension(service)

    def _embed_raw(self, texts: list[str]) -> list[list[float]]:
        data = ollama_post(
            self.base_url, "/api/embed",
            {"model": self.model, "input": texts},
            timeout=self.timeout, what="embedding",
        )
        vectors = data.get("embeddings")
        if not isinstance(vectors, list) or len(vectors) != len(texts):
            raise ProviderCallError(
                f"Ollama embedding response malformed (model={self.model})",
                provider="ollama",
            )
        return [list(v) for v in vectors]


# Register providers
_registry = get_registry()
_registry.register_embedding("openai", OpenAICompatibleEmbedding)
_registry.register_embedding("ollama", OllamaEmbedding)
