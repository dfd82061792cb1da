"""
Rerank providers.

Both services take ``{model, query, documents, top_n}`` and answer with
``results: [{index, relevance_score}]``:

- ``dashscope``: Aliyun DashScope, ``POST {base_url}/reranks``
- ``zhipu``: Zhipu BigModel, ``POST {base_url}/rerank``
"""

import logging
from typing import Optional

import requests

from ..config import ResolvedService
from ..errors import ProviderCallError
from .base import RerankItem, get_registry

logger = logging.getLogger(__name__)


class _HttpRerank:
    """Shared request/response handling for JSON rerank endpoints."""

    name = ""
    path = ""

    def __init__(self, service: ResolvedService, timeout: float = 60.0):
        if not service.api_key:
            raise ValueError("API key required for rerank service")
        self.model = service.model
        self.base_url = service.base_url.rstrip("/")
        self.timeout = timeout
        self._api_key = service.api_key

    def rerank(self, query: str, documents: list[str],
               top_n: Optional[int] = None) -> list[RerankItem]:
        if not documents:
            return []
        payload = {
            "model": self.model,
            "query": query,
            "documents": documents,
            "top_n": min(top_n or len(documents), len(documents)),
        }
        url = f"{self.base_url}{self.path}"
        try:
            response = requests.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=(10, self.timeout),
            )
        except requests.RequestException as e:
            raise ProviderCallError(f"Rerank request to {url} failed: {e}", provider=self.name) from e
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise ProviderCallError(
                f"Rerank failed (model={self.model}): HTTP {response.status_code} "
                f"from {url}. {detail}",
                provider=self.name,
            )
        try:
            results = response.json()["results"]
            items = [
                RerankItem(index=int(r["index"]), score=float(r["relevance_score"]))
                for r in results
            ]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderCallError(
                f"Rerank response from {url} is malformed: {e}", provider=self.name
            ) from e
        items.sort(key=lambda item: item.score, reverse=True)
        return items


class DashScopeRerank(_HttpRerank):
    """Aliyun DashScope rerank (e.g. qwen3-rerank, gte-rerank-v2)."""
    name = "dashscope"
    path = "/reranks"


class ZhipuRerank(_HttpRerank):
    """Zhipu BigModel rerank."""
    name = "zhipu"
    path = "/rerank"

    def __init__(self, service: ResolvedService, timeout: float = 60.0):
        super().__init__(service, timeout=timeout)
        logger.warning(
            "Zhipu rerank scores are coarse; consider DashScope for better ordering"
        )


# Register providers
_registry = get_registry()
_registry.register_rerank("dashscope", DashScopeRerank)
_registry.register_rerank("zhipu", ZhipuRerank)
