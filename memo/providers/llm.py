"""
Completion providers using LLMs.

Used by query decomposition and answer summarization. All providers send
the prompt as a single user message at a low temperature.
"""

import logging
import os

import anthropic
import openai

from ..config import ResolvedService
from ..errors import ProviderCallError
from .base import get_registry
from .ollama_utils import ollama_base_url, ollama_post

logger = logging.getLogger(__name__)

TEMPERATURE = 0.2
DEFAULT_MAX_TOKENS = 2048


class OpenAICompletion:
    """
    Chat completions through any OpenAI-compatible endpoint.

    Falls back to OPENAI_API_KEY when the service has no key.
    """

    def __init__(self, service: ResolvedService, timeout: float = 60.0):
        key = service.api_key or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError("API key required. Set api_key in providers.toml or OPENAI_API_KEY")
        self.model = service.model
        self.max_tokens = service.get_int("max_tokens", DEFAULT_MAX_TOKENS)
        self._client = openai.OpenAI(
            api_key=key,
            base_url=service.base_url or None,
            timeout=timeout,
            max_retries=1,
        )
        # Reasoning models reject temperature and use max_completion_tokens
        self._new_api = self.model.startswith(("gpt-5", "o3", "o4"))

    def _completion_kwargs(self) -> dict:
        if self._new_api:
            return {"max_completion_tokens": self.max_tokens}
        return {"max_tokens": self.max_tokens, "temperature": TEMPERATURE}

    def complete(self, prompt: str) -> str:
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                **self._completion_kwargs(),
            )
        except openai.OpenAIError as e:
            raise ProviderCallError(
                f"Completion failed (model={self.model}): {e}", provider="openai"
            ) from e
        if not response.choices or not response.choices[0].message.content:
            raise ProviderCallError(
                f"Completion returned no content (model={self.model})", provider="openai"
            )
        return response.choices[0].message.content.strip()


class AnthropicCompletion:
    """
    Completions using Anthropic's messages API.

    Falls back to ANTHROPIC_API_KEY when the service has no key.
    """

    def __init__(self, service: ResolvedService, timeout: float = 60.0):
        key = service.api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            raise ValueError("API key required. Set api_key in providers.toml or ANTHROPIC_API_KEY")
        self.model = service.model
        self.max_tokens = service.get_int("max_tokens", DEFAULT_MAX_TOKENS)
        kwargs = {"api_key": key, "timeout": timeout, "max_retries": 1}
        # The SDK appends /v1 itself
        if service.base_url:
            kwargs["base_url"] = service.base_url.removesuffix("/v1")
        self.client = anthropic.Anthropic(**kwargs)

    def complete(self, prompt: str) -> str:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=TEMPERATURE,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.AnthropicError as e:
            raise ProviderCallError(
                f"Completion failed (model={self.model}): {e}", provider="anthropic"
            ) from e
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        if not text:
            raise ProviderCallError(
                f"Completion returned no content (model={self.model})", provider="anthropic"
            )
        return text.strip()


class OllamaCompletion:
    """
    Completions using Ollama's native chat API.

    Respects OLLAMA_HOST when the service has no base URL.
    """

    def __init__(self, service: ResolvedService, timeout: float = 60.0):
        self.model = service.model
        self.base_url = ollama_base_url(service.base_url or None)
        self.timeout = timeout

    def complete(self, prompt: str) -> str:
        data = ollama_post(
            self.base_url, "/api/chat",
            {
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "stream": False,
                "options": {"temperature": TEMPERATURE},
            },
            timeout=self.timeout, what="completion",
        )
        try:
            text = data["message"]["content"]
        except (KeyError, TypeError) as e:
            raise ProviderCallError(
                f"Ollama completion response malformed (model={self.model})",
                provider="ollama",
            ) from e
        if not text:
            raise ProviderCallError(
                f"Completion returned no content (model={self.model})", provider="ollama"
            )
        return text.strip()


# Register providers
_registry = get_registry()
_registry.register_completion("openai", OpenAICompletion)
_registry.register_completion("anthropic", AnthropicCompletion)
_registry.register_completion("ollama", OllamaCompletion)
