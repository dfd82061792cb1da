"""
Shared Ollama utilities: base URL resolution and JSON calls.
"""

import logging
import os

import requests

from ..errors import ProviderCallError

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


def ollama_base_url(base_url: str | None = None) -> str:
    """Resolve the Ollama server URL.

    Order: explicit value, OLLAMA_HOST, localhost default. A trailing
    ``/v1`` (OpenAI-compatible path) is stripped since the native API
    lives at the root.
    """
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    url = url.rstrip("/")
    if url.endswith("/v1"):
        url = url[:-3]
    return url


def ollama_post(base_url: str, path: str, payload: dict, *,
                timeout: float, what: str) -> dict:
    """POST to the Ollama native API and return the decoded JSON body.

    Raises ProviderCallError for transport errors, non-2xx responses and
    non-JSON bodies.
    """
    url = f"{base_url}{path}"
    try:
        response = requests.post(url, json=payload, timeout=(10, timeout))
    except requests.RequestException as e:
        raise ProviderCallError(
            f"Cannot reach Ollama at {base_url} for {what}: {e}", provider="ollama"
        ) from e
    if not response.ok:
        detail = response.text[:200] if response.text else ""
        raise ProviderCallError(
            f"Ollama {what} failed (model={payload.get('model')}): "
            f"HTTP {response.status_code} from {base_url}. {detail}",
            provider="ollama",
        )
    try:
        return response.json()
    except ValueError as e:
        raise ProviderCallError(
            f"Ollama {what} returned invalid JSON", provider="ollama"
        ) from e
