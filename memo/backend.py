"""
Pluggable vector store factory.

``backend = "local"`` (default) creates the ChromaDB store under the
configured brain path. External backends register via the
``memo.backends`` entry point group.

External backend packages provide a factory function::

    def create_store(config: AppConfig, dimension: int) -> VectorStoreProtocol:
        ...

and register it in their pyproject.toml::

    [project.entry-points."memo.backends"]
    my-backend = "my_package.backend:create_store"
"""

from typing import Optional

from .config import AppConfig
from .errors import ConfigurationError
from .protocol import VectorStoreProtocol


def create_store(config: AppConfig, dimension: int,
                 model: Optional[str] = None) -> VectorStoreProtocol:
    """Create the vector store named by ``config.backend``.

    ``model`` is recorded by the local store; external factories receive
    only the config and dimension.
    """
    if config.backend == "local":
        from .store import ChromaStore
        return ChromaStore(config.brain_path, dimension, model=model)
    return _load_backend(config.backend, config, dimension)


def _load_backend(name: str, config: AppConfig, dimension: int) -> VectorStoreProtocol:
    """Load a backend by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="memo.backends")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config, dimension)

    available = [ep.name for ep in eps]
    if available:
        raise ConfigurationError(
            f"Unknown backend: {name!r}. Available: {available}"
        )
    raise ConfigurationError(
        f"Unknown backend: {name!r}. No backends registered."
    )
