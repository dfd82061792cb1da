"""
Configuration management for memo.

Two TOML files drive memo:

- ``config.toml``: which services to use and the search/duplicate tuning.
  It lives in a scope directory: ``./.memo`` (local) or ``~/.memo``
  (global). A local config takes precedence when present.
- ``providers.toml``: API keys and service endpoints, always global.
  Services are referenced from config.toml as ``provider.service``.
"""

import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import tomli_w

from .errors import ConfigurationError, ConfigurationResolutionError

logger = logging.getLogger(__name__)


CONFIG_FILENAME = "config.toml"
PROVIDERS_FILENAME = "providers.toml"
SCOPE_DIRNAME = ".memo"


# -----------------------------------------------------------------------------
# Application config
# -----------------------------------------------------------------------------

@dataclass
class DecompositionConfig:
    """Bounds on the query decomposition tree."""
    max_level: int = 2
    max_total_leaves: int = 10
    max_children: int = 5


@dataclass
class MultiQueryConfig:
    """Per-leaf candidate limits and the merge policy."""
    candidates_per_query: int = 30
    top_n_per_leaf: int = 5
    min_per_leaf: int = 1
    max_total_results: int = 50
    max_workers: int = 8


@dataclass
class SearchLevelsConfig:
    """Multi-level search within a single leaf.

    Level ``i`` (0-based) searches at ``base + i * threshold_step``,
    capped at ``max_threshold``.
    """
    max_depth: int = 3
    threshold_step: float = 0.1
    max_threshold: float = 0.95
    branch_limit: int = 10
    require_tag_overlap: bool = False

    def thresholds(self, base: float) -> list[float]:
        """Per-level thresholds; never below ``base``, never decreasing."""
        out = []
        current = base
        for i in range(max(self.max_depth, 1)):
            candidate = min(base + i * self.threshold_step, self.max_threshold)
            current = max(current, candidate)
            out.append(current)
        return out


@dataclass
class RerankPolicy:
    """When to skip the rerank call for a leaf.

    Reranking is skipped when the candidate count is within the requested
    limit, or when the mean vector score already exceeds the threshold of
    the first band whose size covers the candidate count. Each band is
    ``(max_candidates, min_mean_score)``.
    """
    skip_bands: list[tuple[int, float]] = field(
        default_factory=lambda: [(15, 0.80), (25, 0.85)]
    )

    def should_rerank(self, scores: list[float], limit: int) -> bool:
        count = len(scores)
        if count <= limit:
            return False
        mean = sum(scores) / count
        for max_candidates, min_mean in sorted(self.skip_bands):
            if count <= max_candidates:
                return mean <= min_mean
        return True


@dataclass
class PromptsConfig:
    """Optional replacement text for the built-in prompts."""
    decompose: str = ""
    summarize: str = ""


@dataclass
class AppConfig:
    """
    Complete application configuration.

    Attributes:
        brain_path: Directory of the vector store
        embedding: ``provider.service`` reference for embeddings
        rerank: ``provider.service`` reference for reranking (optional)
        llm: ``provider.service`` reference for completions (optional)
        search_limit: Default number of results returned by search
        similarity_threshold: Minimum cosine similarity for search hits
        duplicate_threshold: Similarity at or above which a write is blocked
        provider_timeout: Seconds allowed for each provider call
    """
    brain_path: Path
    embedding: str = ""
    rerank: str = ""
    llm: str = ""
    search_limit: int = 10
    similarity_threshold: float = 0.35
    duplicate_threshold: float = 0.85
    provider_timeout: float = 60.0
    backend: str = "local"
    decomposition: DecompositionConfig = field(default_factory=DecompositionConfig)
    multi_query: MultiQueryConfig = field(default_factory=MultiQueryConfig)
    search: SearchLevelsConfig = field(default_factory=SearchLevelsConfig)
    rerank_policy: RerankPolicy = field(default_factory=RerankPolicy)
    prompts: PromptsConfig = field(default_factory=PromptsConfig)

    # Where this config was loaded from; not persisted
    config_dir: Optional[Path] = None

    def validate(self) -> None:
        """Reject values that would make search or dedup meaningless."""
        for name in ("similarity_threshold", "duplicate_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be between 0 and 1, got {value}")
        positives = {
            "search_limit": self.search_limit,
            "decomposition.max_children": self.decomposition.max_children,
            "multi_query.candidates_per_query": self.multi_query.candidates_per_query,
            "multi_query.top_n_per_leaf": self.multi_query.top_n_per_leaf,
            "multi_query.max_total_results": self.multi_query.max_total_results,
            "multi_query.max_workers": self.multi_query.max_workers,
            "search.branch_limit": self.search.branch_limit,
        }
        for name, value in positives.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")
        if self.decomposition.max_total_leaves < 1:
            raise ConfigurationError("decomposition.max_total_leaves must be at least 1")
        if self.search.threshold_step < 0:
            raise ConfigurationError("search.threshold_step must not be negative")


def _section(data: dict, key: str, cls):
    """Build a nested config dataclass, ignoring unknown keys."""
    raw = data.get(key) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"[{key}] must be a table")
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    unknown = set(raw) - set(known)
    if unknown:
        logger.warning("Ignoring unknown keys in [%s]: %s", key, ", ".join(sorted(unknown)))
    try:
        return cls(**known)
    except TypeError as e:
        raise ConfigurationError(f"Invalid [{key}] section: {e}") from e


def parse_config(data: dict[str, Any], brain_path: Path) -> AppConfig:
    """Build an AppConfig from parsed TOML data."""
    policy = _section(data, "rerank_policy", RerankPolicy)
    try:
        policy.skip_bands = [(int(n), float(s)) for n, s in policy.skip_bands]
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            "rerank_policy.skip_bands must be a list of [max_candidates, min_mean_score]"
        ) from e

    configured_path = data.get("brain_path")
    config = AppConfig(
        brain_path=Path(configured_path).expanduser() if configured_path else brain_path,
        embedding=data.get("embedding", ""),
        rerank=data.get("rerank", ""),
        llm=data.get("llm", ""),
        search_limit=int(data.get("search_limit", 10)),
        similarity_threshold=float(data.get("similarity_threshold", 0.35)),
        duplicate_threshold=float(data.get("duplicate_threshold", 0.85)),
        provider_timeout=float(data.get("provider_timeout", 60.0)),
        backend=data.get("backend", "local"),
        decomposition=_section(data, "decomposition", DecompositionConfig),
        multi_query=_section(data, "multi_query", MultiQueryConfig),
        search=_section(data, "search", SearchLevelsConfig),
        rerank_policy=policy,
        prompts=_section(data, "prompts", PromptsConfig),
    )
    config.validate()
    return config


def load_config(config_dir: Path, *, local: bool = False) -> AppConfig:
    """
    Load configuration from a scope directory.

    In the local scope the store always lives beside the config
    (``./.memo/brain``), whatever ``brain_path`` says.

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    config_path = config_dir / CONFIG_FILENAME
    if not config_path.exists():
        raise ConfigurationError(f"Config not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

    default_brain = config_dir / "brain"
    if local:
        data = {k: v for k, v in data.items() if k != "brain_path"}
    config = parse_config(data, default_brain)
    config.config_dir = config_dir
    return config


def save_config(config: AppConfig, config_dir: Optional[Path] = None) -> Path:
    """Write configuration as TOML. Returns the file path."""
    config_dir = config_dir or config.config_dir
    if config_dir is None:
        raise ConfigurationError("No directory to save config to")
    config_dir.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {
        "brain_path": str(config.brain_path),
        "embedding": config.embedding,
        "rerank": config.rerank,
        "llm": config.llm,
        "search_limit": config.search_limit,
        "similarity_threshold": config.similarity_threshold,
        "duplicate_threshold": config.duplicate_threshold,
        "provider_timeout": config.provider_timeout,
        "backend": config.backend,
        "decomposition": asdict(config.decomposition),
        "multi_query": asdict(config.multi_query),
        "search": asdict(config.search),
        "rerank_policy": {
            "skip_bands": [list(band) for band in config.rerank_policy.skip_bands],
        },
        "prompts": asdict(config.prompts),
    }
    config_path = config_dir / CONFIG_FILENAME
    with open(config_path, "wb") as f:
        tomli_w.dump(data, f)
    return config_path


def init_config(config_dir: Path, *, local: bool = False) -> tuple[AppConfig, bool]:
    """
    Load the scope's config, writing the default one first if missing.

    Returns:
        (config, created) where ``created`` is True if the file was written
    """
    if (config_dir / CONFIG_FILENAME).exists():
        return load_config(config_dir, local=local), False
    config = AppConfig(brain_path=config_dir / "brain", config_dir=config_dir)
    save_config(config, config_dir)
    logger.info("Created default config at %s", config_dir / CONFIG_FILENAME)
    return config, True


def load_or_create_config(config_dir: Path, *, local: bool = False) -> AppConfig:
    """Load existing config or write a default one."""
    return init_config(config_dir, local=local)[0]


# -----------------------------------------------------------------------------
# Scope resolution
# -----------------------------------------------------------------------------

def global_config_dir() -> Path:
    """The global scope directory (``MEMO_HOME`` or ``~/.memo``)."""
    home = os.environ.get("MEMO_HOME")
    if home:
        return Path(home).expanduser()
    return Path.home() / SCOPE_DIRNAME


def local_config_dir(cwd: Optional[Path] = None) -> Path:
    return (cwd or Path.cwd()) / SCOPE_DIRNAME


def resolve_scope(
    force_local: bool = False,
    force_global: bool = False,
    cwd: Optional[Path] = None,
) -> tuple[Path, bool]:
    """
    Pick the scope directory.

    Returns:
        (config_dir, is_local)

    Raises:
        ConfigurationError: If both scopes are forced
    """
    if force_local and force_global:
        raise ConfigurationError("Cannot use --local and --global together")
    if force_global:
        return global_config_dir(), False
    local_dir = local_config_dir(cwd)
    if force_local:
        return local_dir, True
    cwd = cwd or Path.cwd()
    if cwd.resolve() != Path.home().resolve() and (local_dir / CONFIG_FILENAME).exists():
        return local_dir, True
    return global_config_dir(), False


def load_app_config(force_local: bool = False, force_global: bool = False,
                    cwd: Optional[Path] = None) -> AppConfig:
    config_dir, is_local = resolve_scope(force_local, force_global, cwd)
    return load_or_create_config(config_dir, local=is_local)


# -----------------------------------------------------------------------------
# Providers
# -----------------------------------------------------------------------------

@dataclass
class ResolvedService:
    """
    Everything needed to call one remote service.

    Built from providers.toml at resolution time; never persisted.
    ``extra`` holds the remaining service keys as strings; typed fields
    are decoded with get_int / get_float.
    """
    api_key: str
    base_url: str
    model: str
    extra: dict[str, str] = field(default_factory=dict)
    reference: str = ""

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        value = self.extra.get(key)
        if value is None or value == "":
            return default
        try:
            return int(value)
        except ValueError as e:
            raise ConfigurationResolutionError(
                f"{self.reference or 'service'}: {key} must be an integer, got {value!r}"
            ) from e

    def get_float(self, key: str, default: Optional[float] = None) -> Optional[float]:
        value = self.extra.get(key)
        if value is None or value == "":
            return default
        try:
            return float(value)
        except ValueError as e:
            raise ConfigurationResolutionError(
                f"{self.reference or 'service'}: {key} must be a number, got {value!r}"
            ) from e


@dataclass
class ServiceEntry:
    """One service (embed, rerank, llm) of a provider."""
    base_url: str
    model: str
    type: str = ""
    extra: dict[str, str] = field(default_factory=dict)


@dataclass
class ProviderEntry:
    """A provider account: one key, several services."""
    name: str
    api_key: str
    services: dict[str, ServiceEntry] = field(default_factory=dict)


@dataclass
class ProvidersConfig:
    """Parsed providers.toml."""
    providers: dict[str, ProviderEntry] = field(default_factory=dict)

    def resolve(self, reference: str) -> ResolvedService:
        """
        Resolve a ``provider.service`` reference.

        Raises:
            ConfigurationResolutionError: For a malformed reference or an
                unknown provider or service
        """
        parts = reference.split(".") if reference else []
        if len(parts) != 2 or not all(parts):
            raise ConfigurationResolutionError(
                f"Invalid service reference {reference!r}: expected 'provider.service'"
            )
        namespace, service_name = parts
        provider = self.providers.get(namespace)
        if provider is None:
            raise ConfigurationResolutionError(
                f"Provider {namespace!r} not found in {PROVIDERS_FILENAME}"
            )
        service = provider.services.get(service_name)
        if service is None:
            raise ConfigurationResolutionError(
                f"Service {service_name!r} not found under provider {namespace!r}"
            )
        extra = dict(service.extra)
        if service.type:
            extra.setdefault("type", service.type)
        return ResolvedService(
            api_key=provider.api_key,
            base_url=service.base_url,
            model=service.model,
            extra=extra,
            reference=reference,
        )


def parse_providers(data: dict[str, Any]) -> ProvidersConfig:
    """Build ProvidersConfig from parsed TOML data."""
    providers = {}
    for namespace, section in data.items():
        if not isinstance(section, dict):
            continue
        services = {}
        for key, value in section.items():
            if not isinstance(value, dict):
                continue
            try:
                base_url = value["base_url"]
                model = value["model"]
            except KeyError as e:
                raise ConfigurationError(
                    f"[{namespace}.{key}] is missing required key {e.args[0]!r}"
                ) from e
            extra = {
                k: str(v) for k, v in value.items()
                if k not in ("base_url", "model", "type")
            }
            services[key] = ServiceEntry(
                base_url=str(base_url).rstrip("/"),
                model=str(model),
                type=str(value.get("type", "")),
                extra=extra,
            )
        providers[namespace] = ProviderEntry(
            name=str(section.get("name", namespace)),
            api_key=str(section.get("api_key", "")),
            services=services,
        )
    return ProvidersConfig(providers=providers)


def load_providers(config_dir: Optional[Path] = None) -> ProvidersConfig:
    """
    Load providers.toml from the global scope directory.

    A missing file yields an empty configuration; every reference will
    then fail to resolve with a clear message.
    """
    path = (config_dir or global_config_dir()) / PROVIDERS_FILENAME
    if not path.exists():
        logger.debug("No providers file at %s", path)
        return ProvidersConfig()
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e
    return parse_providers(data)
