"""
Core API for memo.

``Memo`` ties the vector store, the providers, the duplicate guard and the
multi-query search pipeline together. The CLI is a thin layer over it.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from .config import AppConfig, ProvidersConfig, load_app_config, load_providers
from .duplicates import DuplicateGuard
from .errors import DimensionMismatchError, MemoryNotFoundError
from .markdown import find_markdown_files, parse_markdown_file
from .protocol import VectorStoreProtocol
from .providers.base import (
    CompletionProvider,
    EmbeddingProvider,
    RerankProvider,
    get_registry,
)
from .search import (
    MultiQuerySearch,
    QueryDecomposer,
    SearchResponse,
    SubQuerySearchEngine,
    Summarizer,
)
from .types import DuplicateMatch, Memory, QueryResult, TimeRange

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    """
    Outcome of a content write.

    When ``blocked`` is true nothing was written and ``duplicates`` lists
    the existing records that stopped it. ``error`` is set for a source
    file that could not be read or parsed.
    """
    memory: Optional[Memory] = None
    duplicates: list[DuplicateMatch] = field(default_factory=list)
    source: Optional[str] = None
    error: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return self.memory is None and bool(self.duplicates)


@dataclass
class StoreInfo:
    """What ``Memo.initialize`` found or created."""
    brain_path: Path
    model: Optional[str]
    dimension: int
    created: bool
    count: int


class IdLocks:
    """
    One lock per record id, so writes to the same record serialize.

    An id's lock lives only while some thread holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # id -> [lock, number of holders and waiters]
        self._locks: dict[str, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire(self, id: str) -> None:
        with self._guard:
            entry = self._locks.get(id)
            if entry is None:
                entry = self._locks[id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            entry[0].acquire()
        except BaseException:
            self._forget(id)
            raise

    def _forget(self, id: str) -> None:
        with self._guard:
            entry = self._locks[id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[id]

    def _release(self, id: str) -> None:
        self._locks[id][0].release()
        self._forget(id)

    @contextmanager
    def hold(self, *ids: str):
        """Acquire the locks of ``ids`` in sorted order."""
        acquired = []
        try:
            for id in sorted(set(ids)):
                self._acquire(id)
                acquired.append(id)
            yield
        finally:
            for id in reversed(acquired):
                self._release(id)


class Memo:
    """
    Personal knowledge base with semantic search.

    Example:
        memo = Memo()
        memo.add("Use uv for Python env management", tags=["python"])
        response = memo.search("how do I manage python environments?")
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        providers: Optional[ProvidersConfig] = None,
        store: Optional[VectorStoreProtocol] = None,
        embedding: Optional[EmbeddingProvider] = None,
        reranker: Optional[RerankProvider] = None,
        completion: Optional[CompletionProvider] = None,
        ops_log: bool = True,
    ) -> None:
        """
        Open a knowledge base.

        Args:
            config: Pre-loaded AppConfig (skips scope discovery)
            providers: Pre-loaded providers (skips reading providers.toml)
            store: Injected vector store (skips backend creation)
            embedding: Injected embedding provider
            reranker: Injected rerank provider
            completion: Injected completion provider
            ops_log: Write an operations log under the brain path
        """
        self._config = config if config is not None else load_app_config()
        self._providers = providers

        # Providers are created on first use so read-only commands need no network
        self._embedding = embedding
        self._reranker = reranker
        self._completion = completion
        self._reranker_resolved = reranker is not None
        self._completion_resolved = completion is not None
        self._provider_init_lock = threading.Lock()

        self._store = store
        self._locks = IdLocks()

        self._ops_log_handler = None
        if ops_log:
            from .logging_config import configure_ops_log
            self._ops_log_handler = configure_ops_log(self._config.brain_path)

    # -- lazy resources --

    @property
    def config(self) -> AppConfig:
        return self._config

    def _get_providers(self) -> ProvidersConfig:
        if self._providers is None:
            self._providers = load_providers()
        return self._providers

    def _get_embedding(self) -> EmbeddingProvider:
        with self._provider_init_lock:
            if self._embedding is None:
                service = self._get_providers().resolve(self._config.embedding)
                self._embedding = get_registry().create_embedding(
                    service, timeout=self._config.provider_timeout,
                )
            return self._embedding

    def _get_reranker(self) -> Optional[RerankProvider]:
        with self._provider_init_lock:
            if not self._reranker_resolved:
                self._reranker_resolved = True
                if self._config.rerank:
                    service = self._get_providers().resolve(self._config.rerank)
                    self._reranker = get_registry().create_rerank(
                        service, timeout=self._config.provider_timeout,
                    )
            return self._reranker

    def _get_completion(self) -> Optional[CompletionProvider]:
        with self._provider_init_lock:
            if not self._completion_resolved:
                self._completion_resolved = True
                if self._config.llm:
                    service = self._get_providers().resolve(self._config.llm)
                    self._completion = get_registry().create_completion(
                        service, timeout=self._config.provider_timeout,
                    )
            return self._completion

    @property
    def store(self) -> VectorStoreProtocol:
        if self._store is None:
            from .backend import create_store
            embedding = self._get_embedding()
            dimension = embedding.dimension
            self._store = create_store(self._config, dimension,
                                       model=getattr(embedding, "model", None))
            logger.debug("Opened %s store at %s (dim=%d)",
                         self._config.backend, self._config.brain_path, dimension)
        return self._store

    def initialize(self) -> StoreInfo:
        """
        Resolve the embedding service and open the store, creating it if
        needed. Nothing is written.

        Raises:
            ConfigurationResolutionError: If the embedding reference does
                not resolve against providers.toml
        """
        embedding = self._get_embedding()
        store = self.store
        model = getattr(store, "model", None) or getattr(embedding, "model", None)
        info = StoreInfo(
            brain_path=self._config.brain_path,
            model=model,
            dimension=store.dimension(),
            created=getattr(store, "created", False),
            count=store.count(),
        )
        logger.info("Initialized store at %s (model=%s, dim=%d, %d memories)",
                    info.brain_path, info.model, info.dimension, info.count)
        return info

    @property
    def guard(self) -> DuplicateGuard:
        return DuplicateGuard(self.store, self._config.duplicate_threshold)

    def _embed(self, content: str) -> list[float]:
        vector = self._get_embedding().embed(content)
        expected = self.store.dimension()
        if len(vector) != expected:
            raise DimensionMismatchError(expected, len(vector))
        return vector

    # -- writes --

    def add(
        self,
        content: str,
        tags: Optional[Iterable[str]] = None,
        *,
        force: bool = False,
        threshold: Optional[float] = None,
        source_file: Optional[str] = None,
    ) -> WriteResult:
        """
        Store a new memory unless it duplicates an existing one.

        Args:
            content: Note text
            tags: Labels for the note
            force: Write even when duplicates are found
            threshold: Override of the configured duplicate threshold
            source_file: File the note came from
        """
        content = content.strip()
        if not content:
            raise ValueError("Content must not be empty")
        vector = self._embed(content)
        duplicates = self.guard.check(vector, content, threshold)
        if duplicates and not force:
            logger.info("Blocked add: %d duplicate(s)", len(duplicates))
            return WriteResult(duplicates=duplicates, source=source_file)

        memory = Memory.new(content, vector, tags or (), source_file=source_file)
        with self._locks.hold(memory.id):
            self.store.insert(memory)
        logger.info("Added %s (%d chars)", memory.id, len(content))
        return WriteResult(memory=memory, duplicates=duplicates, source=source_file)

    def add_file(
        self,
        path: Path,
        tags: Optional[Iterable[str]] = None,
        *,
        force: bool = False,
        threshold: Optional[float] = None,
    ) -> list[WriteResult]:
        """Store each section of a Markdown file; frontmatter tags are added."""
        path = Path(path)
        return self._add_sections(path, parse_markdown_file(path), tags,
                                  force=force, threshold=threshold)

    def _add_sections(self, path, sections, tags, *, force, threshold) -> list[WriteResult]:
        results = []
        for section in sections:
            section_tags = set(section.tags) | set(tags or ())
            results.append(self.add(
                section.content, section_tags,
                force=force, threshold=threshold, source_file=str(path),
            ))
        logger.info("Imported %s: %d sections", path, len(results))
        return results

    def add_directory(
        self,
        path: Path,
        tags: Optional[Iterable[str]] = None,
        *,
        force: bool = False,
        threshold: Optional[float] = None,
    ) -> list[WriteResult]:
        """
        Store every Markdown file under a directory.

        A file that cannot be decoded or has invalid frontmatter is
        reported as a result with ``error`` set; the walk continues.
        """
        results = []
        for file_path in find_markdown_files(Path(path)):
            try:
                sections = parse_markdown_file(file_path)
            except (OSError, ValueError) as e:
                logger.warning("Skipped %s: %s", file_path, e)
                results.append(WriteResult(source=str(file_path), error=str(e)))
                continue
            results.extend(self._add_sections(file_path, sections, tags,
                                              force=force, threshold=threshold))
        return results

    def update(
        self,
        id: str,
        content: str,
        tags: Optional[Iterable[str]] = None,
        *,
        force: bool = False,
        threshold: Optional[float] = None,
    ) -> WriteResult:
        """
        Rewrite a memory's content (and tags, when given).

        ``created_at`` is kept; ``updated_at`` becomes now.

        Raises:
            MemoryNotFoundError: If ``id`` does not exist
        """
        content = content.strip()
        if not content:
            raise ValueError("Content must not be empty")
        with self._locks.hold(id):
            existing = self.store.find_memory_by_id(id)
            if existing is None:
                raise MemoryNotFoundError(id)
            vector = self._embed(content)
            duplicates = self.guard.check(vector, content, threshold, exclude_id=id)
            if duplicates and not force:
                logger.info("Blocked update of %s: %d duplicate(s)", id, len(duplicates))
                return WriteResult(duplicates=duplicates)
            self.store.update(id, content, vector, list(tags) if tags is not None else None)
            updated = self.store.find_memory_by_id(id)
        logger.info("Updated %s", id)
        return WriteResult(memory=updated, duplicates=duplicates)

    def merge(
        self,
        ids: Iterable[str],
        content: str,
        tags: Optional[Iterable[str]] = None,
        *,
        force: bool = False,
        threshold: Optional[float] = None,
    ) -> WriteResult:
        """
        Replace several memories with one.

        The new record keeps the earliest ``created_at`` of the inputs and
        the union of their tags unless ``tags`` is given. It is inserted
        before the inputs are deleted, so a failed insert loses nothing.

        Raises:
            ValueError: If fewer than two distinct ids are given
            MemoryNotFoundError: If any id does not exist
        """
        ids = list(dict.fromkeys(ids))
        if len(ids) < 2:
            raise ValueError("Merge needs at least two memory ids")
        content = content.strip()
        if not content:
            raise ValueError("Content must not be empty")

        with self._locks.hold(*ids):
            originals = []
            for id in ids:
                memory = self.store.find_memory_by_id(id)
                if memory is None:
                    raise MemoryNotFoundError(id)
                originals.append(memory)

            vector = self._embed(content)
            duplicates = self.guard.check(vector, content, threshold, exclude_ids=ids)
            if duplicates and not force:
                logger.info("Blocked merge of %s: %d duplicate(s)", ids, len(duplicates))
                return WriteResult(duplicates=duplicates)

            merged_tags = set(tags) if tags is not None else set().union(*(m.tags for m in originals))
            earliest = min(m.created_at for m in originals)
            merged = Memory.new(content, vector, merged_tags, created_at=earliest)
            self.store.insert(merged)
            for id in ids:
                self.store.delete(id)
        logger.info("Merged %s into %s", ", ".join(ids), merged.id)
        return WriteResult(memory=merged, duplicates=duplicates)

    def delete(self, id: str) -> None:
        """
        Raises:
            MemoryNotFoundError: If ``id`` does not exist
        """
        with self._locks.hold(id):
            self.store.delete(id)
        logger.info("Deleted %s", id)

    def clear(self) -> int:
        """Delete every memory. Returns how many there were."""
        count = self.store.count()
        self.store.clear()
        logger.info("Cleared %d memories", count)
        return count

    # -- reads --

    def get(self, id: str) -> Optional[QueryResult]:
        return self.store.find_by_id(id)

    def list(self) -> list[QueryResult]:
        return self.store.list()

    def count(self) -> int:
        return self.store.count()

    def search(
        self,
        query: str,
        *,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        time_range: Optional[TimeRange] = None,
        summarize: bool = True,
        decompose: bool = True,
        cancel: Optional[threading.Event] = None,
    ) -> SearchResponse:
        """
        Multi-query semantic search.

        Args:
            query: Question in natural language
            limit: Maximum results (default: config search_limit)
            threshold: Minimum similarity (default: config similarity_threshold)
            time_range: Filter on ``updated_at``
            summarize: Synthesize an answer when an LLM is configured
            decompose: Break the question into sub-questions when an LLM
                is configured
            cancel: Set to abandon the search
        """
        query = query.strip()
        if not query:
            raise ValueError("Query must not be empty")
        config = self._config
        completion = self._get_completion()
        engine = SubQuerySearchEngine(
            self.store,
            self._get_embedding(),
            self._get_reranker(),
            levels=config.search,
            rerank_policy=config.rerank_policy,
        )
        decomposer = None
        summarizer = None
        if completion is not None:
            if decompose:
                decomposer = QueryDecomposer(
                    completion,
                    max_children=config.decomposition.max_children,
                    strategy=config.prompts.decompose,
                )
            summarizer = Summarizer(completion, instructions=config.prompts.summarize)
        pipeline = MultiQuerySearch(
            engine,
            decomposer=decomposer,
            summarizer=summarizer,
            decomposition=config.decomposition,
            multi_query=config.multi_query,
        )
        return pipeline.run(
            query,
            limit=limit if limit is not None else config.search_limit,
            threshold=threshold if threshold is not None else config.similarity_threshold,
            time_range=time_range,
            summarize=summarize,
            cancel=cancel,
        )

    def close(self) -> None:
        """Release the store and detach the operations log."""
        if self._store is not None:
            self._store.close()
            self._store = None
        if self._ops_log_handler is not None:
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self) -> "Memo":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
