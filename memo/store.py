"""
ChromaDB vector store for memo.

One persistent collection holds every memory. Content is the Chroma
document; tags (JSON), source file and timestamps (epoch milliseconds) are
metadata. The collection uses cosine space, so similarity is
``1 - distance``.
"""

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Optional

import chromadb
from chromadb.errors import ChromaError

from .errors import DimensionMismatchError, MemoryNotFoundError, StorageError
from .types import Memory, QueryResult, ScoreType, TimeRange, from_millis, to_millis, utc_now

logger = logging.getLogger(__name__)

COLLECTION_NAME = "memories"


@contextmanager
def _storage_errors(operation: str):
    """Translate backend exceptions into StorageError."""
    try:
        yield
    except (ChromaError, ValueError, OSError, RuntimeError) as e:
        if isinstance(e, (DimensionMismatchError, MemoryNotFoundError)):
            raise
        raise StorageError(f"Vector store {operation} failed: {e}") from e


class ChromaStore:
    """
    Persistent ChromaDB implementation of VectorStoreProtocol.

    Args:
        store_path: Directory for the Chroma database
        dimension: Embedding dimension; must match an existing collection
        model: Embedding model name, recorded when the collection is created
    """

    def __init__(self, store_path: Path, dimension: int, model: Optional[str] = None):
        self._path = Path(store_path)
        self._dimension = dimension
        self._lock = threading.Lock()
        self.model = model
        self.created = False
        self._path.mkdir(parents=True, exist_ok=True)
        with _storage_errors("open"):
            self._client = chromadb.PersistentClient(path=str(self._path))
            self._collection = self._open_collection()

    def _open_collection(self):
        try:
            collection = self._client.get_collection(name=COLLECTION_NAME)
        except (ValueError, ChromaError):
            # Not created yet; older chromadb raises ValueError here
            metadata = {"hnsw:space": "cosine", "dimension": self._dimension}
            if self.model:
                metadata["model"] = self.model
            self.created = True
            logger.info("Created collection at %s (model=%s, dim=%d)",
                        self._path, self.model, self._dimension)
            return self._client.create_collection(name=COLLECTION_NAME, metadata=metadata)
        stored_metadata = collection.metadata or {}
        stored = stored_metadata.get("dimension")
        if stored is not None and int(stored) != self._dimension:
            raise DimensionMismatchError(int(stored), self._dimension)
        self.model = stored_metadata.get("model") or self.model
        return collection

    # -- helpers --

    def _check_vector(self, vector: list[float]) -> None:
        if len(vector) != self._dimension:
            raise DimensionMismatchError(self._dimension, len(vector))

    @staticmethod
    def _metadata(memory: Memory) -> dict[str, Any]:
        return {
            "tags": json.dumps(sorted(memory.tags)),
            "source_file": memory.source_file or "",
            "created_at": to_millis(memory.created_at),
            "updated_at": to_millis(memory.updated_at),
        }

    @staticmethod
    def _to_result(id: str, document: str, metadata: dict,
                   score: Optional[float] = None) -> QueryResult:
        return QueryResult(
            id=id,
            content=document or "",
            tags=frozenset(json.loads(metadata.get("tags") or "[]")),
            updated_at=from_millis(int(metadata["updated_at"])),
            score=score,
            score_type=ScoreType.VECTOR if score is not None else None,
        )

    # -- writes --

    def insert(self, memory: Memory) -> None:
        self.insert_batch([memory])

    def insert_batch(self, memories: Iterable[Memory]) -> None:
        memories = list(memories)
        if not memories:
            return
        for memory in memories:
            self._check_vector(memory.vector)
        with self._lock, _storage_errors("insert"):
            self._collection.add(
                ids=[m.id for m in memories],
                embeddings=[list(m.vector) for m in memories],
                documents=[m.content for m in memories],
                metadatas=[self._metadata(m) for m in memories],
            )
        logger.debug("Inserted %d memories", len(memories))

    def update(self, id: str, content: str, vector: list[float],
               tags: Optional[Iterable[str]] = None) -> None:
        self._check_vector(vector)
        with self._lock:
            existing = self._get_one(id, include_vector=False)
            if existing is None:
                raise MemoryNotFoundError(id)
            metadata = self._metadata(existing)
            if tags is not None:
                metadata["tags"] = json.dumps(sorted(set(tags)))
            metadata["updated_at"] = to_millis(utc_now())
            with _storage_errors("update"):
                self._collection.update(
                    ids=[id],
                    embeddings=[list(vector)],
                    documents=[content],
                    metadatas=[metadata],
                )

    def delete(self, id: str) -> None:
        with self._lock:
            with _storage_errors("delete"):
                found = self._collection.get(ids=[id], include=[])
            if not found["ids"]:
                raise MemoryNotFoundError(id)
            with _storage_errors("delete"):
                self._collection.delete(ids=[id])

    def clear(self) -> None:
        with self._lock, _storage_errors("clear"):
            self._client.delete_collection(COLLECTION_NAME)
            self._collection = self._open_collection()

    # -- reads --

    def _get_one(self, id: str, include_vector: bool) -> Optional[Memory]:
        include = ["documents", "metadatas"]
        if include_vector:
            include.append("embeddings")
        with _storage_errors("get"):
            found = self._collection.get(ids=[id], include=include)
        if not found["ids"]:
            return None
        metadata = found["metadatas"][0]
        vector = []
        if include_vector and found.get("embeddings") is not None:
            vector = [float(x) for x in found["embeddings"][0]]
        return Memory(
            id=found["ids"][0],
            content=found["documents"][0] or "",
            tags=frozenset(json.loads(metadata.get("tags") or "[]")),
            vector=vector,
            created_at=from_millis(int(metadata["created_at"])),
            updated_at=from_millis(int(metadata["updated_at"])),
            source_file=metadata.get("source_file") or None,
        )

    def find_memory_by_id(self, id: str) -> Optional[Memory]:
        return self._get_one(id, include_vector=True)

    def find_by_id(self, id: str) -> Optional[QueryResult]:
        memory = self._get_one(id, include_vector=False)
        return memory.to_result() if memory else None

    def _query(self, vector: list[float], n_results: int) -> list[QueryResult]:
        self._check_vector(vector)
        total = self.count()
        if total == 0 or n_results <= 0:
            return []
        with _storage_errors("query"):
            found = self._collection.query(
                query_embeddings=[list(vector)],
                n_results=min(n_results, total),
                include=["documents", "metadatas", "distances"],
            )
        return [
            self._to_result(id, doc, meta, score=1.0 - float(dist))
            for id, doc, meta, dist in zip(
                found["ids"][0], found["documents"][0],
                found["metadatas"][0], found["distances"][0],
            )
        ]

    def search_by_vector(self, vector: list[float], limit: int, threshold: float,
                         time_range: Optional[TimeRange] = None) -> list[QueryResult]:
        # With a time filter, over-fetch so the filter runs on scored hits
        n_results = limit if time_range is None else self.count()
        hits = [r for r in self._query(vector, n_results) if r.score >= threshold]
        if time_range is not None:
            hits = [r for r in hits if time_range.contains(r.updated_at)]
        return hits[:limit]

    def find_similar(self, vector: list[float], limit: int, threshold: float,
                     exclude_id: Optional[str] = None) -> list[QueryResult]:
        n_results = limit + 1 if exclude_id else limit
        hits = [
            r for r in self._query(vector, n_results)
            if r.score >= threshold and r.id != exclude_id
        ]
        return hits[:limit]

    def dimension(self) -> int:
        return self._dimension

    def count(self) -> int:
        with _storage_errors("count"):
            return self._collection.count()

    def close(self) -> None:
        """Release the client. Chroma persists on write, so nothing to flush."""
        self._collection = None
        self._client = None

    # Defined last: the name shadows the builtin inside the class body
    def list(self) -> list[QueryResult]:
        with _storage_errors("list"):
            found = self._collection.get(include=["documents", "metadatas"])
        results = [
            self._to_result(id, doc, meta)
            for id, doc, meta in zip(found["ids"], found["documents"], found["metadatas"])
        ]
        results.sort(key=lambda r: r.updated_at, reverse=True)
        return results
