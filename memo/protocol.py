"""
Protocol definition for memo storage backends.

The local backend is ChromaDB (see store.py). Other backends register
through the ``memo.backends`` entry point group (see backend.py).
"""

from typing import Iterable, Optional, Protocol, runtime_checkable

from .types import Memory, QueryResult, TimeRange


@runtime_checkable
class VectorStoreProtocol(Protocol):
    """
    Key-addressed records with fixed-dimension vectors.

    Scores returned by searches are cosine similarities in [0, 1] (higher
    is closer). Results below the requested threshold are dropped. Backend
    failures raise StorageError; a missing id on update/delete raises
    MemoryNotFoundError; a vector of the wrong length raises
    DimensionMismatchError.
    """

    def insert(self, memory: Memory) -> None: ...

    def insert_batch(self, memories: Iterable[Memory]) -> None: ...

    def update(
        self,
        id: str,
        content: str,
        vector: list[float],
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        """Rewrite content and vector, keep ``created_at``, refresh ``updated_at``.

        Tags are replaced when given and kept otherwise.
        """
        ...

    def delete(self, id: str) -> None: ...

    def clear(self) -> None: ...

    def search_by_vector(
        self,
        vector: list[float],
        limit: int,
        threshold: float,
        time_range: Optional[TimeRange] = None,
    ) -> list[QueryResult]:
        """Nearest records at or above ``threshold``, best first.

        ``time_range`` filters on ``updated_at`` after scoring.
        """
        ...

    def find_by_id(self, id: str) -> Optional[QueryResult]: ...

    def find_memory_by_id(self, id: str) -> Optional[Memory]:
        """Full record including vector and ``created_at``."""
        ...

    def find_similar(
        self,
        vector: list[float],
        limit: int,
        threshold: float,
        exclude_id: Optional[str] = None,
    ) -> list[QueryResult]:
        """Like search_by_vector but never returns ``exclude_id``."""
        ...

    def dimension(self) -> int: ...

    def count(self) -> int: ...

    def close(self) -> None: ...

    # Defined last: the name shadows the builtin inside the class body
    def list(self) -> list[QueryResult]:
        """All records, newest ``updated_at`` first, without scores."""
        ...
