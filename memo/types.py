"""
Data types for the memo knowledge base.
"""

import enum
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime.

    All timestamps in memo are UTC. Stores persist them as integer
    milliseconds; see to_millis / from_millis.
    """
    return datetime.now(timezone.utc)


def to_millis(dt: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def from_millis(ms: int) -> datetime:
    """Convert epoch milliseconds back to an aware UTC datetime."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


_TIME_FORMATS = ("%Y-%m-%d %H:%M", "%Y-%m-%d")


def parse_time_filter(text: str) -> datetime:
    """Parse a time filter argument.

    Accepts ``YYYY-MM-DD`` or ``YYYY-MM-DD HH:MM``, interpreted as UTC.
    A date without a time means the start of that day.

    Raises:
        ValueError: If the text matches neither format
    """
    text = text.strip()
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    raise ValueError(
        f"Invalid time format: {text!r}. Use 'YYYY-MM-DD' or 'YYYY-MM-DD HH:MM'"
    )


def format_timestamp(dt: datetime) -> str:
    """Short display form used by the CLI."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M")


class ScoreType(str, enum.Enum):
    """Where a search score came from."""
    VECTOR = "vector"
    RERANK = "rerank"

    @property
    def prefix(self) -> str:
        return "R" if self is ScoreType.RERANK else "V"


@dataclass(frozen=True)
class TimeRange:
    """Inclusive filter on ``updated_at``. Either bound may be open."""
    after: Optional[datetime] = None
    before: Optional[datetime] = None

    def contains(self, ts: datetime) -> bool:
        if self.after is not None and ts < self.after:
            return False
        if self.before is not None and ts > self.before:
            return False
        return True


def build_time_range(after: Optional[str], before: Optional[str]) -> Optional[TimeRange]:
    """Build a TimeRange from CLI-style strings; None when both are absent."""
    if not after and not before:
        return None
    return TimeRange(
        after=parse_time_filter(after) if after else None,
        before=parse_time_filter(before) if before else None,
    )


@dataclass
class Memory:
    """
    A stored note with its embedding.

    Attributes:
        id: Unique identifier (uuid4)
        content: The note text
        tags: Unordered set of labels
        vector: Embedding; length equals the store dimension
        source_file: File the note was imported from, if any
        created_at: First creation time, preserved across rewrites
        updated_at: Last rewrite time
    """
    id: str
    content: str
    tags: frozenset[str]
    vector: list[float]
    created_at: datetime
    updated_at: datetime
    source_file: Optional[str] = None

    @classmethod
    def new(
        cls,
        content: str,
        vector: list[float],
        tags=(),
        *,
        source_file: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "Memory":
        now = utc_now()
        return cls(
            id=str(uuid.uuid4()),
            content=content,
            tags=frozenset(tags),
            vector=list(vector),
            created_at=created_at or now,
            updated_at=now,
            source_file=source_file,
        )

    def to_result(self, score: Optional[float] = None,
                  score_type: Optional[ScoreType] = None) -> "QueryResult":
        return QueryResult(
            id=self.id,
            content=self.content,
            tags=self.tags,
            updated_at=self.updated_at,
            score=score,
            score_type=score_type,
        )


@dataclass(frozen=True)
class QueryResult:
    """A read-only copy of a record returned from a listing or a search.

    ``score`` is None for plain listings. Search scores carry their
    provenance in ``score_type``.
    """
    id: str
    content: str
    tags: frozenset[str]
    updated_at: datetime
    score: Optional[float] = None
    score_type: Optional[ScoreType] = None

    @property
    def score_label(self) -> str:
        if self.score is None:
            return "-"
        prefix = self.score_type.prefix if self.score_type else "V"
        return f"{prefix}:{self.score:.2f}"

    def with_score(self, score: float, score_type: ScoreType) -> "QueryResult":
        return QueryResult(
            id=self.id,
            content=self.content,
            tags=self.tags,
            updated_at=self.updated_at,
            score=score,
            score_type=score_type,
        )


@dataclass(frozen=True)
class DuplicateMatch:
    """An existing record that is too similar to a pending write."""
    candidate: QueryResult
    score: float


@dataclass
class QueryNode:
    """A node in the query decomposition tree.

    The root (level 0) holds the original question. ``dimension`` names
    the facet a sub-question explores.
    """
    text: str
    level: int = 0
    dimension: str = "root"
    children: list["QueryNode"] = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def leaves(self) -> list["QueryNode"]:
        """Leaves in breadth-first, left-to-right order."""
        out = []
        queue = deque([self])
        while queue:
            node = queue.popleft()
            if node.is_leaf:
                out.append(node)
            else:
                queue.extend(node.children)
        return out

    def depth(self) -> int:
        """Deepest level in the tree."""
        deepest = self.level
        queue = deque([self])
        while queue:
            node = queue.popleft()
            deepest = max(deepest, node.level)
            queue.extend(node.children)
        return deepest
