"""
Merging per-leaf results.

Every leaf with results is guaranteed a minimum number of its own best
entries in the output, then the remaining room is filled by global score.
"""

from dataclasses import dataclass
from typing import Sequence

from ..types import QueryResult
from .engine import ranking_key


@dataclass
class LeafResults:
    """Results of one leaf, labelled for logging."""
    label: str
    results: list[QueryResult]


def _prefer(current: QueryResult, other: QueryResult) -> QueryResult:
    """Higher score wins; equal scores go to the newer record."""
    current_score = current.score or 0.0
    other_score = other.score or 0.0
    if other_score > current_score:
        return other
    if other_score == current_score and other.updated_at > current.updated_at:
        return other
    return current


def merge_results(
    per_leaf: Sequence[LeafResults],
    *,
    min_per_leaf: int,
    max_total_results: int,
    requested_limit: int,
) -> list[QueryResult]:
    """
    Merge leaf results into one ranked list.

    - Duplicates by id keep the best-scored copy.
    - Each non-empty leaf gets ``min(min_per_leaf, len(leaf))`` of its own
      top entries; an entry already chosen for another leaf counts.
    - The output never exceeds ``min(requested_limit, max_total_results)``;
      if the guarantees alone exceed it, the size bound wins.
    - Output is in global rank order, so merging an output again as a
      single leaf returns it unchanged.
    """
    cap = min(requested_limit, max_total_results)
    if cap <= 0:
        return []

    best: dict[str, QueryResult] = {}
    for leaf in per_leaf:
        for result in leaf.results:
            existing = best.get(result.id)
            best[result.id] = result if existing is None else _prefer(existing, result)
    if not best:
        return []

    guaranteed: set[str] = set()
    if min_per_leaf > 0:
        for leaf in per_leaf:
            own = sorted({r.id: r for r in leaf.results}.values(), key=ranking_key)
            need = min(min_per_leaf, len(own))
            # Already-chosen entries of this leaf count toward its share
            have = sum(1 for r in own[:need] if r.id in guaranteed)
            for result in own:
                if have >= need:
                    break
                if result.id not in guaranteed:
                    guaranteed.add(result.id)
                    have += 1

    ordered = sorted(best.values(), key=ranking_key)
    selected: set[str] = set()
    for result in ordered:
        if len(selected) >= cap:
            break
        if result.id in guaranteed:
            selected.add(result.id)
    for result in ordered:
        if len(selected) >= cap:
            break
        selected.add(result.id)

    return [r for r in ordered if r.id in selected]
