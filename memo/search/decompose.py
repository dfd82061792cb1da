"""
Query decomposition.

A broad question is broken into sub-questions along five facets with an
LLM, breadth-first, into a tree whose depth and leaf count are bounded.
Leaves of the tree are searched independently.
"""

import logging
import re
import xml.etree.ElementTree as ET
from collections import deque
from dataclasses import dataclass
from typing import Optional
from xml.sax.saxutils import escape

from ..providers.base import CompletionProvider
from ..types import QueryNode

logger = logging.getLogger(__name__)


FACETS = ("core", "why", "how", "case", "note")
MIN_QUERY_LEN = 5
MAX_QUERY_LEN = 300

DEFAULT_STRATEGY = """\
Break the question down along these facets:
- core: the central question itself
- why: causes and underlying principles
- how: methods and steps
- case: examples and practice
- note: caveats and things to watch out for

Rules:
1. Pick the 3-5 most relevant facets; you do not need all of them.
2. Write one sub-question per chosen facet.
3. Each sub-question must be a complete natural-language question.
4. Mark whether each sub-question needs further breakdown
   (needs_refinement true: still too broad; false: specific enough to search)."""

PROMPT_TEMPLATE = """\
You are an expert at analysing search questions.

{strategy}

Output format (XML):

<decomposition>
  <subquery>
    <dimension>core</dimension>
    <query>a complete question</query>
    <needs_refinement>false</needs_refinement>
  </subquery>
</decomposition>

Question:
<user_query>
{query}
</user_query>

Output only the XML, starting at <decomposition> and ending at
</decomposition>. Do not add code fences or any other text."""

_BLOCK_RE = re.compile(r"<decomposition>.*?</decomposition>", re.DOTALL)


@dataclass(frozen=True)
class SubQuery:
    """One sub-question proposed by the model."""
    dimension: str
    query: str
    needs_refinement: bool


def build_prompt(query: str, strategy: Optional[str] = None) -> str:
    """Prompt for one decomposition call. The query is XML-escaped."""
    return PROMPT_TEMPLATE.format(
        strategy=(strategy or DEFAULT_STRATEGY).strip(),
        query=escape(query, {'"': "&quot;", "'": "&apos;"}),
    )


def parse_subqueries(output: str, max_children: int) -> list[SubQuery]:
    """Extract valid sub-questions from a model reply.

    Invalid facets and questions outside the length bounds are dropped.
    Returns an empty list when the reply has no parseable block.
    """
    match = _BLOCK_RE.search(output)
    if not match:
        logger.debug("Decomposition reply has no <decomposition> block")
        return []
    try:
        root = ET.fromstring(match.group(0))
    except ET.ParseError as e:
        logger.warning("Decomposition reply is not valid XML: %s", e)
        return []

    subqueries = []
    for element in root.findall("subquery"):
        dimension = (element.findtext("dimension") or "").strip()
        query = (element.findtext("query") or "").strip()
        refine = (element.findtext("needs_refinement") or "").strip().lower()
        if dimension not in FACETS or not MIN_QUERY_LEN <= len(query) <= MAX_QUERY_LEN:
            logger.warning("Skipping invalid subquery: dim=%s, query_len=%d",
                           dimension, len(query))
            continue
        subqueries.append(SubQuery(dimension, query, refine == "true"))
        if len(subqueries) >= max_children:
            break
    return subqueries


class QueryDecomposer:
    """
    Builds a bounded decomposition tree.

    Args:
        completion: LLM used for each decomposition call
        max_children: Most sub-questions kept from one call
        strategy: Replacement for the built-in facet instructions
    """

    def __init__(self, completion: CompletionProvider, *, max_children: int = 5,
                 strategy: Optional[str] = None):
        self._completion = completion
        self._max_children = max_children
        self._strategy = strategy or None

    def _expand(self, text: str) -> list[SubQuery]:
        output = self._completion.complete(build_prompt(text, self._strategy))
        return parse_subqueries(output, self._max_children)

    def decompose(self, query: str, max_level: int, max_total_leaves: int) -> QueryNode:
        """
        Decompose ``query`` breadth-first.

        The leaf count never exceeds ``max_total_leaves`` and no leaf sits
        deeper than ``max_level``. If the first call fails or yields
        nothing usable, the tree is the single root leaf.
        """
        root = QueryNode(text=query, level=0)
        if max_level <= 0 or max_total_leaves <= 1:
            return root

        leaf_count = 1
        frontier = deque([(root, True)])
        while frontier:
            node, refine = frontier.popleft()
            if not refine or node.level >= max_level:
                continue
            # Expanding replaces this leaf, so it frees one slot
            capacity = max_total_leaves - leaf_count + 1
            if capacity < 2:
                logger.debug("Leaf cap %d reached; skipping further decomposition",
                             max_total_leaves)
                break
            try:
                subqueries = self._expand(node.text)
            except Exception as e:
                if node is root:
                    logger.warning("Query decomposition failed, searching the query as-is: %s", e)
                else:
                    logger.warning("Decomposition of sub-question failed, keeping it as a leaf: %s", e)
                continue
            if not subqueries:
                if node is root:
                    logger.info("Decomposition produced no sub-questions; searching the query as-is")
                continue

            subqueries = subqueries[:capacity]
            node.children = [
                QueryNode(text=sq.query, level=node.level + 1, dimension=sq.dimension)
                for sq in subqueries
            ]
            leaf_count += len(node.children) - 1
            for child, sq in zip(node.children, subqueries):
                frontier.append((child, sq.needs_refinement))

        logger.info("Decomposed query into %d leaves (depth %d)", leaf_count, root.depth())
        return root
