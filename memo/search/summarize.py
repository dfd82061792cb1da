"""
Answer synthesis from merged search results.
"""

import logging
from typing import Optional, Sequence
from xml.sax.saxutils import escape

from ..providers.base import CompletionProvider
from ..types import QueryResult

logger = logging.getLogger(__name__)

NO_RESULTS_ANSWER = "No relevant memories found."

DEFAULT_INSTRUCTIONS = """\
1. Match the style to the kind of question:
   - fact lookup (who/what/where): answer directly
   - method request (how): core method plus key details
   - cause (why): conclusion plus reasoning
   - broad question: what, why, how, examples, caveats
2. Keep simple answers simple.
3. Prefer higher-scored memories.
4. Write naturally; do not just list the memories."""

PROMPT_TEMPLATE = """\
You integrate knowledge from a personal memory store to answer a question.

Question:
<user_query>
{query}
</user_query>

Relevant memories:
<memories>
{memories}
</memories>

Instructions:
{instructions}

Write the answer."""


def format_memories(results: Sequence[QueryResult]) -> str:
    """Numbered memories with their scores, separated by rules."""
    blocks = []
    for i, result in enumerate(results, 1):
        blocks.append(f"[{i}] (score: {result.score or 0.0:.2f})\n{result.content}")
    return "\n\n---\n\n".join(blocks)


class Summarizer:
    """Produces a prose answer from ranked memories."""

    def __init__(self, completion: CompletionProvider, *, instructions: Optional[str] = None):
        self._completion = completion
        self._instructions = instructions or None

    def summarize(self, query: str, results: Sequence[QueryResult]) -> str:
        if not results:
            return NO_RESULTS_ANSWER
        prompt = PROMPT_TEMPLATE.format(
            query=escape(query, {'"': "&quot;", "'": "&apos;"}),
            memories=format_memories(results),
            instructions=(self._instructions or DEFAULT_INSTRUCTIONS).strip(),
        )
        logger.debug("Summarizing %d results", len(results))
        return self._completion.complete(prompt)
