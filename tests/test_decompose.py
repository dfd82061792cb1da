"""Tests for query decomposition: tree bounds, parsing and fallback."""

import pytest

from mocks import MockCompletionProvider
from memo.errors import ProviderCallError
from memo.search.decompose import (
    QueryDecomposer,
    build_prompt,
    parse_subqueries,
)


def xml_reply(*subqueries) -> str:
    """Build a model reply; each item is (dimension, query, needs_refinement)."""
    parts = ["Sure, here you go:\n<decomposition>"]
    for dimension, query, refine in subqueries:
        parts.append(
            f"<subquery><dimension>{dimension}</dimension>"
            f"<query>{query}</query>"
            f"<needs_refinement>{'true' if refine else 'false'}</needs_refinement></subquery>"
        )
    parts.append("</decomposition>\nDone.")
    return "".join(parts)


FIVE = [
    ("core", "What is the core idea of caching?", False),
    ("why", "Why do systems need caching layers?", False),
    ("how", "How is a cache invalidated safely?", False),
    ("case", "Which real systems use write-through caches?", False),
    ("note", "What pitfalls come with caching?", False),
]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParse:

    def test_extracts_block_from_surrounding_text(self):
        subs = parse_subqueries(xml_reply(*FIVE), max_children=5)
        assert [s.dimension for s in subs] == ["core", "why", "how", "case", "note"]
        assert subs[0].query == "What is the core idea of caching?"

    def test_drops_invalid_facets_and_lengths(self):
        reply = xml_reply(
            ("core", "What is caching exactly?", False),
            ("bogus", "An unknown facet question?", False),
            ("why", "Why?", False),
            ("how", "x" * 301, False),
        )
        subs = parse_subqueries(reply, max_children=5)
        assert [s.dimension for s in subs] == ["core"]

    def test_needs_refinement_flag(self):
        reply = xml_reply(("core", "What is the main question here?", True))
        assert parse_subqueries(reply, 5)[0].needs_refinement is True

    def test_no_block_is_empty(self):
        assert parse_subqueries("I cannot help with that.", 5) == []

    def test_broken_xml_is_empty(self):
        assert parse_subqueries("<decomposition><subquery></decomposition>", 5) == []

    def test_max_children(self):
        assert len(parse_subqueries(xml_reply(*FIVE), max_children=2)) == 2


class TestPrompt:

    def test_query_is_escaped(self):
        prompt = build_prompt('drop <table> & "quotes"')
        assert "&lt;table&gt; &amp; &quot;quotes&quot;" in prompt
        assert "<table>" not in prompt

    def test_custom_strategy_replaces_default(self):
        prompt = build_prompt("q", strategy="Only use the core facet.")
        assert "Only use the core facet." in prompt
        assert "causes and underlying principles" not in prompt


# ---------------------------------------------------------------------------
# Tree construction
# ---------------------------------------------------------------------------

class TestDecompose:

    def test_single_level(self):
        llm = MockCompletionProvider([xml_reply(*FIVE)])
        tree = QueryDecomposer(llm).decompose("Tell me about caching", 2, 10)
        leaves = tree.leaves()
        assert len(leaves) == 5
        assert all(leaf.level == 1 for leaf in leaves)
        assert len(llm.prompts) == 1

    def test_completion_failure_falls_back_to_root(self):
        llm = MockCompletionProvider([ProviderCallError("timeout")])
        tree = QueryDecomposer(llm).decompose("Tell me about caching", 3, 10)
        assert [leaf.text for leaf in tree.leaves()] == ["Tell me about caching"]
        assert tree.is_leaf

    def test_unparseable_reply_falls_back_to_root(self):
        llm = MockCompletionProvider(["no xml here"])
        tree = QueryDecomposer(llm).decompose("Tell me about caching", 3, 10)
        assert [leaf.text for leaf in tree.leaves()] == ["Tell me about caching"]

    def test_zero_level_issues_no_call(self):
        llm = MockCompletionProvider([xml_reply(*FIVE)])
        tree = QueryDecomposer(llm).decompose("q about things", 0, 10)
        assert tree.is_leaf
        assert llm.prompts == []

    def test_leaf_cap_truncates_children(self):
        llm = MockCompletionProvider([xml_reply(*FIVE)])
        tree = QueryDecomposer(llm).decompose("Tell me about caching", 2, 3)
        assert len(tree.leaves()) == 3
        assert [leaf.dimension for leaf in tree.leaves()] == ["core", "why", "how"]

    def test_refinement_respects_leaf_cap_and_skips_calls(self):
        refining = [(d, q, True) for d, q, _ in FIVE]
        child = [
            ("core", "A more specific sub question one?", False),
            ("how", "A more specific sub question two?", False),
            ("case", "A more specific sub question three?", False),
        ]
        llm = MockCompletionProvider([xml_reply(*refining)] + [xml_reply(*child)] * 5)
        tree = QueryDecomposer(llm).decompose("Tell me about caching", 3, 8)
        leaves = tree.leaves()
        assert len(leaves) <= 8
        # 5 leaves, first refine adds 2 (7), second adds at most 1 (8), then stop
        assert len(leaves) == 8
        assert len(llm.prompts) == 3

    def test_depth_never_exceeds_max_level(self):
        refining = [(d, q, True) for d, q, _ in FIVE[:2]]
        llm = MockCompletionProvider([xml_reply(*refining)] * 20)
        tree = QueryDecomposer(llm).decompose("Tell me about caching", 2, 50)
        assert tree.depth() <= 2
        assert all(leaf.level <= 2 for leaf in tree.leaves())
        # root + two level-1 nodes expanded; level-2 nodes are never expanded
        assert len(llm.prompts) == 3

    def test_child_failure_keeps_child_as_leaf(self):
        refining = [(d, q, True) for d, q, _ in FIVE[:2]]
        llm = MockCompletionProvider([
            xml_reply(*refining),
            RuntimeError("boom"),
            xml_reply(("core", "Deeper question about the second?", False)),
        ])
        tree = QueryDecomposer(llm).decompose("Tell me about caching", 3, 10)
        texts = [leaf.text for leaf in tree.leaves()]
        assert texts[0] == FIVE[0][1]
        assert "Deeper question about the second?" in texts

    def test_breadth_first_left_to_right(self):
        refining = [(d, q, True) for d, q, _ in FIVE[:2]]
        llm = MockCompletionProvider([
            xml_reply(*refining),
            xml_reply(("core", "First child of the first node?", False),
                      ("why", "Second child of the first node?", False)),
            xml_reply(("core", "First child of the second node?", False)),
        ])
        tree = QueryDecomposer(llm).decompose("Tell me about caching", 3, 10)
        assert [leaf.text for leaf in tree.leaves()] == [
            "First child of the first node?",
            "Second child of the first node?",
            "First child of the second node?",
        ]
        assert FIVE[0][1] in llm.prompts[1]
        assert FIVE[1][1] in llm.prompts[2]

    @pytest.mark.parametrize("max_level,max_leaves", [(1, 1), (1, 4), (2, 6), (3, 9)])
    def test_bounds_hold(self, max_level, max_leaves):
        refining = [(d, q, True) for d, q, _ in FIVE]
        llm = MockCompletionProvider([xml_reply(*refining)] * 50)
        tree = QueryDecomposer(llm).decompose("Tell me about caching", max_level, max_leaves)
        assert 1 <= len(tree.leaves()) <= max_leaves
        assert tree.depth() <= max_level
