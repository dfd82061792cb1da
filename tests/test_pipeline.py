"""End-to-end multi-query search through Memo with mock providers."""

import math
import threading
from concurrent.futures import ALL_COMPLETED, FIRST_EXCEPTION

import pytest

from mocks import DIM, MockCompletionProvider, MockEmbeddingProvider, ts
from memo.api import Memo
from memo.config import MultiQueryConfig, SearchLevelsConfig
from memo.errors import ProviderCallError, SearchCancelled
from memo.search import pipeline as pipeline_module
from memo.search.summarize import NO_RESULTS_ANSWER, Summarizer
from memo.types import TimeRange

SUBQUERIES = [
    ("core", "What is the core idea of caching?"),
    ("why", "Why do systems need caching layers?"),
    ("how", "How is a cache invalidated safely?"),
    ("case", "Which real systems use write-through caches?"),
    ("note", "What pitfalls come with caching?"),
]
QUESTION = "Tell me everything about caching"


def decomposition_reply(subqueries=SUBQUERIES) -> str:
    body = "".join(
        f"<subquery><dimension>{d}</dimension><query>{q}</query>"
        f"<needs_refinement>false</needs_refinement></subquery>"
        for d, q in subqueries
    )
    return f"<decomposition>{body}</decomposition>"


def axis_vector(axis: int, score: float, filler_axis: int) -> list[float]:
    """Cosine ``score`` with the unit vector on ``axis``."""
    vec = [0.0] * DIM
    vec[axis] = score
    vec[filler_axis] = math.sqrt(1.0 - score * score)
    return vec


def axis_query(axis: int) -> list[float]:
    vec = [0.0] * DIM
    vec[axis] = 1.0
    return vec


@pytest.fixture
def search_embedding():
    vectors = {q: axis_query(i) for i, (_, q) in enumerate(SUBQUERIES)}
    vectors[QUESTION] = axis_query(0)
    return MockEmbeddingProvider(vectors)


@pytest.fixture
def populated(store):
    """Leaf 0 has many strong hits; leaves 1-4 have a couple of weak ones."""
    for j in range(20):
        store.put(f"core note {j}", axis_vector(0, 0.95 - j * 0.005, 6), id=f"core-{j:02d}")
    for axis in range(1, 5):
        for j in range(2):
            store.put(f"note {axis}-{j}", axis_vector(axis, 0.5 - j * 0.05, 6 + axis),
                      id=f"leaf{axis}-{j}")
    return store


def make_memo(app_config, store, embedding, completion=None, *, depth=None, **multi_query):
    """Memo over mock providers; ``depth=1`` turns off neighbour expansion."""
    if depth is not None:
        app_config.search = SearchLevelsConfig(max_depth=depth)
    if multi_query:
        app_config.multi_query = MultiQueryConfig(**multi_query)
    return Memo(app_config, store=store, embedding=embedding,
                completion=completion, ops_log=False)


class TestEndToEnd:

    def test_every_leaf_represented_within_limit(self, app_config, populated, search_embedding):
        llm = MockCompletionProvider([decomposition_reply(), "Caching stores results."])
        memo = make_memo(app_config, populated, search_embedding, llm, depth=1)

        response = memo.search(QUESTION, limit=10, threshold=0.35)

        assert response.leaves == [q for _, q in SUBQUERIES]
        assert len(response.results) <= 10
        ids = {r.id for r in response.results}
        for axis in range(1, 5):
            assert f"leaf{axis}-0" in ids
        assert any(i.startswith("core-") for i in ids)
        scores = [r.score for r in response.results]
        assert scores == sorted(scores, reverse=True)
        assert response.summary == "Caching stores results."
        assert not response.degraded
        assert len(llm.prompts) == 2
        assert "[1] (score:" in llm.prompts[1]

    def test_results_respect_threshold(self, app_config, populated, search_embedding):
        memo = make_memo(app_config, populated, search_embedding,
                         MockCompletionProvider([decomposition_reply(), "ok"]), depth=1)
        response = memo.search(QUESTION, limit=10, threshold=0.48)
        assert all(r.score >= 0.48 for r in response.results)
        assert "leaf1-1" not in {r.id for r in response.results}

    def test_without_llm_searches_question_directly(self, app_config, populated, search_embedding):
        memo = make_memo(app_config, populated, search_embedding, depth=1)
        response = memo.search(QUESTION, limit=3)
        assert response.leaves == [QUESTION]
        assert [r.id for r in response.results] == ["core-00", "core-01", "core-02"]
        assert response.summary is None

    def test_no_decompose_still_summarizes(self, app_config, populated, search_embedding):
        llm = MockCompletionProvider(["answer"])
        memo = make_memo(app_config, populated, search_embedding, llm)
        response = memo.search(QUESTION, limit=3, decompose=False)
        assert response.leaves == [QUESTION]
        assert response.summary == "answer"
        assert len(llm.prompts) == 1

    def test_no_summary_flag(self, app_config, populated, search_embedding):
        llm = MockCompletionProvider([decomposition_reply(), "unused"])
        memo = make_memo(app_config, populated, search_embedding, llm)
        response = memo.search(QUESTION, summarize=False)
        assert response.summary is None
        assert len(llm.prompts) == 1

    def test_empty_store(self, app_config, store, search_embedding):
        llm = MockCompletionProvider([decomposition_reply()])
        memo = make_memo(app_config, store, search_embedding, llm)
        response = memo.search(QUESTION)
        assert response.results == []
        assert response.summary is None

    def test_time_range_filters_updated_at(self, app_config, store, search_embedding):
        store.put("old", axis_vector(0, 0.9, 6), id="old",
                  created_at=ts("2026-01-01T00:00:00"))
        store.put("new", axis_vector(0, 0.8, 7), id="new",
                  created_at=ts("2026-03-01T00:00:00"))
        memo = make_memo(app_config, store, search_embedding)
        response = memo.search(
            QUESTION, time_range=TimeRange(after=ts("2026-02-01T00:00:00")),
        )
        assert [r.id for r in response.results] == ["new"]

    def test_empty_query_rejected(self, memo):
        with pytest.raises(ValueError):
            memo.search("  ")


class TestDegradation:

    def test_failed_leaf_degrades(self, app_config, populated, search_embedding):
        search_embedding.fail_on.add(SUBQUERIES[2][1])
        llm = MockCompletionProvider([decomposition_reply(), "partial answer"])
        memo = make_memo(app_config, populated, search_embedding, llm, depth=1)

        response = memo.search(QUESTION, limit=10)

        assert response.degraded
        assert [f.query for f in response.failed_leaves] == [SUBQUERIES[2][1]]
        ids = {r.id for r in response.results}
        assert "leaf2-0" not in ids
        assert "leaf1-0" in ids
        assert response.summary == "partial answer"

    def test_summary_failure_keeps_results(self, app_config, populated, search_embedding):
        llm = MockCompletionProvider([decomposition_reply(), ProviderCallError("rate limited")])
        memo = make_memo(app_config, populated, search_embedding, llm)
        response = memo.search(QUESTION)
        assert response.results
        assert response.summary is None
        assert "rate limited" in response.summary_error
        assert response.degraded

    def test_decomposition_failure_searches_question(self, app_config, populated,
                                                     search_embedding):
        llm = MockCompletionProvider([ProviderCallError("down"), "answer"])
        memo = make_memo(app_config, populated, search_embedding, llm, depth=1)
        response = memo.search(QUESTION, limit=2)
        assert response.leaves == [QUESTION]
        assert [r.id for r in response.results] == ["core-00", "core-01"]


class TestCancellation:

    def test_cancel_before_search(self, app_config, populated, search_embedding):
        cancel = threading.Event()
        cancel.set()
        memo = make_memo(app_config, populated, search_embedding)
        with pytest.raises(SearchCancelled):
            memo.search(QUESTION, cancel=cancel)
        assert search_embedding.embed_calls == 0

    def test_unexpected_leaf_error_aborts_all(self, app_config, populated, search_embedding):
        class Exploding(MockEmbeddingProvider):
            def embed(self, text):
                if text == SUBQUERIES[0][1]:
                    raise RuntimeError("store corrupted")
                return super().embed(text)

        embedding = Exploding(search_embedding.vectors)
        llm = MockCompletionProvider([decomposition_reply(), "never"])
        memo = make_memo(app_config, populated, embedding, llm, max_workers=1)
        with pytest.raises(RuntimeError, match="store corrupted"):
            memo.search(QUESTION)
        # Only the decomposition prompt was sent
        assert len(llm.prompts) == 1

    def test_cancel_during_leaf_search(self, app_config, populated, search_embedding):
        cancel = threading.Event()

        class Cancelling(MockEmbeddingProvider):
            def embed(self, text):
                cancel.set()
                return super().embed(text)

        embedding = Cancelling(search_embedding.vectors)
        memo = make_memo(app_config, populated, embedding,
                         MockCompletionProvider([decomposition_reply()]), max_workers=1)
        with pytest.raises(SearchCancelled):
            memo.search(QUESTION, cancel=cancel)

    def test_interrupt_stops_queued_leaves(self, app_config, populated, search_embedding,
                                           monkeypatch):
        cancel = threading.Event()
        started = threading.Event()
        embedded = []

        class Blocking(MockEmbeddingProvider):
            def embed(self, text):
                started.set()
                # Hold the only worker until the token is set
                cancel.wait(5)
                embedded.append(text)
                return super().embed(text)

        real_wait = pipeline_module.wait

        def interrupted_wait(fs, timeout=None, return_when=ALL_COMPLETED):
            if return_when == FIRST_EXCEPTION:
                started.wait(5)
                raise KeyboardInterrupt
            return real_wait(fs, timeout, return_when)

        monkeypatch.setattr(pipeline_module, "wait", interrupted_wait)
        embedding = Blocking(search_embedding.vectors)
        memo = make_memo(app_config, populated, embedding,
                         MockCompletionProvider([decomposition_reply()]), max_workers=1)
        with pytest.raises(KeyboardInterrupt):
            memo.search(QUESTION, cancel=cancel)
        assert cancel.is_set()
        assert embedded == [SUBQUERIES[0][1]]


class TestSummarizer:

    def test_no_results_skips_call(self):
        llm = MockCompletionProvider(["unused"])
        assert Summarizer(llm).summarize("q", []) == NO_RESULTS_ANSWER
        assert llm.prompts == []

    def test_custom_instructions(self, populated):
        llm = MockCompletionProvider(["ok"])
        results = populated.list()[:2]
        Summarizer(llm, instructions="Answer in one line.").summarize("q <x>", results)
        assert "Answer in one line." in llm.prompts[0]
        assert "q &lt;x&gt;" in llm.prompts[0]
