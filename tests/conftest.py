"""
Shared pytest fixtures for memo tests.

Mock providers and the in-memory store live in ``mocks.py``.
"""

from pathlib import Path

import pytest

from memo.config import AppConfig
from mocks import MockEmbeddingProvider, MockVectorStore


@pytest.fixture
def embedding():
    return MockEmbeddingProvider()


@pytest.fixture
def store():
    return MockVectorStore()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(brain_path=tmp_path / "brain", config_dir=tmp_path)


@pytest.fixture
def memo(app_config, store, embedding):
    """Memo with mock store and providers; no rerank, no LLM."""
    from memo.api import Memo
    m = Memo(app_config, store=store, embedding=embedding, ops_log=False)
    yield m
    m.close()


@pytest.fixture(autouse=True)
def isolate_home(tmp_path, monkeypatch):
    """Keep config and error logs out of the real home directory."""
    home = tmp_path / "memo-home"
    monkeypatch.setenv("MEMO_HOME", str(home))
    return home
