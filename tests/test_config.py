"""Tests for config.toml / providers.toml loading and scope resolution."""

from pathlib import Path

import pytest

from memo.config import (
    AppConfig,
    RerankPolicy,
    SearchLevelsConfig,
    load_app_config,
    load_config,
    load_or_create_config,
    load_providers,
    parse_config,
    parse_providers,
    resolve_scope,
    save_config,
)
from memo.errors import ConfigurationError, ConfigurationResolutionError


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


PROVIDERS_TOML = """
[aliyun]
name = "Aliyun DashScope"
api_key = "sk-ali"

[aliyun.embed]
base_url = "https://dashscope.aliyuncs.com/compatible-mode/v1/"
model = "text-embedding-v4"
dimension = 1024

[aliyun.rerank]
base_url = "https://dashscope.aliyuncs.com/api/v1"
model = "qwen3-rerank"
type = "rerank"
"""


class TestAppConfig:

    def test_defaults(self, tmp_path):
        config = parse_config({}, tmp_path / "brain")
        assert config.search_limit == 10
        assert config.similarity_threshold == 0.35
        assert config.duplicate_threshold == 0.85
        assert config.decomposition.max_level == 2
        assert config.decomposition.max_total_leaves == 10
        assert config.multi_query.min_per_leaf == 1
        assert config.multi_query.max_total_results == 50
        assert config.rerank_policy.skip_bands == [(15, 0.80), (25, 0.85)]

    def test_nested_sections(self, tmp_path):
        write(tmp_path / "config.toml", """
embedding = "aliyun.embed"
duplicate_threshold = 0.9

[decomposition]
max_level = 3

[multi_query]
min_per_leaf = 2
unknown_key = 1

[rerank_policy]
skip_bands = [[10, 0.7]]

[prompts]
summarize = "Be brief."
""")
        config = load_config(tmp_path)
        assert config.embedding == "aliyun.embed"
        assert config.duplicate_threshold == 0.9
        assert config.decomposition.max_level == 3
        assert config.multi_query.min_per_leaf == 2
        assert config.rerank_policy.skip_bands == [(10, 0.7)]
        assert config.prompts.summarize == "Be brief."
        assert config.config_dir == tmp_path

    def test_round_trip(self, tmp_path):
        config = AppConfig(brain_path=tmp_path / "brain", embedding="a.b", llm="a.c")
        config.search.branch_limit = 4
        save_config(config, tmp_path)
        loaded = load_config(tmp_path)
        assert loaded.embedding == "a.b"
        assert loaded.llm == "a.c"
        assert loaded.search.branch_limit == 4
        assert loaded.brain_path == tmp_path / "brain"

    def test_local_scope_ignores_brain_path(self, tmp_path):
        write(tmp_path / ".memo" / "config.toml", 'brain_path = "/somewhere/else"\n')
        config = load_config(tmp_path / ".memo", local=True)
        assert config.brain_path == tmp_path / ".memo" / "brain"

    @pytest.mark.parametrize("text", [
        "similarity_threshold = 1.5\n",
        "search_limit = 0\n",
        "[multi_query]\nmax_workers = 0\n",
        "[rerank_policy]\nskip_bands = [\"bad\"]\n",
        "[search]\nthreshold_step = -0.1\n",
        "decomposition = 3\n",
        "this is not toml",
    ])
    def test_invalid(self, tmp_path, text):
        write(tmp_path / "config.toml", text)
        with pytest.raises(ConfigurationError):
            load_config(tmp_path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Config not found"):
            load_config(tmp_path)

    def test_load_or_create(self, tmp_path):
        config = load_or_create_config(tmp_path / "scope")
        assert (tmp_path / "scope" / "config.toml").exists()
        assert config.brain_path == tmp_path / "scope" / "brain"


class TestScope:

    def test_global_by_default(self, tmp_path, isolate_home):
        config_dir, is_local = resolve_scope(cwd=tmp_path / "project")
        assert (config_dir, is_local) == (isolate_home, False)

    def test_local_when_present(self, tmp_path):
        project = tmp_path / "project"
        write(project / ".memo" / "config.toml", "")
        assert resolve_scope(cwd=project) == (project / ".memo", True)

    def test_force_global(self, tmp_path, isolate_home):
        project = tmp_path / "project"
        write(project / ".memo" / "config.toml", "")
        assert resolve_scope(force_global=True, cwd=project) == (isolate_home, False)

    def test_force_local_without_config(self, tmp_path):
        assert resolve_scope(force_local=True, cwd=tmp_path) == (tmp_path / ".memo", True)

    def test_both_forced(self, tmp_path):
        with pytest.raises(ConfigurationError):
            resolve_scope(True, True, cwd=tmp_path)

    def test_load_app_config_creates_local(self, tmp_path):
        config = load_app_config(force_local=True, cwd=tmp_path)
        assert config.brain_path == tmp_path / ".memo" / "brain"
        assert (tmp_path / ".memo" / "config.toml").exists()


class TestProviders:

    def test_resolve(self, tmp_path):
        write(tmp_path / "providers.toml", PROVIDERS_TOML)
        providers = load_providers(tmp_path)
        svc = providers.resolve("aliyun.embed")
        assert svc.api_key == "sk-ali"
        assert svc.base_url == "https://dashscope.aliyuncs.com/compatible-mode/v1"
        assert svc.model == "text-embedding-v4"
        assert svc.get_int("dimension") == 1024
        assert svc.reference == "aliyun.embed"
        assert providers.resolve("aliyun.rerank").extra["type"] == "rerank"

    def test_missing_file_is_empty(self, tmp_path):
        providers = load_providers(tmp_path)
        with pytest.raises(ConfigurationResolutionError, match="not found"):
            providers.resolve("aliyun.embed")

    @pytest.mark.parametrize("reference", ["", "aliyun", "aliyun.", "a.b.c", "aliyun.llm", "zhipu.embed"])
    def test_unresolvable(self, reference):
        providers = parse_providers({"aliyun": {"api_key": "k", "embed": {
            "base_url": "u", "model": "m"}}})
        with pytest.raises(ConfigurationResolutionError):
            providers.resolve(reference)

    def test_service_needs_base_url_and_model(self):
        with pytest.raises(ConfigurationError, match="model"):
            parse_providers({"aliyun": {"embed": {"base_url": "u"}}})

    def test_bad_number(self):
        providers = parse_providers({"p": {"embed": {
            "base_url": "u", "model": "m", "dimension": "lots"}}})
        with pytest.raises(ConfigurationResolutionError):
            providers.resolve("p.embed").get_int("dimension")


class TestPolicies:

    def test_threshold_cap(self):
        assert SearchLevelsConfig(max_depth=4, threshold_step=0.3).thresholds(0.5) == \
            pytest.approx([0.5, 0.8, 0.95, 0.95])

    def test_unsorted_bands(self):
        policy = RerankPolicy(skip_bands=[(25, 0.85), (15, 0.80)])
        assert policy.should_rerank([0.82] * 12, limit=5) is False
