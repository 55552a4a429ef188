"""
Tests for configuration defaults and overrides
"""

import json

import pytest

from coderag.config import (
    HeuristicWeights,
    RetrievalConfig,
    config_from_mapping,
    default_retrieval_config,
    load_config,
)


class TestDefaults:
    def test_stage_sizes(self):
        cfg = RetrievalConfig()
        assert cfg.initial_k == 15
        assert cfg.final_top_k == 3
        assert cfg.rescore.top_n == 5
        assert cfg.rescore.heuristic_weight == 0.7
        assert cfg.rescore.relevance_weight == 0.3

    def test_heuristic_weights(self):
        w = HeuristicWeights()
        assert (w.path_keyword, w.content_keyword, w.symbol_keyword) == (0.15, 0.05, 0.10)
        assert (w.test_file_penalty, w.src_penalty, w.index_bonus) == (0.40, 0.05, 0.20)

    def test_env_overrides_judge(self, monkeypatch):
        monkeypatch.setenv("CODERAG_JUDGE_URL", "http://judge:8080/v1")
        monkeypatch.setenv("CODERAG_JUDGE_MODEL", "qwen")
        monkeypatch.delenv("CODERAG_JUDGE_API_KEY", raising=False)
        cfg = default_retrieval_config()
        assert cfg.rescore.endpoint == "http://judge:8080/v1"
        assert cfg.rescore.model == "qwen"
        assert cfg.rescore.api_key is None

    @pytest.mark.parametrize(
        "kwargs",
        [{"initial_k": 0}, {"final_top_k": -1}],
    )
    def test_invalid_sizes(self, kwargs):
        with pytest.raises(ValueError):
            RetrievalConfig(**kwargs)


class TestOverrides:
    def test_nested_override(self):
        cfg = config_from_mapping(
            {
                "initial_k": 30,
                "weights": {"index_bonus": 0.5},
                "index": {"backend": "flat"},
                "extra_stopwords": ["foo"],
            },
            base=RetrievalConfig(),
        )
        assert cfg.initial_k == 30
        assert cfg.weights.index_bonus == 0.5
        assert cfg.weights.path_keyword == 0.15
        assert cfg.index.backend == "flat"
        assert cfg.extra_stopwords == ("foo",)

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="unknown config key 'bogus'"):
            config_from_mapping({"weights": {"bogus": 1}}, base=RetrievalConfig())

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="backend"):
            config_from_mapping({"index": {"backend": "faiss"}}, base=RetrievalConfig())

    def test_section_must_be_object(self):
        with pytest.raises(ValueError):
            config_from_mapping({"rescore": 3}, base=RetrievalConfig())

    def test_load_config(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text(json.dumps({"final_top_k": 5, "rescore": {"min_interval_s": 1.1}}), encoding="utf-8")
        cfg = load_config(str(path))
        assert cfg.final_top_k == 5
        assert cfg.rescore.min_interval_s == 1.1

    def test_load_config_invalid_json(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(ValueError):
            load_config(str(path))
