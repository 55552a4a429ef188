"""
Tests for relevance rescoring and score fusion
"""

import math
import sys
import time
from unittest.mock import Mock

import pytest
import requests

from coderag.config import RescoreConfig
from coderag.errors import RescoreFailed
from coderag.rerankers.relevance import HttpRelevanceJudge, RelevanceJudge, Rescorer, parse_score
from tests.conftest import CannedJudge, make_candidate


class SlowJudge(RelevanceJudge):
    def __init__(self, delay, score=1.0):
        self.delay = delay
        self.score = score

    def judge(self, query_text, candidate_text):
        time.sleep(self.delay)
        return self.score


class DelayedJudge(RelevanceJudge):
    def __init__(self, delays, default_delay=0.0):
        self.delays = dict(delays)
        self.default_delay = default_delay

    def judge(self, query_text, candidate_text):
        time.sleep(self.delays.get(candidate_text, self.default_delay))
        return 1.0


class ExplodingJudge(RelevanceJudge):
    def judge(self, query_text, candidate_text):
        raise ConnectionError("boom")


class TestRescore:
    def test_valid_score(self):
        r = Rescorer(CannedJudge({"code": 0.4}))
        assert r.rescore("q", make_candidate("a.ts", 0.1, content="code")) == 0.4

    def test_failures_are_no_score(self):
        r = Rescorer(CannedJudge({"code": None}))
        assert r.rescore("q", make_candidate("a.ts", 0.1, content="code")) is None

    def test_unexpected_exception_is_no_score(self):
        r = Rescorer(ExplodingJudge())
        assert r.rescore("q", make_candidate("a.ts", 0.1)) is None

    @pytest.mark.parametrize("value", [1.5, -0.1, float("nan")])
    def test_out_of_range_is_no_score(self, value):
        r = Rescorer(CannedJudge({"code": value}))
        assert r.rescore("q", make_candidate("a.ts", 0.1, content="code")) is None


class TestFuse:
    def test_fusion_arithmetic(self):
        r = Rescorer(CannedJudge({"hit": 1.0}))
        (out,) = r.fuse("q", [make_candidate("a.ts", 0.6, rerank_score=0.6, content="hit")])
        assert out.rerank_score == pytest.approx(0.72)
        assert out.relevance == 1.0
        assert out.similarity == 0.6

    def test_unscored_candidate_unchanged(self):
        r = Rescorer(CannedJudge({}))
        c = make_candidate("a.ts", 0.6, rerank_score=0.6, content="miss")
        (out,) = r.fuse("q", [c])
        assert out == c

    def test_only_top_slice_is_returned_and_resorted(self):
        scores = {f"c{i}": (1.0 if i == 4 else 0.0) for i in range(7)}
        r = Rescorer(CannedJudge(scores))
        cands = [
            make_candidate(f"f{i}.ts", 0.9 - i * 0.1, position=i, rerank_score=0.9 - i * 0.1, content=f"c{i}")
            for i in range(7)
        ]
        out = r.fuse("q", cands)
        assert len(out) == 5
        assert {c.position for c in out} == {0, 1, 2, 3, 4}
        # c4: 0.5*0.7 + 0.3 = 0.65 beats c0: 0.9*0.7 = 0.63
        assert out[0].position == 4
        assert [c.position for c in out[1:]] == [0, 1, 2, 3]
        assert len(r.judge.calls) == 5

    def test_query_text_is_forwarded(self):
        judge = CannedJudge({"body": 0.5})
        Rescorer(judge).fuse("how to parse urls", [make_candidate("a.ts", 0.1, content="body")])
        assert judge.calls == [("how to parse urls", "body")]

    def test_timeout_is_no_score(self):
        cfg = RescoreConfig(timeout_s=0.05)
        c = make_candidate("a.ts", 0.6, rerank_score=0.6)
        (out,) = Rescorer(SlowJudge(delay=0.5), cfg).fuse("q", [c])
        assert out.rerank_score == 0.6
        assert out.relevance is None

    def test_timeout_applies_to_each_call_not_the_batch(self):
        cfg = RescoreConfig(timeout_s=0.3, max_workers=1)
        cands = [make_candidate(f"f{i}.ts", 0.5, position=i, rerank_score=0.5) for i in range(5)]
        out = Rescorer(SlowJudge(delay=0.15), cfg).fuse("q", cands)
        assert [c.relevance for c in out] == [1.0] * 5

    def test_hung_call_does_not_starve_later_calls(self):
        judge = DelayedJudge({"hang": 1.0}, default_delay=0.0)
        cfg = RescoreConfig(timeout_s=0.1, max_workers=1)
        cands = [
            make_candidate("a.ts", 0.5, position=0, rerank_score=0.5, content="hang"),
            make_candidate("b.ts", 0.4, position=1, rerank_score=0.4, content="ok"),
            make_candidate("c.ts", 0.3, position=2, rerank_score=0.3, content="ok"),
        ]
        out = Rescorer(judge, cfg).fuse("q", cands)
        by_path = {c.record.file_path: c for c in out}
        assert by_path["a.ts"].relevance is None
        assert by_path["b.ts"].relevance == 1.0
        assert by_path["c.ts"].relevance == 1.0

    def test_serialised_dispatch_with_interval(self):
        cfg = RescoreConfig(min_interval_s=0.01)
        judge = CannedJudge({"a": 0.0, "b": 1.0})
        cands = [
            make_candidate("a.ts", 0.5, position=0, rerank_score=0.5, content="a"),
            make_candidate("b.ts", 0.4, position=1, rerank_score=0.4, content="b"),
        ]
        out = Rescorer(judge, cfg).fuse("q", cands)
        assert [c.record.file_path for c in out] == ["b.ts", "a.ts"]
        assert [t for _, t in judge.calls] == ["a", "b"]

    def test_empty(self):
        assert Rescorer(CannedJudge({})).fuse("q", []) == []


class TestParseScore:
    @pytest.mark.parametrize("text,expected", [("0.8", 0.8), ("Relevance: 1", 1.0), (" .25\n", 0.25), ("0", 0.0)])
    def test_valid(self, text, expected):
        assert parse_score(text) == expected

    @pytest.mark.parametrize("text", ["", "not relevant", "7", "-0.2"])
    def test_invalid(self, text):
        with pytest.raises(RescoreFailed):
            parse_score(text)


class TestHttpRelevanceJudge:
    def _response(self, status=200, payload=None):
        resp = Mock()
        resp.status_code = status
        resp.text = "error body"
        resp.json.return_value = payload
        return resp

    def test_posts_chat_completion(self):
        session = Mock()
        session.post.return_value = self._response(payload={"choices": [{"message": {"content": "0.9"}}]})
        cfg = RescoreConfig(endpoint="http://judge.local/v1/", model="m", api_key="k", max_chars=10)
        judge = HttpRelevanceJudge(cfg, session=session)

        assert judge.judge("question", "x" * 50) == 0.9
        args, kwargs = session.post.call_args
        assert args[0] == "http://judge.local/v1/chat/completions"
        assert kwargs["headers"]["Authorization"] == "Bearer k"
        assert kwargs["json"]["model"] == "m"
        assert kwargs["timeout"] == cfg.timeout_s
        user_msg = kwargs["json"]["messages"][-1]["content"]
        assert "x" * 10 in user_msg and "x" * 11 not in user_msg

    def test_http_error(self):
        session = Mock()
        session.post.return_value = self._response(status=500)
        with pytest.raises(RescoreFailed, match="500"):
            HttpRelevanceJudge(RescoreConfig(), session=session).judge("q", "c")

    def test_malformed_payload(self):
        session = Mock()
        session.post.return_value = self._response(payload={"choices": []})
        with pytest.raises(RescoreFailed):
            HttpRelevanceJudge(RescoreConfig(), session=session).judge("q", "c")

    def test_request_exception(self):
        session = Mock()
        session.post.side_effect = requests.exceptions.Timeout("slow")
        with pytest.raises(RescoreFailed):
            HttpRelevanceJudge(RescoreConfig(), session=session).judge("q", "c")

    def test_failure_is_absorbed_by_rescorer(self):
        session = Mock()
        session.post.side_effect = requests.exceptions.ConnectionError("down")
        r = Rescorer(HttpRelevanceJudge(RescoreConfig(), session=session))
        c = make_candidate("a.ts", 0.3, rerank_score=0.3)
        assert r.fuse("q", [c]) == [c]


class TestCrossEncoderJudge:
    @pytest.fixture
    def fake_sentence_transformers(self, monkeypatch):
        import types

        module = types.ModuleType("sentence_transformers")

        class FakeCrossEncoder:
            next_score = 0.0

            def __init__(self, model_name, **kwargs):
                self.model_name = model_name
                self.kwargs = kwargs
                self.pairs = []

            def predict(self, pairs, show_progress_bar=False):
                self.pairs.extend(pairs)
                return [FakeCrossEncoder.next_score]

        module.CrossEncoder = FakeCrossEncoder
        monkeypatch.setitem(sys.modules, "sentence_transformers", module)
        return FakeCrossEncoder

    def test_probability_passes_through(self, fake_sentence_transformers):
        from coderag.rerankers.relevance import CrossEncoderJudge

        fake_sentence_transformers.next_score = 0.3
        judge = CrossEncoderJudge("tiny-model", max_chars=4)
        assert judge.judge("question", "snippet") == pytest.approx(0.3)
        assert judge._model.pairs == [("ques", "snip")]

    def test_logit_is_squashed(self, fake_sentence_transformers):
        from coderag.rerankers.relevance import CrossEncoderJudge

        fake_sentence_transformers.next_score = 2.0
        assert CrossEncoderJudge("tiny-model").judge("q", "c") == pytest.approx(1.0 / (1.0 + math.exp(-2.0)))

    def test_rejects_empty_model_name(self):
        from coderag.rerankers.relevance import CrossEncoderJudge

        with pytest.raises(ValueError):
            CrossEncoderJudge(" ")
