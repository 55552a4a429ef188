"""Optional relevance rescoring with an external judge (stage 3).

For the top `top_n` heuristically ranked candidates, a judge scores each
(query, snippet) pair in [0, 1] and the score is fused:

    fused = heuristic_weight * rerank_score + relevance_weight * judge_score

Candidates the judge fails on keep their heuristic score. Only the judged
slice is returned; candidates below it are not reconsidered.

Judges:
- `HttpRelevanceJudge`: OpenAI-compatible chat completion endpoint (requests).
- `CrossEncoderJudge`: local sentence-transformers cross-encoder (lazy import).
"""

from __future__ import annotations

import logging
import math
import re
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence

import requests

from coderag.config import RescoreConfig
from coderag.errors import RescoreFailed
from coderag.rerankers.heuristic import sort_key
from coderag.types import ScoredCandidate

log = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?")

JUDGE_SYSTEM_PROMPT = (
    "You rate how relevant a code snippet is to a developer's question. "
    "Reply with a single number between 0 and 1 and nothing else."
)


def _truncate(text: str, max_chars: int) -> str:
    text = text or ""
    return text if len(text) <= max_chars else text[:max_chars]


def parse_score(text: str) -> float:
    """Extract the first number from a judge reply; must lie in [0, 1]."""
    m = _NUMBER_RE.search(text or "")
    if m is None:
        raise RescoreFailed(f"No score in judge reply: {text[:80]!r}")
    value = float(m.group(0))
    if not math.isfinite(value) or value < 0.0 or value > 1.0:
        raise RescoreFailed(f"Judge score out of range [0, 1]: {value}")
    return value


class RelevanceJudge(ABC):
    """Scores a single (query, candidate text) pair in [0, 1]."""

    @abstractmethod
    def judge(self, query_text: str, candidate_text: str) -> float:
        """Return a relevance score or raise RescoreFailed."""


class HttpRelevanceJudge(RelevanceJudge):
    def __init__(self, cfg: Optional[RescoreConfig] = None, *, session: Optional[requests.Session] = None) -> None:
        self.cfg = cfg or RescoreConfig()
        self.url = self.cfg.endpoint.rstrip("/") + "/chat/completions"
        self.session = session or requests.Session()

    def _messages(self, query_text: str, candidate_text: str) -> List[Dict[str, str]]:
        q = _truncate(query_text, self.cfg.max_chars)
        c = _truncate(candidate_text, self.cfg.max_chars)
        return [
            {"role": "system", "content": JUDGE_SYSTEM_PROMPT},
            {"role": "user", "content": f"Question:\n{q}\n\nCode:\n{c}\n\nRelevance (0-1):"},
        ]

    def judge(self, query_text: str, candidate_text: str) -> float:
        headers = {"Content-Type": "application/json"}
        if self.cfg.api_key:
            headers["Authorization"] = f"Bearer {self.cfg.api_key}"
        data = {
            "model": self.cfg.model,
            "messages": self._messages(query_text, candidate_text),
            "temperature": 0.0,
        }
        try:
            response = self.session.post(self.url, headers=headers, json=data, timeout=self.cfg.timeout_s)
        except requests.exceptions.RequestException as e:
            raise RescoreFailed(f"Judge request to {self.url} failed: {e}") from e

        if response.status_code != 200:
            raise RescoreFailed(f"Judge API error: {response.status_code} - {response.text[:200]}")
        try:
            result = response.json()
            content = result["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise RescoreFailed(f"Invalid judge response format: {e}") from e
        if not isinstance(content, str):
            raise RescoreFailed("Judge reply content is not text")
        return parse_score(content)


class CrossEncoderJudge(RelevanceJudge):
    """Local cross-encoder judge; logits outside [0, 1] are squashed with a sigmoid."""

    def __init__(
        self,
        model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2",
        *,
        device: str = "cpu",
        max_chars: int = 2000,
        max_length: Optional[int] = None,
    ) -> None:
        if not isinstance(model_name, str) or not model_name.strip():
            raise ValueError("model_name must be a non-empty string")
        try:
            from sentence_transformers import CrossEncoder  # type: ignore
        except Exception as e:
            raise RuntimeError(
                "CrossEncoderJudge requires the optional dependency 'sentence-transformers'."
            ) from e
        kwargs = {"device": device}
        if max_length is not None:
            kwargs["max_length"] = int(max_length)
        self._model = CrossEncoder(model_name, **kwargs)
        self.model_name = model_name
        self.max_chars = int(max_chars)

    def judge(self, query_text: str, candidate_text: str) -> float:
        pair = (_truncate(query_text, self.max_chars), _truncate(candidate_text, self.max_chars))
        try:
            scores = self._model.predict([pair], show_progress_bar=False)
            value = float(list(scores)[0])
        except Exception as e:
            raise RescoreFailed(f"Cross-encoder prediction failed: {e}") from e
        if not math.isfinite(value):
            raise RescoreFailed("Cross-encoder returned a non-finite score")
        if 0.0 <= value <= 1.0:
            return value
        return 1.0 / (1.0 + math.exp(-value))


class Rescorer:
    """Fuses external relevance scores into the heuristic ranking."""

    def __init__(self, judge: RelevanceJudge, cfg: Optional[RescoreConfig] = None) -> None:
        self.judge = judge
        self.cfg = cfg or RescoreConfig()

    def rescore(self, query_text: str, candidate: ScoredCandidate) -> Optional[float]:
        """Judge one candidate; any failure yields None (no score)."""
        try:
            value = float(self.judge.judge(query_text, candidate.record.content))
        except RescoreFailed as e:
            log.warning("Rescore failed for %s: %s", candidate.record.label, e)
            return None
        except Exception as e:
            log.warning("Rescore failed for %s (%s): %s", candidate.record.label, type(e).__name__, e)
            return None
        if not math.isfinite(value) or value < 0.0 or value > 1.0:
            log.warning("Rescore for %s out of range: %r", candidate.record.label, value)
            return None
        return value

    def fuse_score(self, heuristic: float, relevance: float) -> float:
        return heuristic * self.cfg.heuristic_weight + relevance * self.cfg.relevance_weight

    def _judge_batch(self, query_text: str, batch: Sequence[ScoredCandidate]) -> List[Optional[float]]:
        """Judge up to `max_workers` candidates at once under one `timeout_s` deadline."""
        # Fresh threads per batch so a hung call never delays the next batch.
        ex = ThreadPoolExecutor(max_workers=len(batch))
        try:
            futures = [ex.submit(self.rescore, query_text, c) for c in batch]
            done, _ = wait(futures, timeout=self.cfg.timeout_s)
            out: List[Optional[float]] = []
            for c, fut in zip(batch, futures):
                if fut in done:
                    out.append(fut.result())
                else:
                    log.warning("Rescore timed out after %.1fs for %s", self.cfg.timeout_s, c.record.label)
                    out.append(None)
            return out
        finally:
            ex.shutdown(wait=False, cancel_futures=True)

    def _judge_serial(self, query_text: str, pool: Sequence[ScoredCandidate]) -> List[Optional[float]]:
        out: List[Optional[float]] = []
        for i, c in enumerate(pool):
            if i > 0:
                time.sleep(self.cfg.min_interval_s)
            out.extend(self._judge_batch(query_text, [c]))
        return out

    def _judge_concurrent(self, query_text: str, pool: Sequence[ScoredCandidate]) -> List[Optional[float]]:
        width = max(1, int(self.cfg.max_workers))
        out: List[Optional[float]] = []
        for start in range(0, len(pool), width):
            out.extend(self._judge_batch(query_text, pool[start : start + width]))
        return out

    def fuse(self, query_text: str, candidates: Sequence[ScoredCandidate]) -> List[ScoredCandidate]:
        """Rescore the top slice and return only that slice, re-sorted."""
        pool = list(candidates[: int(self.cfg.top_n)])
        if not pool:
            return []
        if self.cfg.min_interval_s > 0:
            scores = self._judge_serial(query_text, pool)
        else:
            scores = self._judge_concurrent(query_text, pool)

        fused: List[ScoredCandidate] = []
        for c, s in zip(pool, scores):
            if s is None:
                fused.append(c)
                continue
            fused.append(c.with_relevance(s, self.fuse_score(c.score, s)))
        fused.sort(key=sort_key)
        log.debug(
            "Rescored %d/%d candidates",
            sum(1 for s in scores if s is not None),
            len(pool),
        )
        return fused
