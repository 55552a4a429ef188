import json
from typing import Dict, Optional

import numpy as np
import pytest

from coderag.errors import RescoreFailed
from coderag.rerankers.relevance import RelevanceJudge
from coderag.types import CorpusRecord, ScoredCandidate


def make_record(path, vector, *, repository="repo", content="", symbol=None):
    vec = np.asarray(vector, dtype=np.float32)
    return CorpusRecord(
        repository=repository,
        file_path=path,
        content=content,
        vector=vec,
        norm=float(np.linalg.norm(vec.astype(np.float64))),
        symbol=symbol,
    )


def make_candidate(path, similarity, *, position=0, content="", symbol=None, rerank_score=None):
    rec = make_record(path, [1.0, 0.0], content=content, symbol=symbol)
    return ScoredCandidate(record=rec, position=position, similarity=similarity, rerank_score=rerank_score)


def write_corpus(path, records):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(records, f, ensure_ascii=False)
    return str(path)


class CannedJudge(RelevanceJudge):
    """Deterministic judge keyed by candidate content.

    Unknown content and content mapped to None raise RescoreFailed.
    """

    def __init__(self, scores: Dict[str, Optional[float]]):
        self.scores = dict(scores)
        self.calls = []

    def judge(self, query_text, candidate_text):
        self.calls.append((query_text, candidate_text))
        score = self.scores.get(candidate_text)
        if score is None:
            raise RescoreFailed(f"no canned score for {candidate_text!r}")
        return score


@pytest.fixture
def four_record_corpus(tmp_path):
    """One test file, one index file, two plain files (dim 3)."""
    records = [
        {
            "repository": "@naverpay/ui",
            "filePath": "packages/ui/src/__tests__/widget.test.ts",
            "symbol": "renderWidget",
            "content": "describe('widget', () => { it('renders', () => {}) })",
            "vector": [1.0, 0.0, 0.0],
        },
        {
            "repository": "@naverpay/ui",
            "filePath": "packages/button/index.ts",
            "content": "export { Button } from './Button'",
            "vector": [0.8, 0.6, 0.0],
        },
        {
            "repository": "@naverpay/hidash",
            "filePath": "lib/alpha.ts",
            "symbol": "alpha",
            "content": "export function alpha() { return 1 }",
            "vector": [0.0, 1.0, 0.0],
        },
        {
            "repository": "@naverpay/hidash",
            "filePath": "lib/beta.ts",
            "content": "export const beta = 2",
            "vector": [0.0, 0.0, 1.0],
            "norm": 1.0,
        },
    ]
    return write_corpus(tmp_path / "corpus.json", records)
