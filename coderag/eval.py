"""Recall of the approximate index against exact search.

Used to sanity-check index parameters (M, ef) on a loaded corpus:

    python -m coderag.eval --corpus data/corpus.json --k 15 --queries 100
"""

from __future__ import annotations

import argparse
import logging
from typing import List, Sequence

import numpy as np

from coderag.ann_index import VectorIndex, build_index
from coderag.config import IndexConfig
from coderag.corpus import load_corpus, vector_matrix
from coderag.logging_utils import configure_logging
from coderag.similarity import exact_search
from coderag.types import CorpusRecord

log = logging.getLogger(__name__)


def recall_at_k(approx_ids: Sequence[int], exact_ids: Sequence[int], k: int) -> float:
    """|approx[:k] & exact[:k]| / |exact[:k]| (1.0 when exact is empty)."""
    if k <= 0:
        raise ValueError("k must be a positive integer")
    truth = set(exact_ids[:k])
    if not truth:
        return 1.0
    return len(truth & set(approx_ids[:k])) / float(len(truth))


def index_recall(index: VectorIndex, records: List[CorpusRecord], queries: Sequence[Sequence[float]], k: int) -> float:
    """Mean recall@k of `index` over `queries`."""
    if not queries:
        return 1.0
    total = 0.0
    for q in queries:
        approx = [i for i, _ in index.search(q, k)]
        exact = [c.position for c in exact_search(q, records, topk=k)]
        total += recall_at_k(approx, exact, k)
    return total / float(len(queries))


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Measure ANN recall@k against exact search.")
    p.add_argument("--corpus", required=True, help="Path to the corpus JSON/JSONL file.")
    p.add_argument("--k", type=int, default=15)
    p.add_argument("--queries", type=int, default=100, help="Number of corpus vectors (with noise) used as queries.")
    p.add_argument("--noise", type=float, default=0.05, help="Gaussian noise scale added to sampled query vectors.")
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--M", type=int, default=16)
    p.add_argument("--ef-search", type=int, default=64)
    p.add_argument("--ef-construction", type=int, default=200)
    p.add_argument("--log-level", default=None)
    return p


def main() -> int:
    args = _build_arg_parser().parse_args()
    configure_logging(args.log_level)

    records = load_corpus(args.corpus)
    if not records:
        print("Corpus is empty")
        return 0
    mat = vector_matrix(records)
    cfg = IndexConfig(M=args.M, ef_search=args.ef_search, ef_construction=args.ef_construction)
    index = build_index(mat, cfg)
    if index is None:
        print("Approximate index unavailable")
        return 1

    rng = np.random.default_rng(args.seed)
    picks = rng.choice(len(records), size=min(args.queries, len(records)), replace=False)
    queries = [mat[int(i)] + rng.normal(scale=args.noise, size=mat.shape[1]).astype(np.float32) for i in picks]
    print(f"recall@{args.k}: {index_recall(index, records, queries, args.k):.4f}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
