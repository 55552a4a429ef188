from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from typing import List

from coderag.config import default_retrieval_config, load_config
from coderag.errors import CorpusError, DimensionMismatch
from coderag.logging_utils import configure_logging
from coderag.pipeline import RetrievalPipeline
from coderag.rerankers.relevance import CrossEncoderJudge, HttpRelevanceJudge


def load_query_vector(path: str) -> List[float]:
    """Read a query embedding: a JSON array, or an object with a "vector" key."""
    with open(path, "r", encoding="utf-8") as f:
        obj = json.load(f)
    if isinstance(obj, dict):
        obj = obj.get("vector")
    if not isinstance(obj, list):
        raise ValueError(f"{path}: expected a JSON array of numbers (or {{'vector': [...]}})")
    return obj


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Retrieve and rerank code snippets for a query.")
    p.add_argument("--corpus", required=True, help="Path to the corpus JSON/JSONL file.")
    p.add_argument("--query", required=True, help="Raw query text (keywords + rescoring).")
    p.add_argument("--query-vector", required=True, help="Path to a JSON file with the query embedding.")
    p.add_argument("--config", default=None, help="Optional JSON config overrides.")
    p.add_argument("--backend", choices=["hnswlib", "flat", "exact"], default=None, help="Override the index backend.")
    p.add_argument("--topk", type=int, default=None, help="Override the number of final results.")
    p.add_argument("--rescore", action="store_true", help="Fuse scores from a relevance judge into the top slice.")
    p.add_argument("--judge", choices=["http", "cross-encoder"], default="http", help="Relevance judge used with --rescore.")
    p.add_argument("--cross-encoder-model", default="cross-encoder/ms-marco-MiniLM-L-6-v2")
    p.add_argument("--device", default="cpu", help="cpu|cuda (cross-encoder judge only).")
    p.add_argument("--log-level", default=None, help="Logging level; defaults to $CODERAG_LOG_LEVEL, then INFO.")
    return p


def main() -> int:
    args = build_arg_parser().parse_args()
    configure_logging(args.log_level)
    log = logging.getLogger("main")

    cfg = load_config(args.config) if args.config else default_retrieval_config()
    if args.backend:
        cfg = replace(cfg, index=replace(cfg.index, backend=args.backend))
    if args.topk is not None:
        cfg = replace(cfg, final_top_k=int(args.topk))

    judge = None
    if args.rescore:
        if args.judge == "cross-encoder":
            judge = CrossEncoderJudge(args.cross_encoder_model, device=args.device, max_chars=cfg.rescore.max_chars)
        else:
            judge = HttpRelevanceJudge(cfg.rescore)
    pipeline = RetrievalPipeline(cfg, judge=judge)
    try:
        pipeline.load(args.corpus)
    except CorpusError as e:
        log.error("%s", e)
        return 2

    try:
        query_vector = load_query_vector(args.query_vector)
    except (OSError, ValueError) as e:
        log.error("Could not read query vector: %s", e)
        return 2

    try:
        results = pipeline.search(query_vector, args.query, rescore_enabled=args.rescore)
    except DimensionMismatch as e:
        log.error("%s", e)
        return 1

    log.info("Returning %d results", len(results))
    for r in results:
        print(f"{r.rank}\t{r.record.repository}\t{r.record.label}\t{r.score:.6f}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
