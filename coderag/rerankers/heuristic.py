"""Heuristic reranker: vector similarity + keyword and file-role adjustments.

rerank_score = similarity
             + path_keyword     per query keyword found in the file path
             + content_keyword  per query keyword found in the chunk text
             + symbol_keyword   per query keyword found in the symbol name
             - test_file_penalty  test/spec/mock files
             - src_penalty        files under a `src` directory (except index files)
             + index_bonus        `index.<ext>` entry points

Output order is deterministic: rerank_score desc, similarity desc, corpus
position asc.
"""

from __future__ import annotations

import logging
import posixpath
import re
from typing import List, Optional, Sequence, Tuple

from coderag.config import HeuristicWeights
from coderag.types import ScoredCandidate

log = logging.getLogger(__name__)

SOURCE_EXTENSIONS = ("js", "jsx", "ts", "tsx", "mjs", "cjs", "py")

_TEST_SUFFIX_RE = re.compile(r"[._-](test|spec|mock)\.[a-z0-9]+$")
_INDEX_RE = re.compile(r"^index\.(%s)$" % "|".join(SOURCE_EXTENSIONS))
_TEST_DIRS = frozenset({"__tests__", "test", "tests"})


def _normalize_path(path: str) -> str:
    return (path or "").replace("\\", "/").lower()


def is_test_file(path: str) -> bool:
    p = _normalize_path(path)
    dirs = p.split("/")[:-1]
    return bool(_TEST_SUFFIX_RE.search(posixpath.basename(p))) or any(d in _TEST_DIRS for d in dirs)


def is_index_file(path: str) -> bool:
    return bool(_INDEX_RE.match(posixpath.basename(_normalize_path(path))))


def is_under_src(path: str) -> bool:
    return "src" in _normalize_path(path).split("/")[:-1]


def explain(candidate: ScoredCandidate, keywords: Sequence[str], weights: HeuristicWeights) -> List[Tuple[str, float]]:
    """List the (rule, delta) adjustments that apply to `candidate`."""
    rec = candidate.record
    path = _normalize_path(rec.file_path)
    content = rec.content.lower()
    symbol = rec.symbol.lower() if rec.symbol else None

    out: List[Tuple[str, float]] = []
    for kw in keywords:
        if kw in path:
            out.append((f"path:{kw}", weights.path_keyword))
        if kw in content:
            out.append((f"content:{kw}", weights.content_keyword))
        if symbol is not None and kw in symbol:
            out.append((f"symbol:{kw}", weights.symbol_keyword))

    index_file = is_index_file(path)
    if is_test_file(path):
        out.append(("test_file", -weights.test_file_penalty))
    if is_under_src(path) and not index_file:
        out.append(("src", -weights.src_penalty))
    if index_file:
        out.append(("index", weights.index_bonus))
    return out


def sort_key(c: ScoredCandidate) -> Tuple[float, float, int]:
    return (-c.score, -c.similarity, c.position)


def rerank(
    candidates: Sequence[ScoredCandidate],
    keywords: Sequence[str],
    *,
    weights: Optional[HeuristicWeights] = None,
) -> List[ScoredCandidate]:
    """Attach `rerank_score` to every candidate and return them reordered."""
    if not candidates:
        return []
    weights = weights or HeuristicWeights()
    kws = [k.lower() for k in keywords if k]

    out: List[ScoredCandidate] = []
    for c in candidates:
        adjustments = explain(c, kws, weights)
        score = c.similarity + sum(delta for _, delta in adjustments)
        if log.isEnabledFor(logging.DEBUG) and adjustments:
            log.debug("rerank %s: %.4f -> %.4f %s", c.record.label, c.similarity, score, adjustments)
        out.append(c.with_rerank(score))

    out.sort(key=sort_key)
    return out
