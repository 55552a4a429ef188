"""Cosine similarity and exact (brute-force) search over the corpus.

The exact scan is O(N*D) and is the reference ranking the approximate index
is measured against; it is also the fallback when no index is available.
"""

from __future__ import annotations

import math
from typing import Any, List, Optional, Sequence

import numpy as np

from coderag.corpus import norm_array, vector_matrix
from coderag.errors import DimensionMismatch
from coderag.types import CorpusRecord, ScoredCandidate


def as_query_array(query: Any) -> Optional[np.ndarray]:
    """Convert a caller-supplied query vector to a 1-D float array.

    Returns None when the vector is absent or malformed (empty, nested,
    non-numeric or containing NaN/inf).
    """
    if query is None or isinstance(query, (str, bytes)):
        return None
    try:
        q = np.asarray(query, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if q.ndim != 1 or q.shape[0] == 0 or not np.all(np.isfinite(q)):
        return None
    return q


def check_dim(q: np.ndarray, dim: int) -> None:
    if int(q.shape[0]) != int(dim):
        raise DimensionMismatch(expected=int(dim), got=int(q.shape[0]))


def cosine_similarity(
    a: Sequence[float],
    b: Sequence[float],
    *,
    norm_a: Optional[float] = None,
    norm_b: Optional[float] = None,
) -> float:
    """dot(a, b) / (|a| * |b|), defined as 0.0 when either magnitude is zero."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatch(expected=int(va.shape[0]), got=int(vb.shape[0]))
    na = float(np.linalg.norm(va)) if norm_a is None else float(norm_a)
    nb = float(np.linalg.norm(vb)) if norm_b is None else float(norm_b)
    if na == 0.0 or nb == 0.0:
        return 0.0
    sim = float(np.dot(va, vb)) / (na * nb)
    if not math.isfinite(sim):
        return 0.0
    return max(-1.0, min(1.0, sim))


def similarities(q: np.ndarray, records: List[CorpusRecord]) -> np.ndarray:
    """Cosine similarity of `q` against every record, in corpus order."""
    if not records:
        return np.zeros((0,), dtype=np.float64)
    mat = vector_matrix(records).astype(np.float64)
    norms = norm_array(records)
    qn = float(np.linalg.norm(q))
    if qn == 0.0:
        return np.zeros((len(records),), dtype=np.float64)
    dots = mat @ q
    denom = norms * qn
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0.0, dots / np.where(denom > 0.0, denom, 1.0), 0.0)
    sims = np.nan_to_num(sims, nan=0.0, posinf=0.0, neginf=0.0)
    return np.clip(sims, -1.0, 1.0)


def exact_search(query: Any, records: List[CorpusRecord], *, topk: Optional[int] = None) -> List[ScoredCandidate]:
    """Rank every record by cosine similarity to `query`.

    Sorted by similarity desc; ties keep corpus order (stable sort).
    """
    if not records:
        return []
    q = as_query_array(query)
    if q is None:
        return []
    check_dim(q, records[0].dim)

    sims = similarities(q, records)
    order = np.argsort(-sims, kind="stable")
    if topk is not None:
        if int(topk) <= 0:
            return []
        order = order[: int(topk)]
    return [ScoredCandidate(record=records[int(i)], position=int(i), similarity=float(sims[int(i)])) for i in order]
