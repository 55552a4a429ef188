"""Core dataclasses shared by the retrieval pipeline.

These types are the interchange format across:
- corpus loading
- exact / approximate vector search
- heuristic and relevance reranking
- the orchestrating pipeline and CLI output
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Tuple

import numpy as np


@dataclass(frozen=True, eq=False)
class CorpusRecord:
    """One retrievable code chunk with its embedding.

    Compared by identity: records are created once per load and never copied.
    """

    repository: str
    file_path: str
    content: str
    vector: np.ndarray
    norm: float
    symbol: Optional[str] = None

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])

    @property
    def label(self) -> str:
        """`filePath#symbol` (or just the path for whole-file chunks)."""
        if self.symbol:
            return f"{self.file_path}#{self.symbol}"
        return self.file_path


@dataclass(frozen=True)
class ScoredCandidate:
    """A corpus record plus the scores it accumulated along the pipeline."""

    record: CorpusRecord
    position: int
    similarity: float
    rerank_score: Optional[float] = None
    relevance: Optional[float] = None

    @property
    def score(self) -> float:
        return self.similarity if self.rerank_score is None else self.rerank_score

    def with_rerank(self, rerank_score: float) -> "ScoredCandidate":
        return replace(self, rerank_score=float(rerank_score))

    def with_relevance(self, relevance: float, fused_score: float) -> "ScoredCandidate":
        return replace(self, relevance=float(relevance), rerank_score=float(fused_score))


@dataclass(frozen=True)
class SearchResult:
    """Final pipeline output entry."""

    rank: int
    record: CorpusRecord
    score: float
    similarity: float
    relevance: Optional[float] = None


@dataclass(frozen=True)
class CorpusSnapshot:
    """An immutable generation of the loaded corpus and its index.

    Readers take the reference once per search; reload builds a new snapshot
    and swaps the reference.
    """

    records: Tuple[CorpusRecord, ...]
    dim: Optional[int]
    index: Optional[object]
    generation: int
    source: Optional[str] = None
    load_error: Optional[Exception] = None

    @property
    def is_empty(self) -> bool:
        return not self.records

    @classmethod
    def empty(
        cls,
        *,
        generation: int = 0,
        source: Optional[str] = None,
        load_error: Optional[Exception] = None,
    ) -> "CorpusSnapshot":
        return cls(records=(), dim=None, index=None, generation=generation, source=source, load_error=load_error)
