"""Retrieval pipeline: vector recall -> heuristic rerank -> optional rescoring.

Stages:
1. candidates: top `initial_k` from the approximate index (exact scan when no
   index is available)
2. heuristic rerank with query keywords
3. optional relevance fusion over the top `rescore.top_n`
4. truncate to `final_top_k`

The loaded corpus and its index form one immutable `CorpusSnapshot`. Reload
builds a complete new snapshot before swapping the reference, so concurrent
searches see either the old or the new generation, never a mix.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, List, Optional

from coderag.ann_index import VectorIndex, build_index
from coderag.config import RetrievalConfig, default_retrieval_config
from coderag.corpus import corpus_dimension, load_corpus, vector_matrix
from coderag.errors import CorpusError
from coderag.keywords import extract_keywords, merged_stopwords
from coderag.rerankers.heuristic import rerank
from coderag.rerankers.relevance import RelevanceJudge, Rescorer
from coderag.similarity import as_query_array, check_dim, exact_search, similarities
from coderag.types import CorpusRecord, CorpusSnapshot, ScoredCandidate, SearchResult

log = logging.getLogger(__name__)


class RetrievalPipeline:
    def __init__(self, config: Optional[RetrievalConfig] = None, judge: Optional[RelevanceJudge] = None) -> None:
        self.config = config or default_retrieval_config()
        self.rescorer = Rescorer(judge, self.config.rescore) if judge is not None else None
        self._stopwords = merged_stopwords(self.config)
        self._snapshot = CorpusSnapshot.empty()
        self._reload_lock = threading.Lock()

    @property
    def snapshot(self) -> CorpusSnapshot:
        return self._snapshot

    def build_snapshot(self, records: List[CorpusRecord], *, generation: int, source: Optional[str] = None) -> CorpusSnapshot:
        dim = corpus_dimension(records)
        index = build_index(vector_matrix(records), self.config.index) if dim else None
        return CorpusSnapshot(records=tuple(records), dim=dim, index=index, generation=generation, source=source)

    def load(self, path: str) -> CorpusSnapshot:
        """Load `path` and make it the active corpus.

        On CorpusUnavailable/CorpusCorrupt the active corpus becomes empty (the
        error is kept on the snapshot) and the error is re-raised once.
        """
        with self._reload_lock:
            generation = self._snapshot.generation + 1
            try:
                records = load_corpus(path)
            except CorpusError as e:
                log.error("Corpus load failed: %s", e)
                self._snapshot = CorpusSnapshot.empty(generation=generation, source=path, load_error=e)
                raise
            snap = self.build_snapshot(records, generation=generation, source=path)
            self._snapshot = snap
        return snap

    def reload(self, path: Optional[str] = None) -> CorpusSnapshot:
        """Rebuild from `path` (default: current source) and swap it in.

        If loading fails the previous snapshot stays active and the error is raised.
        """
        with self._reload_lock:
            current = self._snapshot
            source = path or current.source
            if not source:
                raise ValueError("reload() needs a path when no corpus has been loaded")
            try:
                records = load_corpus(source)
            except CorpusError as e:
                log.error("Corpus reload failed, keeping generation %d: %s", current.generation, e)
                raise
            snap = self.build_snapshot(records, generation=current.generation + 1, source=source)
            self._snapshot = snap
        log.info("Corpus generation %d active (%d records)", snap.generation, len(snap.records))
        return snap

    def use_records(self, records: List[CorpusRecord]) -> CorpusSnapshot:
        """Activate an in-memory corpus (already validated records)."""
        with self._reload_lock:
            snap = self.build_snapshot(list(records), generation=self._snapshot.generation + 1)
            self._snapshot = snap
        return snap

    def candidates(self, snap: CorpusSnapshot, q: Any, k: int) -> List[ScoredCandidate]:
        """Stage 1: up to `k` candidates by vector similarity."""
        index = snap.index
        if isinstance(index, VectorIndex):
            try:
                neighbors = index.search(q, k)
            except RuntimeError as e:
                log.warning("Index search failed, using exact search: %s", e)
                neighbors = []
            if neighbors:
                # Index distances are float32 approximations; report exact cosine.
                records = [snap.records[i] for i, _ in neighbors]
                sims = similarities(q, records)
                return [
                    ScoredCandidate(record=snap.records[i], position=i, similarity=float(s))
                    for (i, _), s in zip(neighbors, sims)
                ]
        return exact_search(q, list(snap.records), topk=k)

    def search(self, query_vector: Any, query_text: str, rescore_enabled: bool = False) -> List[SearchResult]:
        """Return up to `final_top_k` results for the query.

        Raises:
            DimensionMismatch: the query vector length differs from the corpus dimension.
        """
        snap = self._snapshot
        if snap.is_empty:
            return []
        q = as_query_array(query_vector)
        if q is None:
            log.debug("Ignoring absent or malformed query vector")
            return []
        check_dim(q, snap.dim)

        cfg = self.config
        pool = self.candidates(snap, q, cfg.initial_k)
        keywords = extract_keywords(query_text, stopwords=self._stopwords)
        pool = rerank(pool, keywords, weights=cfg.weights)

        if rescore_enabled:
            if self.rescorer is None:
                log.info("Rescoring requested but no relevance judge is configured; skipping")
            else:
                pool = self.rescorer.fuse(query_text, pool)

        final = pool[: cfg.final_top_k]
        log.debug(
            "Top results (generation %d, keywords=%s): %s",
            snap.generation,
            keywords,
            [(c.record.repository, c.record.label, round(c.score, 4)) for c in final],
        )
        return [
            SearchResult(rank=r, record=c.record, score=c.score, similarity=c.similarity, relevance=c.relevance)
            for r, c in enumerate(final, start=1)
        ]

    def search_records(self, query_vector: Any, query_text: str, rescore_enabled: bool = False) -> List[CorpusRecord]:
        return [r.record for r in self.search(query_vector, query_text, rescore_enabled)]
