"""Approximate nearest-neighbour index over corpus vectors (stage 1 recall).

Backends (all behind the `VectorIndex` interface):
- **hnswlib** (default): HNSW proximity graph in cosine space.
- **flat**: exact numpy scan with the same `(id, distance)` contract; useful as
  a reference and when hnswlib is unavailable.

Ids are the input positions of the vectors passed to `build()`. Distances are
`1 - cosine similarity` (smaller is closer). Index results are candidates only;
the reranking stages decide the final order.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, List, Optional, Tuple

import numpy as np

from coderag.config import IndexConfig
from coderag.errors import DimensionMismatch, IndexUnavailable

log = logging.getLogger(__name__)

Neighbor = Tuple[int, float]


def _atomic_write_text(path: str, text: str) -> None:
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(text)
    os.replace(tmp, path)


def _l2_normalize_rows(x: np.ndarray) -> np.ndarray:
    n = np.linalg.norm(x, axis=1, keepdims=True)
    n = np.where(n > 0.0, n, 1.0)
    return x / n


def vectors_fingerprint(vectors: np.ndarray) -> str:
    """Short stable hash of a vector matrix (shape + float32 bytes)."""
    data = np.ascontiguousarray(vectors, dtype=np.float32)
    h = hashlib.sha256()
    h.update(str(tuple(data.shape)).encode("utf-8"))
    h.update(data.tobytes())
    return h.hexdigest()[:20]


def index_cache_key(vectors: np.ndarray, params: dict) -> str:
    """Cache key for a built graph: the vectors plus every parameter that shapes it."""
    h = hashlib.sha256()
    h.update(vectors_fingerprint(vectors).encode("utf-8"))
    h.update(json.dumps(params, sort_keys=True).encode("utf-8"))
    return h.hexdigest()[:20]


class VectorIndex(ABC):
    """Build-once, read-only nearest-neighbour index."""

    backend = "abstract"

    def __init__(self, dim: int) -> None:
        if int(dim) <= 0:
            raise IndexUnavailable(f"Invalid embedding dimension: {dim!r}")
        self.dim = int(dim)
        self.size = 0

    @abstractmethod
    def build(self, vectors: np.ndarray) -> None:
        """Index all `vectors` (shape (N, dim)); replaces any previous contents."""

    @abstractmethod
    def _knn(self, q: np.ndarray, k: int) -> List[Neighbor]:
        ...

    def search(self, query: Any, k: int) -> List[Neighbor]:
        """Return up to `k` (id, distance) pairs ordered by ascending distance."""
        if self.size == 0 or int(k) <= 0:
            return []
        q = np.asarray(query, dtype=np.float32).reshape(-1)
        if int(q.shape[0]) != self.dim:
            raise DimensionMismatch(expected=self.dim, got=int(q.shape[0]))
        if not np.any(q) or not np.all(np.isfinite(q)):
            return []
        return self._knn(q, min(int(k), self.size))

    def _check_vectors(self, vectors: Any) -> np.ndarray:
        data = np.asarray(vectors, dtype=np.float32)
        if data.ndim != 2 or data.shape[0] == 0:
            raise IndexUnavailable(f"Cannot build an index over vectors of shape {tuple(data.shape)}")
        if int(data.shape[1]) != self.dim:
            raise IndexUnavailable(f"Vector dim mismatch: got={int(data.shape[1])} expected={self.dim}")
        return np.ascontiguousarray(data)


class FlatVectorIndex(VectorIndex):
    """Exact scan that honours the ANN interface."""

    backend = "flat"

    def __init__(self, dim: int) -> None:
        super().__init__(dim)
        self._unit: Optional[np.ndarray] = None

    def build(self, vectors: np.ndarray) -> None:
        data = self._check_vectors(vectors).astype(np.float64)
        unit = _l2_normalize_rows(data)
        unit.setflags(write=False)
        self._unit = unit
        self.size = int(unit.shape[0])

    def _knn(self, q: np.ndarray, k: int) -> List[Neighbor]:
        assert self._unit is not None
        qn = q.astype(np.float64)
        qn = qn / np.linalg.norm(qn)
        dist = 1.0 - np.clip(self._unit @ qn, -1.0, 1.0)
        order = np.argsort(dist, kind="stable")[:k]
        return [(int(i), float(dist[int(i)])) for i in order]


@dataclass(frozen=True)
class HnswIndexMeta:
    backend: str
    space: str
    dim: int
    num_items: int
    fingerprint: str
    index_path: str
    params: dict


class HnswVectorIndex(VectorIndex):
    """hnswlib graph in cosine space."""

    backend = "hnswlib"

    def __init__(
        self,
        dim: int,
        *,
        M: int = 16,
        ef_construction: int = 200,
        ef_search: int = 64,
        seed: int = 42,
        num_threads: int = 1,
    ) -> None:
        super().__init__(dim)
        self.M = int(M)
        self.ef_construction = int(ef_construction)
        self.ef_search = int(ef_search)
        self.seed = int(seed)
        self.num_threads = int(num_threads)
        self.fingerprint = ""
        self._hnsw = None
        self._ef = 0
        self._ef_lock = threading.Lock()

    @property
    def params(self) -> dict:
        return {
            "M": self.M,
            "ef_construction": self.ef_construction,
            "ef_search": self.ef_search,
            "seed": self.seed,
        }

    @classmethod
    def from_config(cls, dim: int, cfg: IndexConfig) -> "HnswVectorIndex":
        return cls(
            dim,
            M=cfg.M,
            ef_construction=cfg.ef_construction,
            ef_search=cfg.ef_search,
            seed=cfg.seed,
            num_threads=cfg.num_threads,
        )

    @staticmethod
    def _require_hnswlib():
        try:
            import hnswlib  # type: ignore
        except Exception as e:
            raise IndexUnavailable(
                "Missing dependency for ANN backend 'hnswlib'. Install hnswlib or use backend='flat'."
            ) from e
        return hnswlib

    def build(self, vectors: np.ndarray) -> None:
        hnswlib = self._require_hnswlib()
        data = self._check_vectors(vectors)
        n = int(data.shape[0])

        p = hnswlib.Index(space="cosine", dim=self.dim)
        p.init_index(max_elements=n, ef_construction=self.ef_construction, M=self.M, random_seed=self.seed)
        p.add_items(data, np.arange(n, dtype=np.int64), num_threads=self.num_threads)
        ef = max(self.ef_search, 1)
        p.set_ef(ef)

        # Swap in only once the graph is complete.
        self._hnsw = p
        self._ef = ef
        self.size = n
        self.fingerprint = vectors_fingerprint(data)

    def _ensure_ef(self, k: int) -> None:
        # hnswlib cannot return k results when ef < k; ef only ever grows.
        if k <= self._ef:
            return
        with self._ef_lock:
            if k > self._ef:
                self._hnsw.set_ef(k)
                self._ef = k

    def _knn(self, q: np.ndarray, k: int) -> List[Neighbor]:
        if self._hnsw is None:
            return []
        self._ensure_ef(k)
        labels, distances = self._hnsw.knn_query(q.reshape(1, -1), k=k, num_threads=1)
        out = [(int(i), float(d)) for i, d in zip(labels[0].tolist(), distances[0].tolist())]
        # Deterministic tie-break
        out.sort(key=lambda x: (x[1], x[0]))
        return out

    def save(self, index_path: str, meta_path: str) -> HnswIndexMeta:
        if self._hnsw is None:
            raise IndexUnavailable("Cannot save an index that has not been built")
        os.makedirs(os.path.dirname(index_path) or ".", exist_ok=True)
        tmp = index_path + ".tmp"
        self._hnsw.save_index(tmp)
        os.replace(tmp, index_path)

        meta = HnswIndexMeta(
            backend=self.backend,
            space="cosine",
            dim=self.dim,
            num_items=self.size,
            fingerprint=self.fingerprint,
            index_path=index_path,
            params=self.params,
        )
        _atomic_write_text(meta_path, json.dumps(asdict(meta), indent=2, sort_keys=True) + "\n")
        return meta

    @classmethod
    def load(
        cls,
        meta_path: str,
        *,
        expected_fingerprint: Optional[str] = None,
        expected_params: Optional[dict] = None,
    ) -> "HnswVectorIndex":
        """Load a persisted graph; raises IndexUnavailable when stale or unreadable."""
        try:
            with open(meta_path, "r", encoding="utf-8") as f:
                obj = json.load(f)
            meta = HnswIndexMeta(
                backend=str(obj["backend"]),
                space=str(obj["space"]),
                dim=int(obj["dim"]),
                num_items=int(obj["num_items"]),
                fingerprint=str(obj["fingerprint"]),
                index_path=str(obj["index_path"]),
                params=dict(obj.get("params") or {}),
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise IndexUnavailable(f"{meta_path}: unreadable index metadata: {e}") from e

        if meta.backend != cls.backend:
            raise IndexUnavailable(f"{meta_path}: backend is not hnswlib: {meta.backend!r}")
        if expected_fingerprint is not None and meta.fingerprint != expected_fingerprint:
            raise IndexUnavailable(f"{meta_path}: cached index does not match the corpus vectors")
        if expected_params is not None and meta.params != expected_params:
            raise IndexUnavailable(
                f"{meta_path}: cached index was built with {meta.params}, expected {expected_params}"
            )
        if not os.path.isfile(meta.index_path):
            raise IndexUnavailable(f"{meta_path}: index file missing: {meta.index_path}")

        hnswlib = cls._require_hnswlib()
        idx = cls(
            meta.dim,
            M=int(meta.params.get("M", 16)),
            ef_construction=int(meta.params.get("ef_construction", 200)),
            ef_search=int(meta.params.get("ef_search", 64)),
            seed=int(meta.params.get("seed", 42)),
        )
        p = hnswlib.Index(space="cosine", dim=meta.dim)
        try:
            p.load_index(meta.index_path, max_elements=meta.num_items)
        except RuntimeError as e:
            raise IndexUnavailable(f"{meta.index_path}: failed to load hnsw index: {e}") from e
        ef = max(idx.ef_search, 1)
        p.set_ef(ef)
        idx._hnsw = p
        idx._ef = ef
        idx.size = meta.num_items
        idx.fingerprint = meta.fingerprint
        return idx


def default_index_paths(cache_dir: str, key: str) -> Tuple[str, str]:
    index_path = os.path.join(cache_dir, f"hnsw_{key}.bin")
    meta_path = os.path.join(cache_dir, f"hnsw_meta_{key}.json")
    return index_path, meta_path


def _build_hnsw(vectors: np.ndarray, cfg: IndexConfig) -> HnswVectorIndex:
    idx = HnswVectorIndex.from_config(int(vectors.shape[1]), cfg)
    if cfg.cache_dir:
        params = idx.params
        index_path, meta_path = default_index_paths(cfg.cache_dir, index_cache_key(vectors, params))
        if os.path.exists(meta_path):
            try:
                cached = HnswVectorIndex.load(
                    meta_path, expected_fingerprint=vectors_fingerprint(vectors), expected_params=params
                )
                log.info("Loaded cached hnsw index (%d items) from %s", cached.size, index_path)
                return cached
            except IndexUnavailable as e:
                log.warning("Ignoring cached index: %s", e)
        idx.build(vectors)
        try:
            idx.save(index_path, meta_path)
        except OSError as e:
            log.warning("Could not persist hnsw index to %s: %s", cfg.cache_dir, e)
        return idx

    idx.build(vectors)
    return idx


def build_index(vectors: np.ndarray, cfg: Optional[IndexConfig] = None) -> Optional[VectorIndex]:
    """Build the configured index, or return None to fall back to exact search."""
    cfg = cfg or IndexConfig()
    backend = str(cfg.backend).lower()
    if backend == "exact":
        log.info("Index backend 'exact' configured; using exact search")
        return None
    if vectors.ndim != 2 or vectors.shape[0] == 0 or vectors.shape[1] == 0:
        log.info("No vectors to index; using exact search")
        return None

    try:
        if backend == "flat":
            idx: VectorIndex = FlatVectorIndex(int(vectors.shape[1]))
            idx.build(vectors)
        else:
            idx = _build_hnsw(vectors, cfg)
    except IndexUnavailable as e:
        log.warning("Approximate index unavailable, falling back to exact search: %s", e)
        return None
    except RuntimeError as e:
        log.warning("Approximate index build failed, falling back to exact search: %s", e)
        return None

    log.info("Built %s index over %d vectors (dim=%d)", idx.backend, idx.size, idx.dim)
    return idx
