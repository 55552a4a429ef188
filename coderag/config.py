"""Configuration for the retrieval pipeline.

Every tunable number lives here as a named field of a frozen dataclass so that
reranking weights and stage depths can be retuned without touching the stages
themselves. `load_config()` reads optional overrides from a JSON file.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, is_dataclass, replace
from typing import Any, Mapping, Optional, Tuple


@dataclass(frozen=True)
class HeuristicWeights:
    """Additive adjustments applied by the heuristic reranker.

    Values are empirically tuned and expected to need retuning.
    """

    path_keyword: float = 0.15
    content_keyword: float = 0.05
    symbol_keyword: float = 0.10
    test_file_penalty: float = 0.40
    src_penalty: float = 0.05
    index_bonus: float = 0.20


@dataclass(frozen=True)
class IndexConfig:
    """Approximate index parameters (hnswlib terminology)."""

    # hnswlib | flat | exact ("exact" skips building an index altogether)
    backend: str = "hnswlib"
    M: int = 16
    ef_construction: int = 200
    ef_search: int = 64
    seed: int = 42
    # Single-threaded build keeps graph construction deterministic.
    num_threads: int = 1
    # Optional directory for persisting the built graph between runs.
    cache_dir: Optional[str] = None


@dataclass(frozen=True)
class RescoreConfig:
    """Relevance rescoring stage (external judge) parameters."""

    top_n: int = 5
    heuristic_weight: float = 0.7
    relevance_weight: float = 0.3
    timeout_s: float = 10.0
    max_workers: int = 5
    # > 0 serialises judge calls with this fixed delay between them (rate limits).
    min_interval_s: float = 0.0
    max_chars: int = 2000
    endpoint: str = "http://localhost:11434/v1"
    model: str = "llama3"
    api_key: Optional[str] = None


@dataclass(frozen=True)
class RetrievalConfig:
    initial_k: int = 15
    final_top_k: int = 3
    weights: HeuristicWeights = field(default_factory=HeuristicWeights)
    index: IndexConfig = field(default_factory=IndexConfig)
    rescore: RescoreConfig = field(default_factory=RescoreConfig)
    extra_stopwords: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if int(self.initial_k) <= 0:
            raise ValueError("initial_k must be a positive integer")
        if int(self.final_top_k) <= 0:
            raise ValueError("final_top_k must be a positive integer")
        if int(self.rescore.top_n) <= 0:
            raise ValueError("rescore.top_n must be a positive integer")
        if str(self.index.backend).lower() not in ("hnswlib", "flat", "exact"):
            raise ValueError(f"Unknown index backend: {self.index.backend!r} (use 'hnswlib', 'flat' or 'exact')")


def _rescore_from_env(cfg: RescoreConfig) -> RescoreConfig:
    overrides = {}
    if os.getenv("CODERAG_JUDGE_URL"):
        overrides["endpoint"] = os.environ["CODERAG_JUDGE_URL"]
    if os.getenv("CODERAG_JUDGE_MODEL"):
        overrides["model"] = os.environ["CODERAG_JUDGE_MODEL"]
    if os.getenv("CODERAG_JUDGE_API_KEY"):
        overrides["api_key"] = os.environ["CODERAG_JUDGE_API_KEY"]
    return replace(cfg, **overrides) if overrides else cfg


def default_retrieval_config() -> RetrievalConfig:
    """Default config with judge connection details taken from the environment."""
    cfg = RetrievalConfig()
    return replace(cfg, rescore=_rescore_from_env(cfg.rescore))


def _apply(obj: Any, overrides: Mapping[str, Any], where: str) -> Any:
    known = {f.name: f for f in fields(obj)}
    updates = {}
    for key, value in overrides.items():
        if key not in known:
            raise ValueError(f"{where}: unknown config key {key!r}")
        current = getattr(obj, key)
        if is_dataclass(current):
            if not isinstance(value, Mapping):
                raise ValueError(f"{where}.{key}: expected an object, got {type(value).__name__}")
            updates[key] = _apply(current, value, f"{where}.{key}")
        elif isinstance(current, tuple):
            if not isinstance(value, (list, tuple)):
                raise ValueError(f"{where}.{key}: expected a list, got {type(value).__name__}")
            updates[key] = tuple(str(v) for v in value)
        else:
            updates[key] = value
    return replace(obj, **updates)


def config_from_mapping(obj: Mapping[str, Any], base: Optional[RetrievalConfig] = None) -> RetrievalConfig:
    """Return `base` (or the default config) with nested overrides applied."""
    if not isinstance(obj, Mapping):
        raise ValueError("config: expected a JSON object")
    return _apply(base if base is not None else default_retrieval_config(), obj, "config")


def load_config(path: str) -> RetrievalConfig:
    with open(path, "r", encoding="utf-8") as f:
        try:
            obj = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"{path}: invalid JSON config: {e}") from e
    return config_from_mapping(obj)
