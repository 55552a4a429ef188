"""Corpus loading (the persisted output of the ingestion step).

Expected inputs:
- `*.json`: a JSON array of record objects
- `*.jsonl`: one record object per line (blank lines skipped)

Record shape:
  {"repository": str, "filePath": str, "symbol": str | null, "content": str,
   "vector": [float, ...], "norm": float (optional)}

All records must share the first record's vector length.
"""

from __future__ import annotations

import json
import logging
import math
import os
from typing import Any, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from coderag.errors import CorpusCorrupt, CorpusUnavailable
from coderag.types import CorpusRecord

log = logging.getLogger(__name__)


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _iter_raw_records(path: str) -> Iterable[Tuple[int, Any]]:
    """Yield (position, raw_object) from a JSON array or JSONL file."""
    with open(path, "r", encoding="utf-8") as f:
        if path.lower().endswith(".jsonl"):
            pos = 0
            for line_no, raw in enumerate(f, start=1):
                line = raw.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError as e:
                    raise CorpusCorrupt(f"{path}:{line_no}: invalid JSON: {e}") from e
                yield pos, obj
                pos += 1
            return

        text = f.read()
    if not text.strip():
        return
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CorpusCorrupt(f"{path}: invalid JSON: {e}") from e
    if not isinstance(data, list):
        raise CorpusCorrupt(f"{path}: expected a JSON array of records, got {type(data).__name__}")
    yield from enumerate(data)


def _require_str(obj: Mapping[str, Any], key: str, where: str, *, non_empty: bool = False) -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise CorpusCorrupt(f"{where}: field {key!r} must be a string, got {type(value).__name__}")
    if non_empty and not value.strip():
        raise CorpusCorrupt(f"{where}: field {key!r} must be non-empty")
    return value


def _parse_vector(raw: Any, where: str) -> np.ndarray:
    if not isinstance(raw, list) or not raw:
        raise CorpusCorrupt(f"{where}: field 'vector' must be a non-empty list of numbers")
    if not all(_is_number(x) for x in raw):
        raise CorpusCorrupt(f"{where}: field 'vector' contains non-numeric values")
    vec = np.asarray(raw, dtype=np.float32)
    if not np.all(np.isfinite(vec)):
        raise CorpusCorrupt(f"{where}: field 'vector' contains non-finite values")
    vec.setflags(write=False)
    return vec


def _resolve_norm(raw: Any, vec: np.ndarray) -> float:
    """Reuse a persisted norm when it is a usable number, else compute it."""
    if _is_number(raw) and math.isfinite(float(raw)) and float(raw) >= 0.0:
        return float(raw)
    return float(np.linalg.norm(vec.astype(np.float64)))


def parse_record(obj: Any, where: str) -> CorpusRecord:
    if not isinstance(obj, Mapping):
        raise CorpusCorrupt(f"{where}: expected a JSON object, got {type(obj).__name__}")

    repository = _require_str(obj, "repository", where, non_empty=True)
    key = "filePath" if "filePath" in obj else "file_path"
    file_path = _require_str(obj, key, where)
    content = _require_str(obj, "content", where)

    symbol = obj.get("symbol")
    if symbol is not None and not isinstance(symbol, str):
        raise CorpusCorrupt(f"{where}: field 'symbol' must be a string or null, got {type(symbol).__name__}")
    if isinstance(symbol, str) and not symbol.strip():
        symbol = None

    vec = _parse_vector(obj.get("vector"), where)
    return CorpusRecord(
        repository=repository,
        file_path=file_path,
        content=content,
        vector=vec,
        norm=_resolve_norm(obj.get("norm"), vec),
        symbol=symbol,
    )


def load_corpus(path: str) -> List[CorpusRecord]:
    """Load and validate a persisted corpus.

    Raises:
        CorpusUnavailable: the file does not exist.
        CorpusCorrupt: the contents do not parse into records of one dimension.
    """
    if not path or not os.path.isfile(path):
        raise CorpusUnavailable(f"Corpus file not found: {path!r}")

    records: List[CorpusRecord] = []
    dim: Optional[int] = None
    try:
        for pos, obj in _iter_raw_records(path):
            where = f"{path}[{pos}]"
            rec = parse_record(obj, where)
            if dim is None:
                dim = rec.dim
            elif rec.dim != dim:
                raise CorpusCorrupt(f"{where}: vector length {rec.dim} differs from corpus dimension {dim}")
            records.append(rec)
    except UnicodeDecodeError as e:
        raise CorpusCorrupt(f"{path}: not valid UTF-8 at byte {e.start}: {e.reason}") from e
    except OSError as e:
        raise CorpusUnavailable(f"Corpus file could not be read: {path!r}: {e}") from e

    log.info("Loaded %d corpus records (dim=%s) from %s", len(records), dim, path)
    return records


def corpus_dimension(records: Iterable[CorpusRecord]) -> Optional[int]:
    for rec in records:
        return rec.dim
    return None


def vector_matrix(records: List[CorpusRecord]) -> np.ndarray:
    """Stack record vectors into an (N, D) float32 matrix in corpus order."""
    if not records:
        return np.zeros((0, 0), dtype=np.float32)
    return np.vstack([r.vector for r in records]).astype(np.float32, copy=False)


def norm_array(records: List[CorpusRecord]) -> np.ndarray:
    return np.asarray([r.norm for r in records], dtype=np.float64)
