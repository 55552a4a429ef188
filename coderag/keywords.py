"""Query keyword extraction for the heuristic reranker.

Queries are often written in a mix of Korean and English ("React 컴포넌트
리팩토링 좀 해줘"). Separator handling is Unicode-aware: letters, digits and
combining marks of every script are keyword-bearing (Devanagari and Thai vowel
signs stay inside their word), only punctuation/symbols are noise.
"""

from __future__ import annotations

import unicodedata
from typing import Iterable, List, Optional

from coderag.config import RetrievalConfig


_WORD_CATEGORIES = frozenset("LNM")


def _is_word_char(ch: str) -> bool:
    return ch == "_" or unicodedata.category(ch)[0] in _WORD_CATEGORIES


def _strip_noise(text: str) -> str:
    return "".join(ch if ch.isspace() or _is_word_char(ch) else " " for ch in text)


# Grammatical particles and generic request words that carry no search intent.
DEFAULT_STOPWORDS = frozenset(
    {
        # Korean particles
        "을", "를", "이", "가", "은", "는", "의", "에", "로",
        # Korean request words
        "좀", "줘", "해줘", "해주세요", "바꿔줘", "알려줘", "사용법", "말고", "대신", "관련된", "대한", "대해",
        # English equivalents
        "please", "change", "usage", "show", "tell", "explain", "give",
        "instead", "related", "about", "the", "and", "for", "with", "how",
        "what", "use", "using", "me", "of", "to", "in", "is", "it",
    }
)


def merged_stopwords(cfg: Optional[RetrievalConfig] = None) -> frozenset:
    if cfg is None or not cfg.extra_stopwords:
        return DEFAULT_STOPWORDS
    extra = {w.strip().lower() for w in cfg.extra_stopwords if w and w.strip()}
    return DEFAULT_STOPWORDS | frozenset(extra)


def _iter_unique(seq: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for x in seq:
        if x in seen:
            continue
        seen.add(x)
        out.append(x)
    return out


def extract_keywords(text: Optional[str], *, stopwords: Optional[Iterable[str]] = None) -> List[str]:
    """Lower-cased, de-duplicated keywords in first-occurrence order.

    Tokens of length <= 1 and stop-words are dropped.
    """
    if not text:
        return []
    stop = DEFAULT_STOPWORDS if stopwords is None else frozenset(stopwords)
    normalized = _strip_noise(text.lower())
    return _iter_unique(t for t in normalized.split() if len(t) > 1 and t not in stop)
