"""Error taxonomy for corpus loading, search and rescoring."""

from __future__ import annotations


class RetrievalError(Exception):
    """Base class for all errors raised by this package."""


class CorpusError(RetrievalError):
    """The corpus could not be loaded; the pipeline degrades to empty."""


class CorpusUnavailable(CorpusError):
    """The corpus source does not exist."""


class CorpusCorrupt(CorpusError):
    """The corpus source exists but does not parse into valid records."""


class DimensionMismatch(ValueError, RetrievalError):
    """A query vector's length differs from the corpus dimension."""

    def __init__(self, expected: int, got: int) -> None:
        super().__init__(f"Query dim mismatch: got={got} expected={expected}")
        self.expected = int(expected)
        self.got = int(got)


class IndexUnavailable(RetrievalError):
    """The approximate index could not be built or loaded (exact search is used)."""


class RescoreFailed(RetrievalError):
    """A single external relevance judgment failed."""
