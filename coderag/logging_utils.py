"""Logging setup for entrypoints.

Library modules only create loggers (`logging.getLogger(__name__)`); `main.py`
and `coderag.eval` call `configure_logging()` once. The level comes from the
command line, else `CODERAG_LOG_LEVEL`, else INFO.
"""

from __future__ import annotations

import logging
import os
from typing import Iterable, Optional, Union


LOG_LEVEL_ENV = "CODERAG_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty at DEBUG: connection pool lines per judge call, model download progress.
NOISY_LOGGERS = ("urllib3", "sentence_transformers", "filelock")


def parse_level(level: Union[str, int]) -> int:
    if isinstance(level, int) and not isinstance(level, bool):
        return level
    if not isinstance(level, str) or not level.strip():
        raise ValueError("log level must be a level name like 'INFO' or a number like '20'")
    name = level.strip().upper()
    if name == "WARN":
        name = "WARNING"
    value = logging.getLevelName(name)
    if isinstance(value, int):
        return value
    try:
        return int(name)
    except ValueError as e:
        raise ValueError(f"Unknown log level: {level!r}") from e


def configure_logging(
    level: Optional[Union[str, int]] = None,
    logger_name: Optional[str] = None,
    *,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> int:
    """Attach one console handler to `logger_name` (root by default).

    Repeated calls update the existing stream handler instead of adding another.
    Loggers named in `quiet` are held at WARNING or above. Returns the level set.
    """
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV) or "INFO"
    lvl = parse_level(level)
    target = logging.getLogger(logger_name)
    target.setLevel(lvl)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    handler = next((h for h in target.handlers if isinstance(h, logging.StreamHandler)), None)
    if handler is None:
        handler = logging.StreamHandler()
        target.addHandler(handler)
    handler.setFormatter(formatter)
    handler.setLevel(lvl)

    for name in quiet:
        logging.getLogger(name).setLevel(max(lvl, logging.WARNING))
    return lvl
