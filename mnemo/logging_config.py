"""Logging setup for mnemo.

Two loggers:
- ``mnemo``: diagnostic log, written to ``<home>/logs/local-YYYY-MM-DD.log``
- ``mnemo.events``: memory event trail (remember/recall/consolidate),
  written to ``<home>/logs/memory-events-YYYY-MM-DD.log``

Nothing is written to disk until ``setup_mnemo_logging`` is called.
"""

import logging
from datetime import date
from pathlib import Path
from typing import Optional

from mnemo.utils import get_mnemo_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
EVENT_FORMAT = "%(asctime)s | %(message)s"

_event_logger = logging.getLogger("mnemo.events")
_event_logger.propagate = False
_event_logger.addHandler(logging.NullHandler())


def _resolve_log_dir(log_dir: Optional[Path]) -> Path:
    directory = log_dir or (get_mnemo_home() / "logs")
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def setup_mnemo_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> logging.Logger:
    """Configure the ``mnemo`` logger and the memory event trail.

    Args:
        level: Level name, case-insensitive. Unknown names fall back to INFO.
        log_dir: Directory for log files (default ``<home>/logs``).

    Returns:
        The configured ``mnemo`` logger. Calling again does not add handlers.
    """
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logger = logging.getLogger("mnemo")
    logger.setLevel(numeric_level)

    directory = _resolve_log_dir(log_dir)
    today = date.today().isoformat()

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        file_handler = logging.FileHandler(directory / f"local-{today}.log", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if numeric_level <= logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console)

    if not any(isinstance(h, logging.FileHandler) for h in _event_logger.handlers):
        event_handler = logging.FileHandler(
            directory / f"memory-events-{today}.log", encoding="utf-8"
        )
        event_handler.setFormatter(logging.Formatter(EVENT_FORMAT))
        _event_logger.addHandler(event_handler)
    _event_logger.setLevel(logging.INFO)

    return logger


def log_memory_event(event_type: str, details: str, session_id: str = "default") -> None:
    """Append one line to the memory event trail."""
    _event_logger.info(f"{event_type} | session={session_id} | {details}")


def log_remember(session_id: str, memory_type: str, memory_id: str, importance: float) -> None:
    log_memory_event(
        "remember",
        f"type={memory_type}, id={memory_id[:12]}, importance={importance:.2f}",
        session_id=session_id,
    )


def log_recall(session_id: str, query: str, results: int, method: str) -> None:
    log_memory_event(
        "recall",
        f"query={query[:50]}, results={results}, method={method}",
        session_id=session_id,
    )


def log_consolidation(session_id: str, before: int, after: int, deleted: int, decayed: int = 0) -> None:
    log_memory_event(
        "consolidate",
        f"before={before}, after={after}, deleted={deleted}, decayed={decayed}",
        session_id=session_id,
    )
