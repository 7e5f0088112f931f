from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, ContextManager, Iterator, Optional, Protocol

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
PROGRESS_LOG_STEP_PERCENT = 10


class ProgressReporter(Protocol):
    """Minimal interface for progress callbacks."""

    def update(self, advance: int) -> None: ...


ProgressFactory = Callable[[Optional[int], str], ContextManager[ProgressReporter]]


class _LoggingProgress:
    """Logs a line each time another 10% of a known-size download arrives."""

    def __init__(self, total: Optional[int], description: str) -> None:
        self.total = total if total and total > 0 else None
        self.description = description
        self.received = 0
        self._next_mark = PROGRESS_LOG_STEP_PERCENT

    def update(self, advance: int) -> None:
        self.received += advance
        if self.total is None:
            return
        percent = self.received * 100 // self.total
        if percent < self._next_mark:
            return
        logger.info(
            "%s: %s%% (%sMB)",
            self.description,
            min(percent, 100),
            self.received // BYTES_PER_MB,
        )
        self._next_mark = (percent // PROGRESS_LOG_STEP_PERCENT + 1) * PROGRESS_LOG_STEP_PERCENT


@contextmanager
def _logging_progress(total: Optional[int], description: str) -> Iterator[ProgressReporter]:
    reporter = _LoggingProgress(total, description)
    yield reporter
    logger.debug("%s finished after %s bytes", description, reporter.received)


_progress_factory: Optional[ProgressFactory] = None


def set_progress_factory(factory: Optional[ProgressFactory]) -> None:
    """Register a global factory for progress reporters (None restores logging)."""

    global _progress_factory
    _progress_factory = factory


@contextmanager
def progress_context(total: Optional[int], description: str) -> Iterator[ProgressReporter]:
    """Return a context manager yielding the active progress reporter."""

    factory = _progress_factory or _logging_progress
    with factory(total, description) as reporter:
        yield reporter


__all__ = [
    "ProgressReporter",
    "ProgressFactory",
    "progress_context",
    "set_progress_factory",
]
