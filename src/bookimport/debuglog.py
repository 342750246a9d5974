"""Bounded in-memory capture of recent log lines.

``RecentLogBuffer`` keeps the last N formatted records and counts what it
has dropped. ``install()`` attaches a handler feeding one to the package
logger so the CLI can print recent activity after a failure.
"""

from __future__ import annotations

import logging
import threading
from collections import deque

logger = logging.getLogger(__name__)


class RecentLogBuffer:
    """Ring buffer of log lines; the oldest line is evicted when full."""

    def __init__(self, max_size: int = 200) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._lines: deque[str] = deque(maxlen=max_size)
        self._dropped = 0
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        with self._lock:
            # Check before append: deque evicts silently
            if len(self._lines) == self._lines.maxlen:
                self._dropped += 1
            self._lines.append(line)

    def read(self, last: int | None = None) -> list[str]:
        with self._lock:
            lines = list(self._lines)
        if last is not None:
            lines = lines[-last:] if last > 0 else []
        return lines

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()
            self._dropped = 0

    @property
    def dropped_count(self) -> int:
        return self._dropped

    def __len__(self) -> int:
        return len(self._lines)


class BufferHandler(logging.Handler):
    def __init__(self, buffer: RecentLogBuffer, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.append(self.format(record))
        except Exception:
            self.handleError(record)


def install(
    buffer: RecentLogBuffer | None = None,
    logger_name: str = "bookimport",
    level: int = logging.DEBUG,
) -> RecentLogBuffer:
    if buffer is None:
        buffer = RecentLogBuffer()
    handler = BufferHandler(buffer, level)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logging.getLogger(logger_name).addHandler(handler)
    return buffer
