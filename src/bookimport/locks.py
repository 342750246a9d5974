"""Per-entity serialization for run / batch mutations."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from bookimport.errors import OperationInProgress

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One re-entrant lock per entity id.

    Mutations on the same run or batch id are applied one at a time; reads
    never take these locks.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._lock_for(key):
            yield


class OperationGuard:
    """At most one in-flight resume / rollback per batch id.

    A second caller fails immediately with OperationInProgress instead of
    queuing behind the first.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._active: dict[str, str] = {}

    def active(self, batch_id: str) -> str | None:
        with self._guard:
            return self._active.get(batch_id)

    @contextmanager
    def hold(self, batch_id: str, operation: str) -> Iterator[None]:
        with self._guard:
            current = self._active.get(batch_id)
            if current is not None:
                raise OperationInProgress(batch_id, operation, current)
            self._active[batch_id] = operation
        logger.debug("Acquired %s on batch %s", operation, batch_id)
        try:
            yield
        finally:
            with self._guard:
                self._active.pop(batch_id, None)
