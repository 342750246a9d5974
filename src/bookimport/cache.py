"""Client-side memory of the run currently being watched.

The cached snapshot only tells the client which run to look at after a
restart. It is never trusted as state: ``reconcile`` always polls again.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from bookimport.errors import ExecutorUnreachable, NotFound
from bookimport.models.run import TERMINAL_RUN_STATUSES, RunSnapshot

if TYPE_CHECKING:
    from bookimport.service import ImportService

logger = logging.getLogger(__name__)


class RunSnapshotCache:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def save(self, snapshot: RunSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")

    def load(self) -> RunSnapshot | None:
        if not self.path.exists():
            return None
        try:
            return RunSnapshot.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("Discarding unreadable run cache %s: %s", self.path, e)
            self.evict()
            return None

    def evict(self) -> None:
        self.path.unlink(missing_ok=True)

    def reconcile(self, service: ImportService) -> RunSnapshot | None:
        """Re-poll the cached run and refresh or drop the cache entry.

        Returns the fresh snapshot, the stored one when the executor is
        unreachable, or None when nothing is cached or the run is unknown.
        """
        cached = self.load()
        if cached is None:
            return None
        try:
            fresh = service.poll_run(cached.run_id)
        except NotFound:
            logger.info("Cached run %s no longer exists; evicting", cached.run_id)
            self.evict()
            return None
        except ExecutorUnreachable as e:
            logger.warning("Could not refresh run %s: %s", cached.run_id, e)
            fresh = service.snapshot_run(cached.run_id)

        if fresh.status in TERMINAL_RUN_STATUSES:
            self.evict()
        else:
            self.save(fresh)
        return fresh
