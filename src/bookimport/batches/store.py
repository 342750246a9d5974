"""Persistence for batches, runs and the item-level ledger.

The tracking core only talks to the ``BatchStore`` protocol. Two
implementations ship here:

* ``InMemoryStore`` – thread-safe, process-local; used by tests and ad-hoc runs.
* ``SupabaseStore`` – tables ``import_batches``, ``pipeline_runs`` and
  ``import_batch_items`` in the configured schema.

Updates are partial-field: callers pass only the columns that change.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Protocol

from bookimport import db
from bookimport.errors import NotFound
from bookimport.models.batch import BatchItem, ImportBatch, ItemStatus
from bookimport.models.run import PipelineRun

logger = logging.getLogger(__name__)

BATCHES_TABLE = "import_batches"
RUNS_TABLE = "pipeline_runs"
ITEMS_TABLE = "import_batch_items"
ITEM_KEY = "batch_id,book_ref"


class BatchStore(Protocol):
    def insert_batch(self, batch: ImportBatch) -> ImportBatch: ...

    def get_batch(self, batch_id: str) -> ImportBatch | None: ...

    def update_batch(self, batch_id: str, fields: dict[str, Any]) -> ImportBatch: ...

    def list_batches(self) -> list[ImportBatch]: ...

    def insert_run(self, run: PipelineRun) -> PipelineRun: ...

    def get_run(self, run_id: str) -> PipelineRun | None: ...

    def update_run(self, run_id: str, fields: dict[str, Any]) -> PipelineRun: ...

    def add_items(self, items: list[BatchItem]) -> None: ...

    def list_items(
        self, batch_id: str | None = None, status: ItemStatus | None = None
    ) -> list[BatchItem]: ...

    def set_item_status(self, batch_id: str, book_refs: list[str], status: ItemStatus) -> None: ...


def _merge(model: Any, fields: dict[str, Any]) -> Any:
    """Apply a partial update and re-validate the whole record."""
    return type(model).model_validate({**model.model_dump(), **fields})


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._batches: dict[str, ImportBatch] = {}
        self._runs: dict[str, PipelineRun] = {}
        self._items: dict[str, dict[str, BatchItem]] = {}

    def insert_batch(self, batch: ImportBatch) -> ImportBatch:
        with self._lock:
            if batch.id in self._batches:
                raise ValueError(f"Batch {batch.id} already exists")
            self._batches[batch.id] = batch.model_copy(deep=True)
        return batch

    def get_batch(self, batch_id: str) -> ImportBatch | None:
        with self._lock:
            batch = self._batches.get(batch_id)
            return batch.model_copy(deep=True) if batch else None

    def update_batch(self, batch_id: str, fields: dict[str, Any]) -> ImportBatch:
        with self._lock:
            if batch_id not in self._batches:
                raise NotFound("batch", batch_id)
            updated = _merge(self._batches[batch_id], fields)
            self._batches[batch_id] = updated
            return updated.model_copy(deep=True)

    def list_batches(self) -> list[ImportBatch]:
        with self._lock:
            return [b.model_copy(deep=True) for b in self._batches.values()]

    def insert_run(self, run: PipelineRun) -> PipelineRun:
        with self._lock:
            if run.run_id in self._runs:
                raise ValueError(f"Run {run.run_id} already exists")
            self._runs[run.run_id] = run.model_copy(deep=True)
        return run

    def get_run(self, run_id: str) -> PipelineRun | None:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def update_run(self, run_id: str, fields: dict[str, Any]) -> PipelineRun:
        with self._lock:
            if run_id not in self._runs:
                raise NotFound("run", run_id)
            updated = _merge(self._runs[run_id], fields)
            self._runs[run_id] = updated
            return updated.model_copy(deep=True)

    def add_items(self, items: list[BatchItem]) -> None:
        with self._lock:
            for item in items:
                self._items.setdefault(item.batch_id, {})[item.book_ref] = item.model_copy()

    def list_items(
        self, batch_id: str | None = None, status: ItemStatus | None = None
    ) -> list[BatchItem]:
        with self._lock:
            if batch_id is None:
                rows = [i for per_batch in self._items.values() for i in per_batch.values()]
            else:
                rows = list(self._items.get(batch_id, {}).values())
            return [i.model_copy() for i in rows if status is None or i.status == status]

    def set_item_status(self, batch_id: str, book_refs: list[str], status: ItemStatus) -> None:
        with self._lock:
            per_batch = self._items.get(batch_id, {})
            for ref in book_refs:
                if ref in per_batch:
                    per_batch[ref] = per_batch[ref].model_copy(update={"status": status})


# ---------------------------------------------------------------------------
# Supabase
# ---------------------------------------------------------------------------


def _jsonable(fields: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in fields.items():
        if hasattr(v, "model_dump"):
            out[k] = v.model_dump(mode="json")
        elif isinstance(v, list):
            out[k] = [x.model_dump(mode="json") if hasattr(x, "model_dump") else x for x in v]
        elif isinstance(v, datetime):
            out[k] = v.isoformat()
        elif hasattr(v, "value"):
            out[k] = v.value
        else:
            out[k] = v
    return out


class SupabaseStore:
    """BatchStore backed by Supabase tables via ``bookimport.db``."""

    def insert_batch(self, batch: ImportBatch) -> ImportBatch:
        db.insert_rows(BATCHES_TABLE, [batch.model_dump(mode="json")])
        return batch

    def get_batch(self, batch_id: str) -> ImportBatch | None:
        rows = db.select_rows(BATCHES_TABLE, filters={"id": batch_id})
        return ImportBatch.model_validate(rows[0]) if rows else None

    def update_batch(self, batch_id: str, fields: dict[str, Any]) -> ImportBatch:
        current = self.get_batch(batch_id)
        if current is None:
            raise NotFound("batch", batch_id)
        # Validate counters on the merged record before writing
        updated = _merge(current, fields)
        db.update_rows(BATCHES_TABLE, _jsonable(fields), {"id": batch_id})
        return updated

    def list_batches(self) -> list[ImportBatch]:
        rows = db.paginated_select(BATCHES_TABLE, order_col="created_at")
        return [ImportBatch.model_validate(r) for r in rows]

    def insert_run(self, run: PipelineRun) -> PipelineRun:
        db.insert_rows(RUNS_TABLE, [run.model_dump(mode="json")])
        return run

    def get_run(self, run_id: str) -> PipelineRun | None:
        rows = db.select_rows(RUNS_TABLE, filters={"run_id": run_id})
        return PipelineRun.model_validate(rows[0]) if rows else None

    def update_run(self, run_id: str, fields: dict[str, Any]) -> PipelineRun:
        current = self.get_run(run_id)
        if current is None:
            raise NotFound("run", run_id)
        updated = _merge(current, fields)
        db.update_rows(RUNS_TABLE, _jsonable(fields), {"run_id": run_id})
        return updated

    def add_items(self, items: list[BatchItem]) -> None:
        db.upsert_rows(
            ITEMS_TABLE,
            [i.model_dump(mode="json") for i in items],
            on_conflict=ITEM_KEY,
        )

    def list_items(
        self, batch_id: str | None = None, status: ItemStatus | None = None
    ) -> list[BatchItem]:
        filters: list[tuple[str, str, Any]] = []
        if batch_id is not None:
            filters.append(("batch_id", "eq", batch_id))
        if status is not None:
            filters.append(("status", "eq", status.value))
        rows = db.paginated_select(ITEMS_TABLE, filters=filters, order_col="book_ref")
        return [BatchItem.model_validate(r) for r in rows]

    def set_item_status(self, batch_id: str, book_refs: list[str], status: ItemStatus) -> None:
        for ref in book_refs:
            db.update_rows(
                ITEMS_TABLE,
                {"status": status.value},
                {"batch_id": batch_id, "book_ref": ref},
            )
        logger.debug("Marked %d item(s) of batch %s as %s", len(book_refs), batch_id, status.value)
