"""Import batch lifecycle: guarded transitions, counters and read-only aggregates.

Transition graph:

    PENDING ──start──▶ RUNNING ──complete──▶ COMPLETED ──rollback──▶ ROLLED_BACK
       │                  │                                 ▲
       ├──fail / cancel───┴──fail──▶ FAILED ───rollback─────┘
       └──────────────────┴─cancel─▶ CANCELLED

No edge leads back to PENDING. Counters are always written as a full
recomputation from the latest reported totals, never as increments.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

import polars as pl

from bookimport.batches.store import BatchStore
from bookimport.clock import DEFAULT_CLOCK, Clock
from bookimport.errors import InvalidTransition, NotFound
from bookimport.locks import KeyedLocks
from bookimport.models.batch import (
    ActivitySummary,
    BatchFilter,
    BatchPage,
    BatchStats,
    BatchStatus,
    BookCounts,
    BookSource,
    ImportBatch,
    ItemStatus,
    RecentBatches,
)

logger = logging.getLogger(__name__)

# action → (legal source states, target state)
TRANSITIONS: dict[str, tuple[frozenset[BatchStatus], BatchStatus]] = {
    "start": (frozenset({BatchStatus.PENDING}), BatchStatus.RUNNING),
    "complete": (frozenset({BatchStatus.RUNNING}), BatchStatus.COMPLETED),
    "fail": (frozenset({BatchStatus.PENDING, BatchStatus.RUNNING}), BatchStatus.FAILED),
    "cancel": (frozenset({BatchStatus.PENDING, BatchStatus.RUNNING}), BatchStatus.CANCELLED),
    "rollback": (frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED}), BatchStatus.ROLLED_BACK),
}


def can_transition(status: BatchStatus, action: str) -> bool:
    sources, _ = TRANSITIONS[action]
    return status in sources


def counts_to_fields(counts: BookCounts) -> dict[str, int]:
    """Map reported book totals onto batch counter columns."""
    processed = counts.processed
    total = counts.total
    if processed > total:
        logger.warning(
            "Reported processed=%d exceeds total=%d; widening total", processed, total
        )
        total = processed
    return {
        "total_books": total,
        "processed_books": processed,
        "success_books": counts.succeeded,
        "failed_books": counts.failed,
        "skipped_books": counts.skipped,
    }


class ImportBatchRegistry:
    def __init__(
        self,
        store: BatchStore,
        clock: Clock = DEFAULT_CLOCK,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self._locks = locks or KeyedLocks()

    # --- Creation / lookup ---

    def create(
        self,
        environment: str,
        source: BookSource = BookSource.STANDARD_EBOOKS,
        booklist_ref: str | None = None,
        total_books: int = 0,
        created_by: str | None = None,
        notes: str | None = None,
        parent_batch_id: str | None = None,
    ) -> ImportBatch:
        batch = ImportBatch(
            id=str(uuid.uuid4()),
            source=source,
            environment=environment,
            booklist_ref=booklist_ref,
            parent_batch_id=parent_batch_id,
            total_books=total_books,
            created_at=self.clock.now(),
            created_by=created_by,
            notes=notes,
        )
        self.store.insert_batch(batch)
        logger.info("Created batch %s (env=%s, source=%s)", batch.id, environment, source.value)
        return batch

    def get(self, batch_id: str) -> ImportBatch:
        batch = self.store.get_batch(batch_id)
        if batch is None:
            raise NotFound("batch", batch_id)
        return batch

    # --- Guarded transitions ---

    def _transition(self, batch_id: str, action: str, **fields) -> ImportBatch:
        with self._locks.hold(batch_id):
            batch = self.get(batch_id)
            sources, target = TRANSITIONS[action]
            if batch.status not in sources:
                raise InvalidTransition("batch", batch_id, batch.status.value, action)
            updated = self.store.update_batch(batch_id, {"status": target, **fields})
        logger.info("Batch %s: %s → %s", batch_id, batch.status.value, target.value)
        return updated

    def start(self, batch_id: str) -> ImportBatch:
        return self._transition(batch_id, "start", started_at=self.clock.now())

    def complete(self, batch_id: str, counts: BookCounts | None = None) -> ImportBatch:
        fields = counts_to_fields(counts) if counts is not None else {}
        return self._transition(batch_id, "complete", completed_at=self.clock.now(), **fields)

    def fail(
        self,
        batch_id: str,
        counts: BookCounts | None = None,
        note: str | None = None,
    ) -> ImportBatch:
        fields: dict = counts_to_fields(counts) if counts is not None else {}
        if note:
            fields["notes"] = note
        return self._transition(batch_id, "fail", completed_at=self.clock.now(), **fields)

    def cancel(self, batch_id: str, note: str | None = None) -> ImportBatch:
        fields: dict = {"completed_at": self.clock.now()}
        if note:
            fields["notes"] = note
        return self._transition(batch_id, "cancel", **fields)

    def rollback(self, batch_id: str) -> ImportBatch:
        return self._transition(batch_id, "rollback")

    def record_counts(self, batch_id: str, counts: BookCounts) -> ImportBatch:
        """Overwrite a running batch's counters with the latest reported totals."""
        with self._locks.hold(batch_id):
            batch = self.get(batch_id)
            if batch.status != BatchStatus.RUNNING:
                raise InvalidTransition("batch", batch_id, batch.status.value, "record progress on")
            return self.store.update_batch(batch_id, counts_to_fields(counts))

    # --- Read-only views ---

    def list_batches(
        self,
        filter: BatchFilter | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> BatchPage:
        """Filtered, newest-first page of batches."""
        f = filter or BatchFilter()
        batches = self.store.list_batches()
        if f.status is not None:
            batches = [b for b in batches if b.status == f.status]
        if f.source is not None:
            batches = [b for b in batches if b.source == f.source]
        if f.environment is not None:
            batches = [b for b in batches if b.environment == f.environment]
        if f.search:
            needle = f.search.lower()
            batches = [
                b for b in batches
                if any(
                    needle in (v or "").lower()
                    for v in (b.id, b.notes, b.booklist_ref, b.created_by)
                )
            ]
        batches.sort(key=lambda b: b.started_at or b.created_at, reverse=True)

        page = max(page, 1)
        start = (page - 1) * per_page
        return BatchPage(
            items=batches[start:start + per_page],
            total=len(batches),
            page=page,
            per_page=per_page,
        )

    def stats(self, now: datetime | None = None) -> BatchStats:
        """Aggregate counts over the current batch set.

        Reads a point-in-time copy of the store, so concurrent writers may make
        the figures slightly stale but never inconsistent within one call.
        """
        now = now or self.clock.now()
        batches = self.store.list_batches()
        if not batches:
            return BatchStats()

        df = pl.DataFrame(
            {
                "status": [b.status.value for b in batches],
                "created_at": [b.created_at for b in batches],
                "success_books": [b.success_books for b in batches],
                "failed_books": [b.failed_books for b in batches],
            }
        )

        by_status = {
            row["status"]: row["len"]
            for row in df.group_by("status").len().iter_rows(named=True)
        }

        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = day_start - timedelta(days=day_start.weekday())
        month_start = day_start.replace(day=1)
        created = pl.col("created_at")

        recent = df.select(
            (created >= day_start).sum().alias("today"),
            (created >= week_start).sum().alias("this_week"),
            (created >= month_start).sum().alias("this_month"),
        ).row(0, named=True)

        imported = df.filter(pl.col("status") != BatchStatus.ROLLED_BACK.value)["success_books"].sum()

        return BatchStats(
            total_batches=len(df),
            by_status=by_status,
            recent_batches=RecentBatches(**recent),
            total_books_imported=int(imported or 0),
            total_books_failed=int(df["failed_books"].sum()),
        )

    def activity(self, days: int = 7, now: datetime | None = None) -> list[ActivitySummary]:
        """Per-day imported / failed / skipped book counts, newest day first."""
        now = now or self.clock.now()
        first_day = (now - timedelta(days=days - 1)).date()
        dates = [first_day + timedelta(days=i) for i in range(days)]
        summary = {d: ActivitySummary(date=d.isoformat()) for d in dates}

        items = [
            i for i in self.store.list_items()
            if i.finished_at is not None and i.finished_at.date() >= first_day
        ]
        if items:
            df = pl.DataFrame(
                {
                    "day": [i.finished_at.date() for i in items],
                    "status": [i.status.value for i in items],
                }
            )
            per_day = df.group_by("day").agg(
                (pl.col("status") == ItemStatus.SUCCESS.value).sum().alias("imported"),
                (pl.col("status") == ItemStatus.FAILED.value).sum().alias("failed"),
                (pl.col("status") == ItemStatus.SKIPPED.value).sum().alias("skipped"),
            )
            for row in per_day.iter_rows(named=True):
                if row["day"] in summary:
                    summary[row["day"]] = ActivitySummary(
                        date=row["day"].isoformat(),
                        imported=row["imported"],
                        failed=row["failed"],
                        skipped=row["skipped"],
                    )

        return [summary[d] for d in reversed(dates)]
