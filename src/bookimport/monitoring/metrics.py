"""Rolling-window import metrics computed from ledger rows and batch state."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

import polars as pl

from bookimport.models.batch import BatchItem, BatchStatus, ImportBatch, ItemStatus
from bookimport.models.health import Metrics

logger = logging.getLogger(__name__)

# Rolled-back books were imported successfully at the time they finished
_SUCCESS_STATUSES = [ItemStatus.SUCCESS.value, ItemStatus.ROLLED_BACK.value]


def _items_frame(items: list[BatchItem]) -> pl.DataFrame:
    rows = [i for i in items if i.finished_at is not None]
    return pl.DataFrame(
        {
            "finished_at": [i.finished_at for i in rows],
            "status": [i.status.value for i in rows],
            "duplicate": [i.duplicate for i in rows],
            "duration_ms": [i.duration_ms for i in rows],
        },
        schema={
            "finished_at": pl.Datetime("us", "UTC"),
            "status": pl.Utf8,
            "duplicate": pl.Boolean,
            "duration_ms": pl.Float64,
        },
    )


def _pct(part: int, whole: int, empty: float) -> float:
    if whole == 0:
        return empty
    return round(100.0 * part / whole, 2)


class MetricsAggregator:
    def __init__(self, window_minutes: int = 60) -> None:
        if window_minutes < 1:
            raise ValueError(f"window_minutes must be >= 1, got {window_minutes}")
        self.window_minutes = window_minutes

    def compute(
        self,
        items: list[BatchItem],
        batches: list[ImportBatch],
        now: datetime,
    ) -> Metrics:
        df = _items_frame(items)
        window_start = now - timedelta(minutes=self.window_minutes)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

        window = df.filter(
            (pl.col("finished_at") >= window_start) & (pl.col("finished_at") <= now)
        )
        agg = window.select(
            pl.len().alias("processed"),
            pl.col("status").is_in(_SUCCESS_STATUSES).sum().alias("succeeded"),
            (pl.col("status") == ItemStatus.FAILED.value).sum().alias("failed"),
            pl.col("duplicate").sum().alias("duplicates"),
            pl.col("duration_ms").mean().alias("avg_ms"),
        ).row(0, named=True)

        today = df.filter(pl.col("finished_at") >= day_start).select(
            pl.col("status").is_in(_SUCCESS_STATUSES).sum().alias("imported"),
            (pl.col("status") == ItemStatus.FAILED.value).sum().alias("failed"),
        ).row(0, named=True)

        processed = agg["processed"]
        running = [b for b in batches if b.status == BatchStatus.RUNNING]
        current = max(running, key=lambda b: b.started_at or b.created_at, default=None)

        metrics = Metrics(
            books_per_minute=round(processed / self.window_minutes, 2),
            average_process_time=round(agg["avg_ms"] or 0.0, 2),
            success_rate=_pct(agg["succeeded"] or 0, processed, 100.0),
            duplicate_rate=_pct(agg["duplicates"] or 0, processed, 0.0),
            error_rate=_pct(agg["failed"] or 0, processed, 0.0),
            active_batches=len(running),
            pending_batches=sum(1 for b in batches if b.status == BatchStatus.PENDING),
            total_books_today=today["imported"] or 0,
            failed_books_today=today["failed"] or 0,
            current_batch_progress=round(current.percent_complete, 2) if current else 0.0,
        )
        logger.debug("Computed metrics over %d item(s): %s", processed, metrics)
        return metrics
