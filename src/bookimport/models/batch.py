"""Models for import_batches and import_batch_items."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class BookSource(str, Enum):
    STANDARD_EBOOKS = "STANDARD_EBOOKS"
    GUTENBERG = "GUTENBERG"
    GUTENBERG_ZH = "GUTENBERG_ZH"
    CTEXT = "CTEXT"
    WIKISOURCE_ZH = "WIKISOURCE_ZH"
    SHUGE = "SHUGE"


class BatchStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    ROLLED_BACK = "ROLLED_BACK"


class ItemStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    ROLLED_BACK = "ROLLED_BACK"


class BookCounts(BaseModel):
    """Book-level outcome totals as last reported for a run."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed + self.skipped


class ImportBatch(BaseModel):
    id: str
    source: BookSource = BookSource.STANDARD_EBOOKS
    environment: str
    status: BatchStatus = BatchStatus.PENDING
    booklist_ref: str | None = None
    parent_batch_id: str | None = None
    total_books: int = 0
    processed_books: int = 0
    success_books: int = 0
    failed_books: int = 0
    skipped_books: int = 0
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_by: str | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _check_counters(self) -> ImportBatch:
        outcomes = self.success_books + self.failed_books + self.skipped_books
        if self.processed_books != outcomes:
            raise ValueError(
                f"processed_books={self.processed_books} != success+failed+skipped={outcomes}"
            )
        if self.processed_books > self.total_books:
            raise ValueError(
                f"processed_books={self.processed_books} exceeds total_books={self.total_books}"
            )
        return self

    @property
    def percent_complete(self) -> float:
        if self.total_books == 0:
            return 0.0
        return 100.0 * self.processed_books / self.total_books


class BatchItem(BaseModel):
    """One row of the item-level ledger: a single book's outcome in a batch."""

    batch_id: str
    book_ref: str
    title: str = ""
    author: str = ""
    status: ItemStatus
    duplicate: bool = False
    book_id: str | None = None
    stage: str | None = None
    error: str | None = None
    duration_ms: float | None = None
    finished_at: datetime | None = None


class BatchFilter(BaseModel):
    status: BatchStatus | None = None
    source: BookSource | None = None
    environment: str | None = None
    search: str | None = None


class BatchPage(BaseModel):
    items: list[ImportBatch] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    per_page: int = 20


class RecentBatches(BaseModel):
    today: int = 0
    this_week: int = 0
    this_month: int = 0


class BatchStats(BaseModel):
    total_batches: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    recent_batches: RecentBatches = Field(default_factory=RecentBatches)
    total_books_imported: int = 0
    total_books_failed: int = 0


class ActivitySummary(BaseModel):
    date: str
    imported: int = 0
    failed: int = 0
    skipped: int = 0


class Precheck(BaseModel):
    """Whether a resume / rollback may run, queryable before committing to it."""

    batch_id: str
    operation: str
    allowed: bool
    reason: str | None = None
    item_count: int = 0
    destructive: bool = False
    requires_confirmation: bool = False
