"""Tests for the import batch registry: transitions, counters and aggregates."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from bookimport.batches.registry import TRANSITIONS, ImportBatchRegistry
from bookimport.batches.store import InMemoryStore
from bookimport.clock import ManualClock
from bookimport.errors import InvalidTransition, NotFound
from bookimport.models.batch import (
    BatchFilter,
    BatchItem,
    BatchStatus,
    BookCounts,
    BookSource,
    ItemStatus,
)


def _running(registry: ImportBatchRegistry, **kw):
    batch = registry.create("staging", **kw)
    return registry.start(batch.id)


class TestTransitions:
    def test_create_starts_pending(self, registry):
        batch = registry.create("local", total_books=10, created_by="ops")
        assert batch.status == BatchStatus.PENDING
        assert registry.get(batch.id).total_books == 10

    def test_start_then_complete(self, registry, clock):
        batch = _running(registry)
        assert batch.status == BatchStatus.RUNNING
        assert batch.started_at == clock.now()

        clock.advance(minutes=5)
        done = registry.complete(batch.id, BookCounts(total=3, succeeded=2, failed=1))
        assert done.status == BatchStatus.COMPLETED
        assert done.completed_at == clock.now()
        assert (done.processed_books, done.success_books, done.failed_books) == (3, 2, 1)

    def test_complete_from_pending_rejected(self, registry):
        batch = registry.create("local")
        with pytest.raises(InvalidTransition):
            registry.complete(batch.id)
        assert registry.get(batch.id).status == BatchStatus.PENDING

    @pytest.mark.parametrize("action", ["start", "complete", "fail", "cancel"])
    def test_rolled_back_is_final_for_lifecycle_actions(self, registry, action):
        batch = _running(registry)
        registry.complete(batch.id, BookCounts(total=1, succeeded=1))
        registry.rollback(batch.id)
        with pytest.raises(InvalidTransition):
            getattr(registry, action)(batch.id)

    def test_cancelled_batch_cannot_be_rolled_back(self, registry):
        batch = _running(registry)
        registry.cancel(batch.id, note="operator stop")
        with pytest.raises(InvalidTransition):
            registry.rollback(batch.id)
        assert registry.get(batch.id).notes == "operator stop"

    def test_unknown_batch(self, registry):
        with pytest.raises(NotFound):
            registry.start("missing")


class TestCounters:
    def test_record_counts_overwrites(self, registry):
        batch = _running(registry)
        registry.record_counts(batch.id, BookCounts(total=10, succeeded=2, failed=1))
        updated = registry.record_counts(batch.id, BookCounts(total=10, succeeded=4, failed=1))
        assert updated.success_books == 4
        assert updated.processed_books == 5

    def test_record_counts_widens_total(self, registry):
        batch = _running(registry)
        updated = registry.record_counts(batch.id, BookCounts(total=0, succeeded=3, skipped=1))
        assert updated.total_books == 4
        assert updated.processed_books == 4

    def test_record_counts_requires_running(self, registry):
        batch = _running(registry)
        registry.complete(batch.id, BookCounts(total=1, succeeded=1))
        with pytest.raises(InvalidTransition):
            registry.record_counts(batch.id, BookCounts(total=1, succeeded=1))


@settings(max_examples=50, deadline=None)
@given(st.lists(st.sampled_from(sorted(TRANSITIONS)), max_size=8))
def test_no_path_returns_to_pending(actions):
    registry = ImportBatchRegistry(InMemoryStore(), ManualClock())
    batch = registry.create("local")
    registry.start(batch.id)
    for action in actions:
        try:
            getattr(registry, action)(batch.id)
        except InvalidTransition:
            pass
        current = registry.get(batch.id)
        assert current.status != BatchStatus.PENDING
        assert current.processed_books == (
            current.success_books + current.failed_books + current.skipped_books
        )


class TestListing:
    def test_filters_search_and_newest_first(self, registry, clock):
        a = registry.create("staging", booklist_ref="lists/poetry.json", source=BookSource.GUTENBERG)
        clock.advance(minutes=1)
        b = registry.create("production", notes="weekly classics", created_by="lin")
        clock.advance(minutes=1)
        c = registry.create("staging", source=BookSource.CTEXT)
        registry.start(c.id)

        page = registry.list_batches()
        assert [x.id for x in page.items] == [c.id, b.id, a.id]
        assert page.total == 3

        assert [x.id for x in registry.list_batches(BatchFilter(environment="staging")).items] == [c.id, a.id]
        assert [x.id for x in registry.list_batches(BatchFilter(status=BatchStatus.RUNNING)).items] == [c.id]
        assert [x.id for x in registry.list_batches(BatchFilter(source=BookSource.GUTENBERG)).items] == [a.id]
        assert [x.id for x in registry.list_batches(BatchFilter(search="POETRY")).items] == [a.id]
        assert [x.id for x in registry.list_batches(BatchFilter(search="lin")).items] == [b.id]

    def test_pagination(self, registry, clock):
        ids = []
        for _ in range(5):
            ids.append(registry.create("local").id)
            clock.advance(seconds=1)
        page = registry.list_batches(page=2, per_page=2)
        assert [b.id for b in page.items] == list(reversed(ids))[2:4]
        assert page.total == 5


class TestAggregates:
    def test_stats_windows_and_rollback_exclusion(self):
        clock = ManualClock(datetime(2026, 2, 20, 10, tzinfo=timezone.utc))
        registry = ImportBatchRegistry(InMemoryStore(), clock)

        old = _running(registry)
        registry.complete(old.id, BookCounts(total=5, succeeded=5))
        clock.advance(days=18)  # 2026-03-10
        month = _running(registry)
        registry.complete(month.id, BookCounts(total=4, succeeded=3, failed=1))
        registry.rollback(month.id)
        clock.advance(days=7)  # 2026-03-17, a Tuesday
        week = _running(registry)
        registry.fail(week.id, BookCounts(total=2, failed=2))
        clock.advance(hours=23)  # 2026-03-18 09:00
        registry.create("local")

        stats = registry.stats(now=datetime(2026, 3, 18, 12, tzinfo=timezone.utc))
        assert stats.total_batches == 4
        assert stats.by_status == {"COMPLETED": 1, "ROLLED_BACK": 1, "FAILED": 1, "PENDING": 1}
        assert stats.recent_batches.today == 1
        assert stats.recent_batches.this_week == 2
        assert stats.recent_batches.this_month == 3
        assert stats.total_books_imported == 5
        assert stats.total_books_failed == 3

    def test_stats_empty(self, registry):
        assert registry.stats().total_batches == 0

    def test_activity_zero_fills_newest_first(self, registry, store, clock):
        batch = _running(registry)
        now = clock.now()
        yesterday = now.replace(day=now.day - 1)
        store.add_items([
            BatchItem(batch_id=batch.id, book_ref="a", status=ItemStatus.SUCCESS, finished_at=now),
            BatchItem(batch_id=batch.id, book_ref="b", status=ItemStatus.FAILED, finished_at=now),
            BatchItem(batch_id=batch.id, book_ref="c", status=ItemStatus.SKIPPED, finished_at=yesterday),
        ])
        days = registry.activity(days=3, now=now)
        assert [d.date for d in days] == ["2026-03-18", "2026-03-17", "2026-03-16"]
        assert (days[0].imported, days[0].failed, days[0].skipped) == (1, 1, 0)
        assert days[1].skipped == 1
        assert (days[2].imported, days[2].failed, days[2].skipped) == (0, 0, 0)
