"""Tests for run submission, polling, cancellation and retry."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from bookimport.batches.registry import ImportBatchRegistry
from bookimport.batches.store import InMemoryStore
from bookimport.clock import ManualClock
from bookimport.errors import ExecutorUnreachable, InvalidTransition, NotFound
from bookimport.executors.router import ExecutorRouter
from bookimport.models.batch import BatchStatus, BookCounts, ItemStatus
from bookimport.models.run import (
    NODE_NAMES,
    CurrentItem,
    ExecutorKind,
    NodeProgress,
    NodeStatus,
    RunStatus,
)
from bookimport.pipeline.coordinator import PipelineRunCoordinator
from tests.fakes import FakeExecutor, book

T0 = datetime(2026, 3, 18, 9, 0, tzinfo=timezone.utc)


def _running_nodes(done: int, of: int) -> list[NodeProgress]:
    return [
        NodeProgress(name=NODE_NAMES[0], total=of, processed=of, status=NodeStatus.COMPLETED),
        NodeProgress(name=NODE_NAMES[1], total=of, processed=done, status=NodeStatus.RUNNING),
        NodeProgress(name=NODE_NAMES[2]),
        NodeProgress(name=NODE_NAMES[3]),
    ]


class TestSubmit:
    def test_local_submission(self, coordinator, local_exec, registry):
        run = coordinator.submit("local", "lists/a.json", created_by="ops")
        assert run.executor == ExecutorKind.LOCAL
        assert run.status == RunStatus.SUBMITTED
        assert run.run_id in local_exec.requests

        batch = registry.get(run.batch_id)
        assert batch.status == BatchStatus.RUNNING
        assert batch.environment == "local"
        assert batch.booklist_ref == "lists/a.json"

    @pytest.mark.parametrize("env", ["debugging", "staging", "production"])
    def test_non_local_goes_remote(self, coordinator, remote_exec, env):
        run = coordinator.submit(env)
        assert run.executor == ExecutorKind.REMOTE
        assert run.dispatch_target == f"target/{run.run_id}"
        assert remote_exec.requests[run.run_id].environment.value == env

    def test_unreachable_executor_leaves_no_records(self, coordinator, remote_exec, store):
        remote_exec.unreachable = True
        with pytest.raises(ExecutorUnreachable):
            coordinator.submit("staging")
        assert store.list_batches() == []


class TestPoll:
    def test_progress_is_applied(self, coordinator, local_exec, registry, clock):
        run = coordinator.submit("local")
        local_exec.report(
            run.run_id,
            status=RunStatus.RUNNING,
            stage="parse_normalize",
            nodes=_running_nodes(3, 10),
            books=BookCounts(total=10, succeeded=2, failed=1),
            elapsed_seconds=42.0,
            current_item=CurrentItem(title="Walden", author="Thoreau"),
            start_time=clock.now(),
        )
        snap = coordinator.poll(run.run_id)

        assert snap.status == RunStatus.RUNNING
        assert snap.stage == "parse_normalize"
        assert snap.percent_complete == 65.0
        assert snap.current_item.title == "Walden"
        batch = registry.get(run.batch_id)
        assert (batch.total_books, batch.processed_books, batch.failed_books) == (10, 3, 1)

    def test_late_submitted_does_not_revert(self, coordinator, local_exec):
        run = coordinator.submit("local")
        local_exec.report(run.run_id, status=RunStatus.RUNNING, elapsed_seconds=10)
        coordinator.poll(run.run_id)
        local_exec.report(run.run_id, status=RunStatus.SUBMITTED, elapsed_seconds=5)
        snap = coordinator.poll(run.run_id)
        assert snap.status == RunStatus.RUNNING
        assert snap.elapsed_seconds == 10

    def test_out_of_order_nodes_ignored(self, coordinator, local_exec):
        run = coordinator.submit("local")
        bad = _running_nodes(1, 4)
        bad[0] = NodeProgress(name=NODE_NAMES[0], total=4)
        local_exec.report(
            run.run_id, status=RunStatus.RUNNING, nodes=bad, books=BookCounts(total=4, succeeded=1)
        )
        snap = coordinator.poll(run.run_id)
        assert snap.percent_complete == 0.0
        assert snap.books.succeeded == 1

    def test_completion_writes_ledger_and_freezes(self, coordinator, local_exec, registry, store):
        run = coordinator.submit("local")
        outcomes = [book("a"), book("b"), book("c", "failed"), book("d", "duplicate")]
        local_exec.finish(run.run_id, outcomes)

        snap = coordinator.poll(run.run_id)
        assert snap.status == RunStatus.COMPLETED
        assert snap.percent_complete == 100.0

        batch = registry.get(run.batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert (batch.success_books, batch.failed_books, batch.skipped_books) == (2, 1, 1)

        items = {i.book_ref: i for i in store.list_items(run.batch_id)}
        assert items["a"].status == ItemStatus.SUCCESS
        assert items["c"].status == ItemStatus.FAILED
        assert items["d"].status == ItemStatus.SKIPPED and items["d"].duplicate

        # Later executor noise never changes a terminal run
        local_exec.report(run.run_id, status=RunStatus.RUNNING)
        assert coordinator.poll(run.run_id).status == RunStatus.COMPLETED

    def test_failed_run_fails_batch(self, coordinator, remote_exec, registry):
        run = coordinator.submit("staging")
        remote_exec.finish(run.run_id, [book("a"), book("b", "failed")], status=RunStatus.FAILED)
        snap = coordinator.poll(run.run_id)
        assert snap.status == RunStatus.FAILED
        assert snap.error
        assert registry.get(run.batch_id).status == BatchStatus.FAILED

    def test_unreachable_changes_nothing(self, coordinator, remote_exec):
        run = coordinator.submit("staging")
        remote_exec.unreachable = True
        with pytest.raises(ExecutorUnreachable):
            coordinator.poll(run.run_id)
        current = coordinator.get(run.run_id)
        assert current.status == RunStatus.SUBMITTED
        assert current.missed_polls == 0

    def test_unreachable_during_finalize_retries_next_poll(self, coordinator, remote_exec, registry):
        run = coordinator.submit("staging")
        remote_exec.finish(run.run_id, [book("a")])
        remote_exec.get_books = _raise_unreachable
        with pytest.raises(ExecutorUnreachable):
            coordinator.poll(run.run_id)
        assert registry.get(run.batch_id).status == BatchStatus.RUNNING

        del remote_exec.get_books
        assert coordinator.poll(run.run_id).status == RunStatus.COMPLETED

    def test_not_found_after_consecutive_misses(self, coordinator, remote_exec, registry):
        run = coordinator.submit("production")
        remote_exec.lose(run.run_id)
        for _ in range(2):
            assert coordinator.poll(run.run_id).status == RunStatus.SUBMITTED

        snap = coordinator.poll(run.run_id)
        assert snap.status == RunStatus.NOT_FOUND
        batch = registry.get(run.batch_id)
        assert batch.status == BatchStatus.FAILED
        assert run.run_id in batch.notes

    def test_successful_poll_resets_misses(self, coordinator, remote_exec):
        run = coordinator.submit("staging")
        remote_exec.lose(run.run_id)
        coordinator.poll(run.run_id)
        coordinator.poll(run.run_id)
        remote_exec.report(run.run_id, status=RunStatus.RUNNING)
        coordinator.poll(run.run_id)
        remote_exec.lose(run.run_id)
        assert coordinator.poll(run.run_id).status == RunStatus.RUNNING
        assert coordinator.get(run.run_id).missed_polls == 1

    def test_unknown_run(self, coordinator):
        with pytest.raises(NotFound):
            coordinator.poll("nope")

    def test_finished_run_elapsed_is_frozen(self, coordinator, local_exec):
        run = coordinator.submit("local")
        local_exec.finish(run.run_id, [book("a")], elapsed=120.0)
        done = coordinator.poll(run.run_id)

        local_exec.report(
            run.run_id,
            status=RunStatus.RUNNING,
            elapsed_seconds=999.0,
            books=BookCounts(total=5, succeeded=1),
        )
        snap = coordinator.poll(run.run_id)
        assert snap.status == RunStatus.COMPLETED
        assert snap.elapsed_seconds == 120.0
        assert snap == done


@settings(max_examples=40, deadline=None)
@given(
    done=st.integers(min_value=0, max_value=10),
    elapsed=st.floats(min_value=0, max_value=3600, allow_nan=False),
    status=st.sampled_from([RunStatus.RUNNING, RunStatus.COMPLETED, RunStatus.FAILED]),
)
def test_repeated_poll_changes_nothing(done, elapsed, status):
    local = FakeExecutor(ExecutorKind.LOCAL)
    registry = ImportBatchRegistry(InMemoryStore(), ManualClock(T0))
    coordinator = PipelineRunCoordinator(
        ExecutorRouter(local=local, remote=FakeExecutor(ExecutorKind.REMOTE)),
        registry,
        clock=registry.clock,
    )
    run = coordinator.submit("local")
    if status == RunStatus.RUNNING:
        local.report(
            run.run_id,
            status=status,
            nodes=_running_nodes(done, 10),
            books=BookCounts(total=10, succeeded=done),
            elapsed_seconds=elapsed,
        )
    else:
        local.finish(run.run_id, [book("a"), book("b", "failed")], status=status, elapsed=elapsed)

    first = coordinator.poll(run.run_id)
    batch = registry.get(run.batch_id)
    assert coordinator.poll(run.run_id) == first
    assert registry.get(run.batch_id) == batch


def _raise_unreachable(run_id):
    raise ExecutorUnreachable("remote", "timed out")


class TestCancel:
    def test_cancel_only_stops_tracking(self, coordinator, local_exec, registry):
        run = coordinator.submit("local")
        result = coordinator.cancel(run.run_id)

        assert result.run.status == RunStatus.CANCELLED
        assert result.executor_stopped is False
        assert "terminate" in result.warning
        assert local_exec.terminated == []
        assert registry.get(run.batch_id).status == BatchStatus.CANCELLED

    def test_terminate_signals_executor(self, coordinator, remote_exec):
        run = coordinator.submit("staging")
        result = coordinator.terminate(run.run_id)
        assert result.executor_stopped is True
        assert result.warning is None
        assert remote_exec.terminated == [run.run_id]

    def test_terminate_with_unreachable_executor(self, coordinator, remote_exec):
        run = coordinator.submit("staging")
        remote_exec.unreachable = True
        result = coordinator.terminate(run.run_id)
        assert result.run.status == RunStatus.CANCELLED
        assert result.executor_stopped is False
        assert "stop request failed" in result.warning

    def test_cannot_cancel_finished_run(self, coordinator, local_exec):
        run = coordinator.submit("local")
        local_exec.finish(run.run_id, [book("a")])
        coordinator.poll(run.run_id)
        with pytest.raises(InvalidTransition):
            coordinator.cancel(run.run_id)

    def test_executor_reported_cancel(self, coordinator, remote_exec, registry):
        run = coordinator.submit("staging")
        remote_exec.report(run.run_id, status=RunStatus.CANCELLED)
        assert coordinator.poll(run.run_id).status == RunStatus.CANCELLED
        assert registry.get(run.batch_id).status == BatchStatus.CANCELLED


class TestRetry:
    def test_retry_failed_run(self, coordinator, remote_exec, registry):
        run = coordinator.submit("staging", "lists/b.json")
        remote_exec.finish(run.run_id, [book("a", "failed")], status=RunStatus.FAILED)
        coordinator.poll(run.run_id)

        again = coordinator.retry(run.run_id)
        assert again.run_id != run.run_id
        assert again.batch_id != run.batch_id
        assert again.retry_of == run.run_id
        assert again.booklist_ref == "lists/b.json"
        assert registry.get(again.batch_id).status == BatchStatus.RUNNING

    def test_retry_running_rejected(self, coordinator):
        run = coordinator.submit("local")
        with pytest.raises(InvalidTransition):
            coordinator.retry(run.run_id)

    def test_retry_cancelled(self, coordinator):
        run = coordinator.submit("local")
        coordinator.cancel(run.run_id)
        assert coordinator.retry(run.run_id).status == RunStatus.SUBMITTED


class TestReport:
    def test_report_lists_failures(self, coordinator, local_exec):
        run = coordinator.submit("local")
        local_exec.finish(run.run_id, [book("a"), book("b", "failed", error="bad epub")])
        coordinator.poll(run.run_id)

        report = coordinator.report(run.run_id)
        assert report.status == RunStatus.COMPLETED
        assert report.duration_seconds == 120.0
        assert [f.book_ref for f in report.failures] == ["b"]
        assert report.failures[0].error == "bad epub"

    def test_finalize_hook(self, router, registry, local_exec):
        seen = []
        coordinator = PipelineRunCoordinator(router, registry, on_finalize=seen.append)
        run = coordinator.submit("local")
        local_exec.finish(run.run_id, [book("a")])
        coordinator.poll(run.run_id)
        assert [r.run_id for r in seen] == [run.run_id]

    def test_failing_hook_does_not_break_poll(self, router, registry, local_exec):
        def boom(report):
            raise RuntimeError("storage down")

        coordinator = PipelineRunCoordinator(router, registry, on_finalize=boom)
        run = coordinator.submit("local")
        local_exec.finish(run.run_id, [book("a")])
        assert coordinator.poll(run.run_id).status == RunStatus.COMPLETED


class TestManualBatchActions:
    def test_cancelled_batch_ignores_later_run_updates(self, service, remote_exec, registry):
        snap = service.submit_run("staging")
        assert service.cancel_batch(snap.batch_id).status == BatchStatus.CANCELLED

        remote_exec.report(snap.run_id, status=RunStatus.RUNNING, books=BookCounts(total=2, succeeded=1))
        assert service.poll_run(snap.run_id).status == RunStatus.RUNNING
        remote_exec.finish(snap.run_id, [book("a"), book("b")])
        assert service.poll_run(snap.run_id).status == RunStatus.COMPLETED

        batch = registry.get(snap.batch_id)
        assert batch.status == BatchStatus.CANCELLED
        assert batch.notes == "cancelled by operator"
        assert batch.processed_books == 0

    def test_complete_keeps_counters(self, service, local_exec, registry):
        snap = service.submit_run("local")
        local_exec.report(
            snap.run_id, status=RunStatus.RUNNING, books=BookCounts(total=10, succeeded=2, failed=1)
        )
        service.poll_run(snap.run_id)

        batch = service.complete_batch(snap.batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert (batch.processed_books, batch.failed_books) == (3, 1)

    def test_start_pending_batch(self, service, registry):
        batch = registry.create("staging")
        assert service.start_batch(batch.id).status == BatchStatus.RUNNING

    def test_finished_batch_cannot_be_closed_again(self, service, local_exec):
        snap = service.submit_run("local")
        local_exec.finish(snap.run_id, [book("a")])
        service.poll_run(snap.run_id)
        with pytest.raises(InvalidTransition):
            service.cancel_batch(snap.batch_id)
        with pytest.raises(InvalidTransition):
            service.complete_batch(snap.batch_id)


class TestRunBooks:
    def test_books_while_running(self, service, remote_exec):
        snap = service.submit_run("staging")
        remote_exec.report(snap.run_id, status=RunStatus.RUNNING)
        remote_exec.books[snap.run_id] = [book("a"), book("b", "failed")]

        outcomes = service.run_books(snap.run_id)
        assert [(o.book_ref, o.status) for o in outcomes] == [("a", "imported"), ("b", "failed")]
        assert service.poll_run(snap.run_id).status == RunStatus.RUNNING

    def test_nothing_reported_yet(self, service):
        snap = service.submit_run("local")
        assert service.run_books(snap.run_id) == []

    def test_unknown_run(self, service):
        with pytest.raises(NotFound):
            service.run_books("nope")
