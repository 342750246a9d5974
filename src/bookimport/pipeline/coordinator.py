"""Pipeline run state machine: submit, poll, cancel, retry.

    submitted ──▶ running ──▶ completed | failed
        │            │
        ├────────────┴──▶ cancelled   (tracking stopped by the caller)
        └────────────┴──▶ not_found   (executor lost the run)

Polling is the only way progress arrives. Every mutating call on a run id
holds that run's lock, so racing polls apply one after the other: the
latest (stage, status) wins, but once a run is terminal later polls return
the frozen snapshot untouched.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from bookimport.batches.registry import ImportBatchRegistry, can_transition
from bookimport.clock import DEFAULT_CLOCK, Clock
from bookimport.errors import ExecutorUnreachable, InvalidTransition, NotFound
from bookimport.executors.router import ExecutorRouter
from bookimport.locks import KeyedLocks
from bookimport.models.batch import (
    BatchItem,
    BatchStatus,
    BookCounts,
    BookSource,
    ImportBatch,
    ItemStatus,
)
from bookimport.models.run import (
    BookOutcome,
    CancelResult,
    DispatchRequest,
    Environment,
    ExecutorKind,
    ExecutorStatus,
    PipelineRun,
    RunReport,
    RunSnapshot,
    RunStatus,
)
from bookimport.pipeline.progress import NodeProgressTracker, percent_complete

logger = logging.getLogger(__name__)

RETRYABLE: frozenset[RunStatus] = frozenset(
    {RunStatus.FAILED, RunStatus.NOT_FOUND, RunStatus.CANCELLED}
)

# Executor book status → ledger status
_OUTCOME_STATUS: dict[str, ItemStatus] = {
    "imported": ItemStatus.SUCCESS,
    "success": ItemStatus.SUCCESS,
    "failed": ItemStatus.FAILED,
    "skipped": ItemStatus.SKIPPED,
    "duplicate": ItemStatus.SKIPPED,
}


def outcome_to_item(batch_id: str, outcome: BookOutcome) -> BatchItem:
    status = _OUTCOME_STATUS.get(outcome.status.lower())
    if status is None:
        raise ValueError(f"Unknown book status {outcome.status!r} for {outcome.book_ref}")
    return BatchItem(
        batch_id=batch_id,
        book_ref=outcome.book_ref,
        title=outcome.title,
        author=outcome.author,
        status=status,
        duplicate=outcome.status.lower() == "duplicate",
        book_id=outcome.book_id,
        stage=outcome.stage,
        error=outcome.error,
        duration_ms=outcome.duration_ms,
        finished_at=outcome.finished_at,
    )


def snapshot_of(run: PipelineRun) -> RunSnapshot:
    return RunSnapshot(
        run_id=run.run_id,
        batch_id=run.batch_id,
        environment=run.environment,
        executor=run.executor,
        status=run.status,
        stage=run.stage,
        nodes=run.nodes,
        books=run.books,
        elapsed_seconds=run.elapsed_seconds,
        percent_complete=percent_complete(run.nodes),
        current_item=run.current_item,
        log_tail=run.log_tail,
        error=run.error,
    )


class PipelineRunCoordinator:
    def __init__(
        self,
        router: ExecutorRouter,
        registry: ImportBatchRegistry,
        tracker: NodeProgressTracker | None = None,
        clock: Clock = DEFAULT_CLOCK,
        missed_poll_limit: int = 3,
        on_finalize: Callable[[RunReport], None] | None = None,
    ) -> None:
        if missed_poll_limit < 1:
            raise ValueError(f"missed_poll_limit must be >= 1, got {missed_poll_limit}")
        self.router = router
        self.registry = registry
        self.store = registry.store
        self.tracker = tracker or NodeProgressTracker()
        self.clock = clock
        self.missed_poll_limit = missed_poll_limit
        self.on_finalize = on_finalize
        self._locks = KeyedLocks()

    # --- Submission ---

    def submit(
        self,
        environment: Environment | str,
        booklist_ref: str | None = None,
        source: BookSource = BookSource.STANDARD_EBOOKS,
        created_by: str | None = None,
        notes: str | None = None,
    ) -> PipelineRun:
        request = DispatchRequest(environment=Environment(environment), booklist_ref=booklist_ref)
        return self._launch(request, source=source, created_by=created_by, notes=notes)

    def submit_scoped(
        self,
        parent: ImportBatch,
        items: list[BatchItem],
        created_by: str | None = None,
    ) -> PipelineRun:
        """Run only the given items, in the parent batch's environment."""
        request = DispatchRequest(
            environment=Environment(parent.environment),
            booklist_ref=parent.booklist_ref,
            items=[i.book_ref for i in items],
        )
        return self._launch(
            request,
            source=parent.source,
            created_by=created_by or parent.created_by,
            notes=f"resume of batch {parent.id} ({len(items)} failed item(s))",
            parent_batch_id=parent.id,
        )

    def _launch(
        self,
        request: DispatchRequest,
        source: BookSource,
        created_by: str | None,
        notes: str | None,
        parent_batch_id: str | None = None,
        retry_of: str | None = None,
    ) -> PipelineRun:
        # Dispatch first: an unreachable executor must leave no records behind
        dispatch = self.router.dispatch(request)

        batch = self.registry.create(
            environment=request.environment.value,
            source=source,
            booklist_ref=request.booklist_ref,
            total_books=len(request.items),
            created_by=created_by,
            notes=notes,
            parent_batch_id=parent_batch_id,
        )
        run = PipelineRun(
            run_id=dispatch.run_id,
            batch_id=batch.id,
            environment=request.environment,
            executor=dispatch.executor,
            dispatch_target=dispatch.dispatch_target,
            log_reference=dispatch.log_reference,
            submitted_at=self.clock.now(),
            booklist_ref=request.booklist_ref,
            items=request.items,
            books=BookCounts(total=len(request.items)),
            resumed_from_batch_id=parent_batch_id,
            retry_of=retry_of,
        )
        self.store.insert_run(run)
        self.registry.start(batch.id)
        self.tracker.register(run.run_id)
        logger.info(
            "Submitted run %s → batch %s (env=%s, executor=%s)",
            run.run_id, batch.id, request.environment.value, dispatch.executor.value,
        )
        return run

    # --- Lookup ---

    def get(self, run_id: str) -> PipelineRun:
        run = self.store.get_run(run_id)
        if run is None:
            raise NotFound("run", run_id)
        return run

    def snapshot(self, run_id: str) -> RunSnapshot:
        return snapshot_of(self.get(run_id))

    def books(self, run_id: str) -> list[BookOutcome]:
        """Per-book outcomes the executor has reported so far."""
        run = self.get(run_id)
        return self.router.executor_for(run.executor).get_books(run_id)

    # --- Polling ---

    def poll(self, run_id: str) -> RunSnapshot:
        """Refresh a run from its executor and return the current snapshot.

        Raises ExecutorUnreachable without touching any state when the status
        call fails; the caller simply polls again later.
        """
        with self._locks.hold(run_id):
            run = self.get(run_id)
            if run.is_terminal:
                return snapshot_of(run)

            executor = self.router.executor_for(run.executor)
            status = executor.get_status(run.run_id)
            if status is None or status.status == RunStatus.NOT_FOUND:
                return snapshot_of(self._record_miss(run))
            return snapshot_of(self._apply_status(run, status))

    def _record_miss(self, run: PipelineRun) -> PipelineRun:
        missed = run.missed_polls + 1
        if missed < self.missed_poll_limit:
            logger.warning(
                "Run %s unknown to %s executor (%d/%d missed polls)",
                run.run_id, run.executor.value, missed, self.missed_poll_limit,
            )
            return self.store.update_run(run.run_id, {"missed_polls": missed})

        error = f"executor has no record of run after {missed} consecutive polls"
        logger.error("Run %s marked not_found: %s", run.run_id, error)
        run = self.store.update_run(
            run.run_id,
            {
                "missed_polls": missed,
                "status": RunStatus.NOT_FOUND,
                "finished_at": self.clock.now(),
                "current_item": None,
                "error": error,
            },
        )
        self._close_batch(run.batch_id, "fail", note=f"run {run.run_id} lost: {error}")
        self.tracker.forget(run.run_id)
        return run

    def _apply_status(self, run: PipelineRun, status: ExecutorStatus) -> PipelineRun:
        if not self.tracker.is_registered(run.run_id):
            self.tracker.register(run.run_id, run.nodes)
        try:
            nodes = self.tracker.apply_snapshot(run.run_id, status.nodes)
        except (InvalidTransition, ValueError) as e:
            logger.warning("Ignoring node progress for run %s: %s", run.run_id, e)
            nodes = run.nodes

        books = status.books
        if books.total == 0 and run.books.total > 0:
            # Executor has not sized the run yet; keep the known total
            books = books.model_copy(update={"total": run.books.total})

        # Executors may still say "submitted" after we have seen "running"
        new_status = run.status if status.status == RunStatus.SUBMITTED else status.status

        fields = {
            "status": new_status,
            "stage": status.stage,
            "nodes": nodes,
            "books": books,
            "elapsed_seconds": max(run.elapsed_seconds, status.elapsed_seconds),
            "current_item": status.current_item,
            "log_tail": status.log_tail,
            "error": status.error,
            "missed_polls": 0,
            "start_time": status.start_time or run.start_time,
        }

        if new_status in (RunStatus.COMPLETED, RunStatus.FAILED):
            return self._finalize(run, fields, books)
        if new_status == RunStatus.CANCELLED:
            fields.update(finished_at=self.clock.now(), current_item=None)
            run = self.store.update_run(run.run_id, fields)
            self._close_batch(run.batch_id, "cancel", note="cancelled by executor")
            self.tracker.forget(run.run_id)
            return run

        run = self.store.update_run(run.run_id, fields)
        if self.registry.get(run.batch_id).status == BatchStatus.RUNNING:
            self.registry.record_counts(run.batch_id, books)
        return run

    def _finalize(self, run: PipelineRun, fields: dict, books: BookCounts) -> PipelineRun:
        # Fetch item detail before any write so an unreachable executor leaves
        # the run untouched and the next poll finalizes it
        outcomes = self.router.executor_for(run.executor).get_books(run.run_id)
        items = [outcome_to_item(run.batch_id, o) for o in outcomes]
        if items:
            self.store.add_items(items)

        fields.update(finished_at=self.clock.now(), current_item=None)
        run = self.store.update_run(run.run_id, fields)

        if run.status == RunStatus.COMPLETED:
            self._close_batch(run.batch_id, "complete", counts=books)
        else:
            self._close_batch(run.batch_id, "fail", counts=books, note=run.error)
        self.tracker.forget(run.run_id)
        logger.info(
            "Run %s %s after %.0fs: %d imported, %d failed, %d skipped",
            run.run_id, run.status.value, run.elapsed_seconds,
            books.succeeded, books.failed, books.skipped,
        )

        if self.on_finalize is not None:
            try:
                self.on_finalize(self.report(run.run_id))
            except Exception:
                logger.exception("Report hook failed for run %s", run.run_id)
        return run

    def _close_batch(self, batch_id: str, action: str, **fields) -> None:
        batch = self.registry.get(batch_id)
        if not can_transition(batch.status, action):
            # Closed by hand while the run was still tracked
            logger.warning(
                "Batch %s is already %s; not applying %s", batch_id, batch.status.value, action
            )
            return
        getattr(self.registry, action)(batch_id, **fields)

    # --- Cancel / terminate / retry ---

    def cancel(self, run_id: str) -> CancelResult:
        """Stop tracking a run and cancel its batch.

        This does not stop the executor: a local process in particular keeps
        running. Use terminate() to also signal the executor.
        """
        with self._locks.hold(run_id):
            run = self.get(run_id)
            if run.status not in (RunStatus.SUBMITTED, RunStatus.RUNNING):
                raise InvalidTransition("run", run_id, run.status.value, "cancel")
            run = self.store.update_run(
                run_id,
                {"status": RunStatus.CANCELLED, "finished_at": self.clock.now(), "current_item": None},
            )
            self._close_batch(run.batch_id, "cancel", note="cancelled: tracking stopped")
            self.tracker.forget(run_id)

        if run.executor == ExecutorKind.LOCAL:
            warning = "Local process was not stopped; it may keep importing. Use terminate to signal it."
        else:
            warning = "Remote job was not asked to stop. Use terminate to request cancellation."
        logger.info("Cancelled run %s (executor not signalled)", run_id)
        return CancelResult(run=snapshot_of(run), executor_stopped=False, warning=warning)

    def terminate(self, run_id: str) -> CancelResult:
        """Cancel tracking and ask the executor to stop the process or job."""
        with self._locks.hold(run_id):
            result = self.cancel(run_id)
            run = self.get(run_id)
            try:
                stopped = self.router.executor_for(run.executor).terminate(run_id)
            except ExecutorUnreachable as e:
                return result.model_copy(
                    update={"warning": f"Run cancelled but stop request failed: {e}"}
                )
        warning = None if stopped else "Executor had nothing to stop (process already exited or unknown)."
        return result.model_copy(update={"executor_stopped": stopped, "warning": warning})

    def retry(self, run_id: str) -> PipelineRun:
        """Resubmit a failed, lost or cancelled run as a brand-new run and batch."""
        run = self.get(run_id)
        if run.status not in RETRYABLE:
            raise InvalidTransition("run", run_id, run.status.value, "retry")
        batch = self.registry.get(run.batch_id)
        request = DispatchRequest(
            environment=run.environment, booklist_ref=run.booklist_ref, items=run.items
        )
        return self._launch(
            request,
            source=batch.source,
            created_by=batch.created_by,
            notes=f"retry of run {run_id}",
            parent_batch_id=run.resumed_from_batch_id,
            retry_of=run_id,
        )

    # --- Reporting ---

    def report(self, run_id: str) -> RunReport:
        run = self.get(run_id)
        return RunReport(
            run_id=run.run_id,
            batch_id=run.batch_id,
            environment=run.environment,
            booklist_ref=run.booklist_ref,
            status=run.status,
            start_time=run.start_time,
            end_time=run.finished_at,
            duration_seconds=run.elapsed_seconds,
            books=run.books,
            failures=self.store.list_items(run.batch_id, ItemStatus.FAILED),
        )
