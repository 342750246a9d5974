"""Re-run only the failed books of a finished batch."""

from __future__ import annotations

import logging

from bookimport.batches.registry import ImportBatchRegistry
from bookimport.errors import InvalidTransition, OperationInProgress, ResumeNotSupported
from bookimport.locks import OperationGuard
from bookimport.models.batch import BatchStatus, ImportBatch, ItemStatus, Precheck
from bookimport.models.run import PipelineRun, environment_requires_confirmation
from bookimport.pipeline.coordinator import PipelineRunCoordinator

logger = logging.getLogger(__name__)

RESUMABLE: frozenset[BatchStatus] = frozenset({BatchStatus.FAILED, BatchStatus.COMPLETED})
OPEN: frozenset[BatchStatus] = frozenset({BatchStatus.PENDING, BatchStatus.RUNNING})


class ResumeEngine:
    def __init__(
        self,
        registry: ImportBatchRegistry,
        coordinator: PipelineRunCoordinator,
        guard: OperationGuard,
    ) -> None:
        self.registry = registry
        self.coordinator = coordinator
        self.guard = guard

    def check(self, batch_id: str) -> Precheck:
        batch = self.registry.get(batch_id)
        base = dict(
            batch_id=batch_id,
            operation="resume",
            requires_confirmation=environment_requires_confirmation(batch.environment),
        )
        if batch.status not in RESUMABLE:
            return Precheck(allowed=False, reason=f"batch is {batch.status.value}", **base)
        if batch.failed_books == 0:
            return Precheck(allowed=False, reason="batch has no failed books", **base)
        active = self.guard.active(batch_id)
        if active:
            return Precheck(allowed=False, reason=f"{active} in progress", **base)
        child = self.open_child(batch_id)
        if child is not None:
            return Precheck(
                allowed=False, reason=f"resume batch {child.id} is {child.status.value}", **base
            )
        failed = self.registry.store.list_items(batch_id, ItemStatus.FAILED)
        if not failed:
            return Precheck(allowed=False, reason="no per-item detail for failed books", **base)
        return Precheck(allowed=True, item_count=len(failed), **base)

    def open_child(self, batch_id: str) -> ImportBatch | None:
        """A still-running batch started by an earlier resume of this one."""
        for b in self.registry.store.list_batches():
            if b.parent_batch_id == batch_id and b.status in OPEN:
                return b
        return None

    def resume(self, batch_id: str, created_by: str | None = None) -> PipelineRun:
        """Dispatch a new run scoped to exactly the batch's failed books.

        The run goes to the same environment as the original batch and its
        batch records the original as ``parent_batch_id``.
        """
        with self.guard.hold(batch_id, "resume"):
            batch = self.registry.get(batch_id)
            if batch.status not in RESUMABLE:
                raise InvalidTransition("batch", batch_id, batch.status.value, "resume")
            if batch.failed_books == 0:
                raise InvalidTransition("batch", batch_id, batch.status.value, "resume (no failed books)")
            child = self.open_child(batch_id)
            if child is not None:
                raise OperationInProgress(batch_id, "resume", f"resume batch {child.id}")

            failed = self.registry.store.list_items(batch_id, ItemStatus.FAILED)
            if not failed:
                raise ResumeNotSupported(
                    f"Batch {batch_id} reports {batch.failed_books} failed book(s) "
                    "but the item ledger has no per-book detail"
                )
            if len(failed) != batch.failed_books:
                logger.warning(
                    "Batch %s: ledger has %d failed item(s), counters say %d; resuming ledger items",
                    batch_id, len(failed), batch.failed_books,
                )

            run = self.coordinator.submit_scoped(batch, failed, created_by=created_by)
        logger.info("Resumed batch %s as run %s (%d item(s))", batch_id, run.run_id, len(failed))
        return run
