"""Caller-facing facade over runs, batches and health.

Everything the CLI (or any other front end) needs goes through
``ImportService``; ``build_service`` wires the Supabase-backed collaborators
from settings.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from bookimport.batches.registry import ImportBatchRegistry
from bookimport.batches.resume import ResumeEngine
from bookimport.batches.rollback import (
    CatalogReverser,
    RollbackEngine,
    RollbackResult,
    SupabaseCatalogReverser,
)
from bookimport.batches.store import BatchStore, SupabaseStore
from bookimport.clock import DEFAULT_CLOCK, Clock
from bookimport.config import Settings, get_settings
from bookimport.executors.local import LocalExecutor
from bookimport.executors.remote import RemoteExecutor
from bookimport.executors.router import ExecutorRouter
from bookimport.locks import KeyedLocks, OperationGuard
from bookimport.models.batch import (
    ActivitySummary,
    BatchFilter,
    BatchPage,
    BatchStats,
    BookSource,
    ImportBatch,
    Precheck,
)
from bookimport.models.health import HealthReport
from bookimport.models.run import BookOutcome, CancelResult, Environment, RunReport, RunSnapshot
from bookimport.monitoring.health import HealthMonitor
from bookimport.monitoring.metrics import MetricsAggregator
from bookimport.monitoring.rules import AlertRuleEngine, default_rules
from bookimport.pipeline.coordinator import PipelineRunCoordinator, snapshot_of
from bookimport.pipeline.progress import NodeProgressTracker

logger = logging.getLogger(__name__)


class ImportService:
    def __init__(
        self,
        store: BatchStore,
        router: ExecutorRouter,
        reverser: CatalogReverser,
        clock: Clock = DEFAULT_CLOCK,
        settings: Settings | None = None,
        on_finalize: Callable[[RunReport], None] | None = None,
    ) -> None:
        s = settings or get_settings()
        self.clock = clock
        self.store = store
        self.registry = ImportBatchRegistry(store, clock, KeyedLocks())
        self.coordinator = PipelineRunCoordinator(
            router,
            self.registry,
            NodeProgressTracker(),
            clock=clock,
            missed_poll_limit=s.missed_poll_limit,
            on_finalize=on_finalize,
        )
        guard = OperationGuard()
        self.resumer = ResumeEngine(self.registry, self.coordinator, guard)
        self.rollbacker = RollbackEngine(self.registry, reverser, guard)
        self.monitor = HealthMonitor(
            MetricsAggregator(s.metrics_window_minutes),
            AlertRuleEngine(default_rules(s)),
        )

    # --- Runs ---

    def submit_run(
        self,
        environment: Environment | str,
        booklist_ref: str | None = None,
        source: BookSource = BookSource.STANDARD_EBOOKS,
        created_by: str | None = None,
        notes: str | None = None,
    ) -> RunSnapshot:
        run = self.coordinator.submit(
            environment, booklist_ref, source=source, created_by=created_by, notes=notes
        )
        return snapshot_of(run)

    def poll_run(self, run_id: str) -> RunSnapshot:
        return self.coordinator.poll(run_id)

    def snapshot_run(self, run_id: str) -> RunSnapshot:
        """Last stored state of a run, without asking its executor."""
        return self.coordinator.snapshot(run_id)

    def cancel_run(self, run_id: str) -> CancelResult:
        return self.coordinator.cancel(run_id)

    def terminate_run(self, run_id: str) -> CancelResult:
        return self.coordinator.terminate(run_id)

    def retry_run(self, run_id: str) -> RunSnapshot:
        return snapshot_of(self.coordinator.retry(run_id))

    def run_report(self, run_id: str) -> RunReport:
        return self.coordinator.report(run_id)

    def run_books(self, run_id: str) -> list[BookOutcome]:
        """Per-book outcomes so far; empty until the executor reports any."""
        return self.coordinator.books(run_id)

    # --- Batches ---

    def get_batch(self, batch_id: str) -> ImportBatch:
        return self.registry.get(batch_id)

    def start_batch(self, batch_id: str) -> ImportBatch:
        return self.registry.start(batch_id)

    def complete_batch(self, batch_id: str) -> ImportBatch:
        """Close a batch by hand, keeping its counters as they are.

        Meant for batches whose run record is gone. A run that is still
        tracked keeps polling but no longer changes the batch.
        """
        return self.registry.complete(batch_id)

    def cancel_batch(self, batch_id: str, note: str | None = None) -> ImportBatch:
        return self.registry.cancel(batch_id, note=note or "cancelled by operator")

    def check_resume(self, batch_id: str) -> Precheck:
        return self.resumer.check(batch_id)

    def resume_batch(self, batch_id: str, created_by: str | None = None) -> RunSnapshot:
        return snapshot_of(self.resumer.resume(batch_id, created_by=created_by))

    def check_rollback(self, batch_id: str) -> Precheck:
        return self.rollbacker.check(batch_id)

    def rollback_batch(self, batch_id: str) -> RollbackResult:
        return self.rollbacker.rollback(batch_id)

    def list_batches(
        self,
        filter: BatchFilter | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> BatchPage:
        return self.registry.list_batches(filter, page, per_page)

    def batch_stats(self) -> BatchStats:
        return self.registry.stats(self.clock.now())

    def activity(self, days: int = 7) -> list[ActivitySummary]:
        return self.registry.activity(days, self.clock.now())

    # --- Health ---

    def health(self) -> HealthReport:
        return self.monitor.check(
            self.store.list_items(), self.store.list_batches(), self.clock.now()
        )


def build_service(settings: Settings | None = None) -> ImportService:
    """Wire a service against Supabase and the configured executors."""
    s = settings or get_settings()
    router = ExecutorRouter(
        local=LocalExecutor(s.local_run_dir, s.local_pipeline_command, s.log_tail_lines),
        remote=RemoteExecutor(s.remote_worker_url, s.remote_worker_token, s.remote_timeout_s),
    )
    on_finalize = None
    if s.archive_reports:
        from bookimport.storage import archive_run_report

        on_finalize = archive_run_report
    logger.debug("Building import service (env=%s)", s.app_env)
    return ImportService(
        SupabaseStore(),
        router,
        SupabaseCatalogReverser(),
        settings=s,
        on_finalize=on_finalize,
    )
