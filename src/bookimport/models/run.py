"""Models for pipeline_runs, node progress and executor status payloads."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from bookimport.models.batch import BatchItem, BookCounts

# Four sequential pipeline nodes, indexed 1..4
NODE_NAMES: tuple[str, ...] = ("delta_detection", "parse_normalize", "persist", "classify")


class Environment(str, Enum):
    LOCAL = "local"
    DEBUGGING = "debugging"
    STAGING = "staging"
    PRODUCTION = "production"


# Environments where destructive actions need an explicit upstream confirmation
CONFIRMATION_REQUIRED: frozenset[Environment] = frozenset({Environment.PRODUCTION})


def environment_requires_confirmation(environment: Environment | str) -> bool:
    return Environment(environment) in CONFIRMATION_REQUIRED


class ExecutorKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class RunStatus(str, Enum):
    SUBMITTED = "submitted"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.NOT_FOUND, RunStatus.CANCELLED}
)


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class NodeProgress(BaseModel):
    name: str
    total: int = 0
    processed: int = 0
    status: NodeStatus = NodeStatus.PENDING


def initial_nodes() -> list[NodeProgress]:
    return [NodeProgress(name=name) for name in NODE_NAMES]


class CurrentItem(BaseModel):
    title: str
    author: str = ""


class PipelineRun(BaseModel):
    run_id: str
    batch_id: str
    environment: Environment
    executor: ExecutorKind
    dispatch_target: str  # remote job id or local log file path
    status: RunStatus = RunStatus.SUBMITTED
    stage: str | None = None
    nodes: list[NodeProgress] = Field(default_factory=initial_nodes)
    books: BookCounts = Field(default_factory=BookCounts)
    submitted_at: datetime
    start_time: datetime | None = None
    finished_at: datetime | None = None
    elapsed_seconds: float = 0.0
    current_item: CurrentItem | None = None
    log_reference: str | None = None
    log_tail: str | None = None
    error: str | None = None
    booklist_ref: str | None = None
    items: list[str] = Field(default_factory=list)  # scoped book refs (resume)
    resumed_from_batch_id: str | None = None
    retry_of: str | None = None
    missed_polls: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


# --- Executor boundary ---


class DispatchRequest(BaseModel):
    environment: Environment
    booklist_ref: str | None = None
    items: list[str] = Field(default_factory=list)


class Dispatch(BaseModel):
    """Executor acknowledgement of a dispatched run."""

    run_id: str
    executor: ExecutorKind
    dispatch_target: str
    log_reference: str | None = None


class ExecutorStatus(BaseModel):
    """What an executor reports for a run it knows about."""

    status: RunStatus = RunStatus.RUNNING
    stage: str | None = None
    nodes: list[NodeProgress] = Field(default_factory=initial_nodes)
    books: BookCounts = Field(default_factory=BookCounts)
    start_time: datetime | None = None
    elapsed_seconds: float = 0.0
    current_item: CurrentItem | None = None
    log_tail: str | None = None
    error: str | None = None


class BookOutcome(BaseModel):
    """Per-book result reported by the executor as the run progresses."""

    book_ref: str
    title: str = ""
    author: str = ""
    status: str  # imported | failed | skipped | duplicate
    book_id: str | None = None
    stage: str | None = None
    error: str | None = None
    duration_ms: float | None = None
    finished_at: datetime | None = None


# --- Caller-facing views ---


class RunSnapshot(BaseModel):
    run_id: str
    batch_id: str
    environment: Environment
    executor: ExecutorKind
    status: RunStatus
    stage: str | None = None
    nodes: list[NodeProgress]
    books: BookCounts
    elapsed_seconds: float
    percent_complete: float
    current_item: CurrentItem | None = None
    log_tail: str | None = None
    error: str | None = None


class CancelResult(BaseModel):
    run: RunSnapshot
    executor_stopped: bool
    warning: str | None = None


class RunReport(BaseModel):
    run_id: str
    batch_id: str
    environment: Environment
    booklist_ref: str | None = None
    status: RunStatus
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_seconds: float
    books: BookCounts
    failures: list[BatchItem] = Field(default_factory=list)
