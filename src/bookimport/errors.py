"""Error taxonomy for run / batch tracking.

Guard violations (InvalidTransition, OperationInProgress) are raised at the
call boundary. ExecutorUnreachable is transient: callers retry at their next
poll interval. Partial rollbacks are reported as results, see
``bookimport.batches.rollback.PartialRollback``.
"""

from __future__ import annotations


class ImportCoreError(Exception):
    """Base class for all errors raised by the tracking core."""


class InvalidTransition(ImportCoreError):
    """An entity was asked to move along an edge its state graph does not have."""

    def __init__(self, entity: str, entity_id: str, current: str, action: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} {entity} {entity_id} in state {current}")


class OperationInProgress(ImportCoreError):
    """A resume or rollback is already running for the batch."""

    def __init__(self, batch_id: str, operation: str, active: str) -> None:
        self.batch_id = batch_id
        self.operation = operation
        self.active = active
        super().__init__(
            f"Cannot {operation} batch {batch_id}: {active} already in progress"
        )


class ItemDetailUnavailable(ImportCoreError):
    """The item ledger holds no per-book rows needed for the operation."""


class ResumeNotSupported(ItemDetailUnavailable):
    pass


class RollbackNotSupported(ItemDetailUnavailable):
    pass


class ExecutorUnreachable(ImportCoreError):
    """A dispatch or status call did not reach the executor."""

    def __init__(self, executor: str, detail: str) -> None:
        self.executor = executor
        self.detail = detail
        super().__init__(f"{executor} executor unreachable: {detail}")


class NotFound(ImportCoreError):
    """Unknown run or batch id."""

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")
