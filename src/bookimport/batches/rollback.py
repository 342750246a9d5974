"""Reverse a batch's imported books and mark it ROLLED_BACK.

Rollback is destructive and itemized. Each successfully imported book is
reversed on its own; books that fail to reverse are reported back and the
batch keeps its status until a later attempt reverses the rest.
"""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import BaseModel, Field

from bookimport import db
from bookimport.batches.registry import ImportBatchRegistry
from bookimport.errors import InvalidTransition, RollbackNotSupported
from bookimport.locks import OperationGuard
from bookimport.models.batch import BatchItem, BatchStatus, ItemStatus, Precheck
from bookimport.models.run import environment_requires_confirmation

logger = logging.getLogger(__name__)

ROLLBACKABLE: frozenset[BatchStatus] = frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED})


class CatalogReverser(Protocol):
    def reverse(self, item: BatchItem) -> None:
        """Remove or unpublish one imported book. Raises on failure."""
        ...


class SupabaseCatalogReverser:
    """Unpublishes imported rows in the catalog ``books`` table."""

    def __init__(self, table: str = "books") -> None:
        self.table = table

    def reverse(self, item: BatchItem) -> None:
        if not item.book_id:
            raise ValueError(f"No catalog id recorded for {item.book_ref}")
        updated = db.update_rows(
            self.table,
            {"status": "UNPUBLISHED", "import_batch_id": None},
            {"id": item.book_id},
        )
        if not updated:
            raise LookupError(f"Catalog book {item.book_id} not found")


class RollbackResult(BaseModel):
    batch_id: str
    status: BatchStatus
    reversed: list[str] = Field(default_factory=list)
    complete: bool = True


class PartialRollback(RollbackResult):
    """Some books could not be reversed; the batch status is unchanged."""

    complete: bool = False
    not_rolled_back: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)


class RollbackEngine:
    def __init__(
        self,
        registry: ImportBatchRegistry,
        reverser: CatalogReverser,
        guard: OperationGuard,
    ) -> None:
        self.registry = registry
        self.reverser = reverser
        self.guard = guard

    def check(self, batch_id: str) -> Precheck:
        batch = self.registry.get(batch_id)
        base = dict(
            batch_id=batch_id,
            operation="rollback",
            destructive=True,
            requires_confirmation=True,
        )
        if batch.status not in ROLLBACKABLE:
            return Precheck(allowed=False, reason=f"batch is {batch.status.value}", **base)
        if batch.success_books == 0:
            return Precheck(allowed=False, reason="batch imported no books", **base)
        active = self.guard.active(batch_id)
        if active:
            return Precheck(allowed=False, reason=f"{active} in progress", **base)
        pending = self.registry.store.list_items(batch_id, ItemStatus.SUCCESS)
        if not pending and not self._already_reversed(batch_id):
            return Precheck(allowed=False, reason="no per-item detail for imported books", **base)
        return Precheck(allowed=True, item_count=len(pending), **base)

    def _already_reversed(self, batch_id: str) -> bool:
        return bool(self.registry.store.list_items(batch_id, ItemStatus.ROLLED_BACK))

    def rollback(self, batch_id: str) -> RollbackResult:
        with self.guard.hold(batch_id, "rollback"):
            batch = self.registry.get(batch_id)
            if batch.status not in ROLLBACKABLE:
                raise InvalidTransition("batch", batch_id, batch.status.value, "rollback")
            if batch.success_books == 0:
                raise InvalidTransition("batch", batch_id, batch.status.value, "rollback (nothing imported)")

            store = self.registry.store
            pending = store.list_items(batch_id, ItemStatus.SUCCESS)
            if not pending and not self._already_reversed(batch_id):
                raise RollbackNotSupported(
                    f"Batch {batch_id} reports {batch.success_books} imported book(s) "
                    "but the item ledger has no per-book detail"
                )

            logger.warning(
                "Rolling back batch %s: reversing %d imported book(s) (env=%s%s)",
                batch_id, len(pending), batch.environment,
                ", CONFIRMATION REQUIRED" if environment_requires_confirmation(batch.environment) else "",
            )

            reversed_refs: list[str] = []
            errors: dict[str, str] = {}
            for item in pending:
                try:
                    self.reverser.reverse(item)
                except Exception as e:
                    logger.error("Failed to reverse %s in batch %s: %s", item.book_ref, batch_id, e)
                    errors[item.book_ref] = str(e)
                    continue
                reversed_refs.append(item.book_ref)

            if reversed_refs:
                store.set_item_status(batch_id, reversed_refs, ItemStatus.ROLLED_BACK)

            if errors:
                logger.warning(
                    "Partial rollback of batch %s: %d reversed, %d left",
                    batch_id, len(reversed_refs), len(errors),
                )
                return PartialRollback(
                    batch_id=batch_id,
                    status=batch.status,
                    reversed=reversed_refs,
                    not_rolled_back=list(errors),
                    errors=errors,
                )

            batch = self.registry.rollback(batch_id)
        logger.info("Batch %s rolled back (%d book(s) reversed)", batch_id, len(reversed_refs))
        return RollbackResult(batch_id=batch_id, status=batch.status, reversed=reversed_refs)
