"""Executor boundary: the out-of-process worker that performs import work."""

from __future__ import annotations

from typing import Protocol

from bookimport.models.run import BookOutcome, Dispatch, DispatchRequest, ExecutorStatus


class Executor(Protocol):
    def dispatch(self, request: DispatchRequest) -> Dispatch:
        """Start a run. Raises ExecutorUnreachable if the worker cannot be reached."""
        ...

    def get_status(self, run_id: str) -> ExecutorStatus | None:
        """Current status, or None when the executor has no record of the run."""
        ...

    def get_books(self, run_id: str) -> list[BookOutcome]:
        """Per-book outcomes; empty when the executor keeps no item detail."""
        ...

    def terminate(self, run_id: str) -> bool:
        """Ask the executor to stop the run. Returns whether a stop was signalled."""
        ...
