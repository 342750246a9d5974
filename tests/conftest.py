from __future__ import annotations

from datetime import datetime, timezone

import pytest

from bookimport.batches.registry import ImportBatchRegistry
from bookimport.batches.store import InMemoryStore
from bookimport.clock import ManualClock
from bookimport.config import Settings
from bookimport.executors.router import ExecutorRouter
from bookimport.models.run import ExecutorKind
from bookimport.service import ImportService
from tests.fakes import FakeExecutor, FakeReverser

T0 = datetime(2026, 3, 18, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        supabase_url=None,
        supabase_service_role_key=None,
        run_cache_path=tmp_path / "current_run.json",
        local_run_dir=tmp_path / "runs",
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def local_exec() -> FakeExecutor:
    return FakeExecutor(ExecutorKind.LOCAL)


@pytest.fixture
def remote_exec() -> FakeExecutor:
    return FakeExecutor(ExecutorKind.REMOTE)


@pytest.fixture
def router(local_exec, remote_exec) -> ExecutorRouter:
    return ExecutorRouter(local=local_exec, remote=remote_exec)


@pytest.fixture
def registry(store, clock) -> ImportBatchRegistry:
    return ImportBatchRegistry(store, clock)


@pytest.fixture
def reverser() -> FakeReverser:
    return FakeReverser()


@pytest.fixture
def service(store, router, reverser, clock, settings) -> ImportService:
    return ImportService(store, router, reverser, clock=clock, settings=settings)


@pytest.fixture
def coordinator(service):
    return service.coordinator
