"""Tests for the client-side run snapshot cache."""

from __future__ import annotations

import pytest

from bookimport.cache import RunSnapshotCache
from bookimport.models.run import RunStatus
from tests.fakes import book


@pytest.fixture
def cache(settings) -> RunSnapshotCache:
    return RunSnapshotCache(settings.run_cache_path)


def test_load_without_file(cache):
    assert cache.load() is None


def test_corrupt_file_is_discarded(cache):
    cache.path.write_text("{not json", encoding="utf-8")
    assert cache.load() is None
    assert not cache.path.exists()


def test_reconcile_refreshes_from_executor(cache, service, local_exec):
    snap = service.submit_run("local")
    cache.save(snap)
    local_exec.report(snap.run_id, status=RunStatus.RUNNING, elapsed_seconds=30)

    fresh = cache.reconcile(service)
    assert fresh.status == RunStatus.RUNNING
    assert cache.load().elapsed_seconds == 30


def test_reconcile_evicts_finished_run(cache, service, local_exec):
    snap = service.submit_run("local")
    cache.save(snap)
    local_exec.finish(snap.run_id, [book("a")])

    assert cache.reconcile(service).status == RunStatus.COMPLETED
    assert cache.load() is None


def test_reconcile_evicts_unknown_run(cache, service, local_exec):
    snap = service.submit_run("local")
    cache.save(snap.model_copy(update={"run_id": "local-gone"}))
    assert cache.reconcile(service) is None
    assert not cache.path.exists()


def test_reconcile_keeps_stored_state_when_unreachable(cache, service, remote_exec):
    snap = service.submit_run("staging")
    cache.save(snap)
    remote_exec.unreachable = True

    stale = cache.reconcile(service)
    assert stale.run_id == snap.run_id
    assert stale.status == RunStatus.SUBMITTED
    assert cache.load() is not None
