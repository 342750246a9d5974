"""Local background executor.

Runs are fire-and-forget child processes. The pipeline process writes its
progress to ``<run_id>.status.json`` and, when finished, its per-book
outcomes to ``<run_id>.books.json`` inside the run directory; stdout/stderr go
to ``<run_id>.log``. The child pid goes to ``<run_id>.pid`` so that a later
CLI process can still see and stop the run.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import signal
import subprocess
import uuid
from collections import deque
from pathlib import Path

from pydantic import ValidationError

from bookimport.clock import DEFAULT_CLOCK, Clock
from bookimport.errors import ExecutorUnreachable
from bookimport.models.run import (
    BookOutcome,
    Dispatch,
    DispatchRequest,
    ExecutorKind,
    ExecutorStatus,
    RunStatus,
)

logger = logging.getLogger(__name__)


class LocalExecutor:
    def __init__(
        self,
        run_dir: Path,
        command: str,
        log_tail_lines: int = 20,
        clock: Clock = DEFAULT_CLOCK,
    ) -> None:
        self.run_dir = Path(run_dir)
        self.command = command
        self.log_tail_lines = log_tail_lines
        self.clock = clock
        self._processes: dict[str, subprocess.Popen] = {}

    # --- Paths ---

    def log_path(self, run_id: str) -> Path:
        return self.run_dir / f"{run_id}.log"

    def status_path(self, run_id: str) -> Path:
        return self.run_dir / f"{run_id}.status.json"

    def books_path(self, run_id: str) -> Path:
        return self.run_dir / f"{run_id}.books.json"

    def items_path(self, run_id: str) -> Path:
        return self.run_dir / f"{run_id}.items.json"

    def pid_path(self, run_id: str) -> Path:
        return self.run_dir / f"{run_id}.pid"

    # --- Executor protocol ---

    def dispatch(self, request: DispatchRequest) -> Dispatch:
        run_id = f"local-{self.clock.now():%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:6]}"
        log_path = self.log_path(run_id)

        cmd = shlex.split(self.command) + [
            "--run-id", run_id,
            "--environment", request.environment.value,
            "--status-file", str(self.status_path(run_id)),
            "--books-file", str(self.books_path(run_id)),
        ]
        if request.booklist_ref:
            cmd += ["--booklist", request.booklist_ref]

        try:
            self.run_dir.mkdir(parents=True, exist_ok=True)
            if request.items:
                items_path = self.items_path(run_id)
                items_path.write_text(json.dumps(request.items), encoding="utf-8")
                cmd += ["--items-file", str(items_path)]
            with open(log_path, "ab") as log:
                proc = subprocess.Popen(
                    cmd,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    env=os.environ.copy(),
                    start_new_session=True,
                )
        except OSError as e:
            raise ExecutorUnreachable("local", f"could not start {cmd[0]!r}: {e}") from e

        self._processes[run_id] = proc
        self.pid_path(run_id).write_text(str(proc.pid), encoding="utf-8")
        logger.info("Started local run %s (pid=%d, log=%s)", run_id, proc.pid, log_path)
        return Dispatch(
            run_id=run_id,
            executor=ExecutorKind.LOCAL,
            dispatch_target=str(log_path),
            log_reference=str(log_path),
        )

    def get_status(self, run_id: str) -> ExecutorStatus | None:
        status_path = self.status_path(run_id)
        proc = self._processes.get(run_id)

        if status_path.exists():
            try:
                status = ExecutorStatus.model_validate_json(status_path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as e:
                # Usually a half-written file; the next poll will see the full one
                raise ExecutorUnreachable("local", f"unreadable status file {status_path}: {e}") from e
        elif proc is not None:
            code = proc.poll()
            if code is None:
                status = ExecutorStatus(status=RunStatus.SUBMITTED)
            else:
                status = ExecutorStatus(
                    status=RunStatus.FAILED,
                    error=f"process exited with code {code} before reporting progress",
                )
        else:
            # Started by another process; only the pid file is left to go on
            pid = self._read_pid(run_id)
            if pid is None:
                return None
            if _pid_alive(pid):
                status = ExecutorStatus(status=RunStatus.SUBMITTED)
            else:
                status = ExecutorStatus(
                    status=RunStatus.FAILED,
                    error=f"process {pid} exited before reporting progress",
                )

        return status.model_copy(update={"log_tail": self._log_tail(run_id)})

    def get_books(self, run_id: str) -> list[BookOutcome]:
        path = self.books_path(run_id)
        if not path.exists():
            return []
        rows = json.loads(path.read_text(encoding="utf-8"))
        return [BookOutcome.model_validate(r) for r in rows]

    def terminate(self, run_id: str) -> bool:
        proc = self._processes.get(run_id)
        if proc is not None:
            if proc.poll() is not None:
                return False
            proc.terminate()
            pid = proc.pid
        else:
            pid = self._read_pid(run_id)
            if pid is None or not _pid_alive(pid):
                return False
            try:
                os.kill(pid, signal.SIGTERM)
            except ProcessLookupError:
                return False
        logger.warning("Sent SIGTERM to local run %s (pid=%d)", run_id, pid)
        return True

    def _read_pid(self, run_id: str) -> int | None:
        path = self.pid_path(run_id)
        if not path.exists():
            return None
        try:
            return int(path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError) as e:
            raise ExecutorUnreachable("local", f"unreadable pid file {path}: {e}") from e

    def _log_tail(self, run_id: str) -> str | None:
        path = self.log_path(run_id)
        if not path.exists():
            return None
        with open(path, encoding="utf-8", errors="replace") as f:
            lines = deque(f, maxlen=self.log_tail_lines)
        return "".join(lines)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
