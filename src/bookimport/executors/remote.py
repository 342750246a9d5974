"""HTTP client for the remote import worker queue.

Endpoints (JSON):
    POST /jobs                 → {"job_id": ...}
    GET  /jobs/{job_id}        → ExecutorStatus, 404 when the queue lost the job
    GET  /jobs/{job_id}/books  → {"books": [BookOutcome, ...]}
    POST /jobs/{job_id}/cancel
"""

from __future__ import annotations

import logging
from typing import Any

import requests
from requests.exceptions import ConnectionError, HTTPError, Timeout
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from bookimport.errors import ExecutorUnreachable
from bookimport.models.run import (
    BookOutcome,
    Dispatch,
    DispatchRequest,
    ExecutorKind,
    ExecutorStatus,
)

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionError, Timeout)):
        return True
    if isinstance(exc, HTTPError) and exc.response is not None:
        return exc.response.status_code >= 500
    return False


class RemoteExecutor:
    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 15.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )
    def _send(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        """Send a request, raising on 5xx so transient failures are retried."""
        resp = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        if resp.status_code >= 500:
            resp.raise_for_status()
        return resp

    def _call(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        try:
            return self._send(method, path, **kwargs)
        except requests.RequestException as e:
            raise ExecutorUnreachable("remote", f"{method} {path}: {e}") from e

    # --- Executor protocol ---

    def dispatch(self, request: DispatchRequest) -> Dispatch:
        resp = self._call("POST", "/jobs", json=request.model_dump(mode="json"))
        if not resp.ok:
            raise ExecutorUnreachable("remote", f"dispatch rejected with HTTP {resp.status_code}")
        job_id = str(resp.json()["job_id"])
        logger.info("Dispatched remote job %s (env=%s)", job_id, request.environment.value)
        return Dispatch(
            run_id=job_id,
            executor=ExecutorKind.REMOTE,
            dispatch_target=job_id,
            log_reference=f"{self.base_url}/jobs/{job_id}/log",
        )

    def get_status(self, run_id: str) -> ExecutorStatus | None:
        resp = self._call("GET", f"/jobs/{run_id}")
        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise ExecutorUnreachable("remote", f"status query returned HTTP {resp.status_code}")
        return ExecutorStatus.model_validate(resp.json())

    def get_books(self, run_id: str) -> list[BookOutcome]:
        resp = self._call("GET", f"/jobs/{run_id}/books")
        if resp.status_code == 404:
            return []
        if not resp.ok:
            raise ExecutorUnreachable("remote", f"books query returned HTTP {resp.status_code}")
        return [BookOutcome.model_validate(b) for b in resp.json().get("books", [])]

    def terminate(self, run_id: str) -> bool:
        resp = self._call("POST", f"/jobs/{run_id}/cancel")
        if resp.ok:
            logger.warning("Requested cancellation of remote job %s", run_id)
        return resp.ok
