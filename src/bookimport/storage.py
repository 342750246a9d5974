"""Supabase Storage helpers for archiving finished run reports."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from bookimport.config import get_settings
from bookimport.db import get_client
from bookimport.models.run import RunReport

logger = logging.getLogger(__name__)


def upload_json(
    bucket: str,
    path: str,
    data: dict | list,
) -> str:
    """Upload a JSON payload to Supabase Storage. Returns the storage path."""
    body = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")
    get_client().storage.from_(bucket).upload(
        path,
        body,
        file_options={"content-type": "application/json", "upsert": "true"},
    )
    return f"{bucket}/{path}"


def archive_run_report(report: RunReport, ts: datetime | None = None) -> str:
    """Archive a finished run's report to Storage and return the path.

    Path format: {environment}/{batch_id}/{run_id}_{timestamp}.json
    """
    ts = ts or datetime.now(timezone.utc)
    ts_str = ts.strftime("%Y%m%dT%H%M%SZ")
    path = f"{report.environment.value}/{report.batch_id}/{report.run_id}_{ts_str}.json"
    bucket = get_settings().supabase_bucket_reports
    full_path = upload_json(bucket, path, report.model_dump(mode="json"))
    logger.info("Archived run report %s to %s", report.run_id, full_path)
    return full_path
