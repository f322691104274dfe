"""job_status/lambda_function.py

Lambda API handler for polling a bulk timesheet job.

Routes (via API Gateway proxy):
    GET     /jobs/status?jobId=<id>  — Job snapshot with progress percentage
    OPTIONS /jobs/status             — CORS preflight

Read-only: the snapshot reflects the last committed Job Record.

Environment variables:
    JOBS_TABLE       default: timesheet-jobs
    ALLOWED_ORIGINS  comma-separated CORS allowlist
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from botocore.exceptions import BotoCoreError, ClientError

from timesheet_shared.http_utils import _error, _ok, _query_param, _with_cors
from timesheet_shared.job_store import _get_job, _job_snapshot
from timesheet_shared.serialization import _emit_event

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _handle_get_status(job_id: str) -> Dict[str, Any]:
    job = _get_job(job_id)
    if job is None:
        logger.warning("[WARNING] job not found: %s", job_id)
        return _error(404, f"Job {job_id} not found")

    snapshot = _job_snapshot(job)
    _emit_event(
        "job_status",
        "job_status_read",
        job_id=job_id,
        total=snapshot["total"],
        processed=snapshot["processed"],
        failed=snapshot["failed"],
        progress=snapshot["progress"],
        status=snapshot["status"],
    )
    return _ok("Job status retrieved successfully", **snapshot)


@_with_cors
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    job_id = _query_param(event, "jobId")
    if not job_id:
        return _error(400, "Missing required query parameter: jobId")

    try:
        return _handle_get_status(job_id)
    except (ClientError, BotoCoreError) as exc:
        logger.error("[ERROR] AWS error reading job %s: %s", job_id, exc, exc_info=True)
        return _error(500, "Internal service error")
