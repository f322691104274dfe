"""job_sweeper/lambda_function.py — Stale job sweep.

Scheduled by EventBridge. Finds Job Records still in-progress whose
`updatedAt` is older than STALE_JOB_MINUTES and force-closes them: every
unsettled item is counted as failed and the status becomes `failed`. This
covers items that were never enqueued (partial dispatch failure) and items
lost anywhere between the queue and the store.

Each close is a single conditional write pinned to the counters the scan
observed, so a job that is still making progress is skipped.

Environment variables:
  JOBS_TABLE         default: timesheet-jobs
  STALE_JOB_MINUTES  staleness threshold (default: 60)
  DRY_RUN            "true" to report without writing
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict

from timesheet_shared.job_store import _force_close_stale, _iter_stale_jobs
from timesheet_shared.serialization import _emit_event, _z_minutes_ago

logger = logging.getLogger()
logger.setLevel(logging.INFO)

STALE_JOB_MINUTES = float(os.environ.get("STALE_JOB_MINUTES", "60"))
DRY_RUN = os.environ.get("DRY_RUN", "").lower() in {"1", "true", "yes"}


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    threshold = float((event or {}).get("staleMinutes") or STALE_JOB_MINUTES)
    cutoff = _z_minutes_ago(threshold)
    logger.info("[START] stale job sweep: cutoff=%s dry_run=%s", cutoff, DRY_RUN)

    scanned = closed = skipped = 0
    for job in _iter_stale_jobs(cutoff):
        scanned += 1
        job_id = job.get("jobId")
        outstanding = int(job.get("total") or 0) - int(job.get("processed") or 0) - int(job.get("failed") or 0)
        if DRY_RUN:
            logger.info("[INFO] dry run: would close job %s (%d outstanding)", job_id, outstanding)
            continue
        if _force_close_stale(job):
            closed += 1
            _emit_event("job_sweeper", "job_force_closed", job_id=job_id, outstanding=outstanding)
        else:
            skipped += 1
            logger.info("[INFO] job %s changed since scan, left alone", job_id)

    result = {"scanned": scanned, "closed": closed, "skipped": skipped}
    logger.info("[END] stale job sweep: %s", json.dumps(result))
    return result
