"""timesheet_shared.job_store — Job Record persistence (DynamoDB).

The Job Record is the only state shared between concurrent workers, so this
module only exposes atomic, conditional primitives: counters move through
`ADD`, errors through `list_append`, and every counter update is guarded by
the per-item `settledItems` set so a redelivered message is counted once.

Environment variables:
    JOBS_TABLE          default: timesheet-jobs
    JOB_RETENTION_DAYS  TTL horizon for `expiresAt` (default 7)
    MAX_ERROR_ENTRIES   error entries kept per job (default 100); later
                        failures are still counted in `failed`
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Iterator, Optional

from botocore.exceptions import ClientError

from .aws_clients import _get_ddb
from .models import (
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    _progress,
    _terminal_status,
)
from .serialization import _deserialize, _now_z, _serialize, _unix_now

__all__ = [
    "_create_job",
    "_force_close_stale",
    "_get_job",
    "_is_item_settled",
    "_iter_stale_jobs",
    "_job_snapshot",
    "_mark_terminal_if_done",
    "_record_failure",
    "_record_success",
]

logger = logging.getLogger(__name__)

JOBS_TABLE: str = os.environ.get("JOBS_TABLE", "timesheet-jobs")
JOB_RETENTION_DAYS: int = int(os.environ.get("JOB_RETENTION_DAYS", "7"))

MAX_ERROR_ENTRIES: int = int(os.environ.get("MAX_ERROR_ENTRIES", "100"))

_MAX_ERROR_LENGTH = 1000

_NAMES = {
    "#processed": "processed",
    "#failed": "failed",
    "#status": "status",
    "#errors": "errors",
}


def _job_key(job_id: str) -> Dict[str, Any]:
    return {"jobId": _serialize(job_id)}


def _is_condition_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _names(*placeholders: str) -> Dict[str, str]:
    return {p: _NAMES[p] for p in placeholders}


# ---------------------------------------------------------------------------
# Creation and reads
# ---------------------------------------------------------------------------


def _create_job(
    job_id: str,
    total: int,
    *,
    username: str,
    jira_instance: str,
) -> Dict[str, Any]:
    """Write the initial Job Record. Fails if the id already exists."""
    now = _now_z()
    record: Dict[str, Any] = {
        "jobId": job_id,
        "total": total,
        "processed": 0,
        "failed": 0,
        "status": STATUS_IN_PROGRESS,
        "errors": [],
        "username": username,
        "jiraInstance": jira_instance,
        "createdAt": now,
        "updatedAt": now,
        "expiresAt": _unix_now() + JOB_RETENTION_DAYS * 86400,
    }
    _get_ddb().put_item(
        TableName=JOBS_TABLE,
        Item={k: _serialize(v) for k, v in record.items()},
        ConditionExpression="attribute_not_exists(jobId)",
    )
    return record


def _get_job(job_id: str) -> Optional[Dict[str, Any]]:
    resp = _get_ddb().get_item(TableName=JOBS_TABLE, Key=_job_key(job_id), ConsistentRead=True)
    raw = resp.get("Item")
    if not raw:
        return None
    return _deserialize(raw)


def _is_item_settled(job: Dict[str, Any], item_id: str) -> bool:
    return item_id in (job.get("settledItems") or set())


# ---------------------------------------------------------------------------
# Counter updates (worker / reconciler)
# ---------------------------------------------------------------------------

# Counted at most once per item, and never after the job is closed.
_SETTLE_CONDITION = (
    "attribute_exists(jobId) AND #status = :in_progress "
    "AND NOT contains(settledItems, :item_id)"
)


def _settle(
    job_id: str,
    item_id: str,
    update_expression: str,
    names: Dict[str, str],
    values: Dict[str, Any],
    extra_condition: str = "",
) -> Optional[Dict[str, Any]]:
    condition = _SETTLE_CONDITION
    if extra_condition:
        condition = f"{condition} AND {extra_condition}"
    values = {
        **values,
        ":one": _serialize(1),
        ":item_set": {"SS": [item_id]},
        ":item_id": _serialize(item_id),
        ":in_progress": _serialize(STATUS_IN_PROGRESS),
        ":ts": _serialize(_now_z()),
    }
    try:
        resp = _get_ddb().update_item(
            TableName=JOBS_TABLE,
            Key=_job_key(job_id),
            UpdateExpression=update_expression,
            ConditionExpression=condition,
            ExpressionAttributeNames={**names, "#status": "status"},
            ExpressionAttributeValues=values,
            ReturnValues="ALL_NEW",
        )
    except ClientError as exc:
        if _is_condition_failure(exc):
            logger.info("[INFO] item already settled or job closed/missing: job=%s item=%s", job_id, item_id)
            return None
        raise
    return _deserialize(resp.get("Attributes") or {})


def _record_success(job_id: str, item_id: str) -> Optional[Dict[str, Any]]:
    """Count one successful item. Returns the updated record, or None if not applied."""
    return _settle(
        job_id,
        item_id,
        "SET updatedAt = :ts ADD #processed :one, settledItems :item_set",
        _names("#processed"),
        {},
    )


def _record_failure(
    job_id: str,
    item_id: str,
    *,
    ticket_id: Optional[str],
    date: Optional[str],
    error: str,
) -> Optional[Dict[str, Any]]:
    """Count one failed item and append its error entry atomically.

    Every in-progress failure appends exactly one entry, so `failed` is the
    list length. Once it reaches MAX_ERROR_ENTRIES the item is still counted
    but its entry is dropped, keeping the record under the item size limit.
    """
    entry = {
        "itemId": item_id,
        "ticketId": ticket_id,
        "date": date,
        "error": (error or "Unknown error")[:_MAX_ERROR_LENGTH],
    }
    updated = _settle(
        job_id,
        item_id,
        (
            "SET updatedAt = :ts, #errors = list_append(if_not_exists(#errors, :empty), :entry) "
            "ADD #failed :one, settledItems :item_set"
        ),
        _names("#failed", "#errors"),
        {
            ":empty": _serialize([]),
            ":entry": _serialize([entry]),
            ":max_errors": _serialize(MAX_ERROR_ENTRIES),
        },
        extra_condition="#failed < :max_errors",
    )
    if updated is not None:
        return updated

    # Refused: already settled, job closed or missing, or the error list is full.
    updated = _settle(
        job_id,
        item_id,
        "SET updatedAt = :ts ADD #failed :one, settledItems :item_set",
        _names("#failed"),
        {},
    )
    if updated is not None:
        logger.warning(
            "[WARNING] job %s: error list full (%d), entry dropped for item %s",
            job_id, MAX_ERROR_ENTRIES, item_id,
        )
    return updated


# ---------------------------------------------------------------------------
# Terminal transition
# ---------------------------------------------------------------------------


def _mark_terminal_if_done(job_id: str, job: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """Close the job when every item has settled.

    `job` may be the post-update image returned by a settle call; otherwise the
    record is re-read. The write is conditioned on the job still being
    in-progress, so concurrent closers converge on one status. Returns the
    status written by this call, or None.
    """
    if job is None:
        job = _get_job(job_id)
    if not job or job.get("status") != STATUS_IN_PROGRESS:
        return None

    processed = int(job.get("processed") or 0)
    failed = int(job.get("failed") or 0)
    total = int(job.get("total") or 0)
    if processed + failed < total:
        return None

    status = _terminal_status(failed)
    try:
        _get_ddb().update_item(
            TableName=JOBS_TABLE,
            Key=_job_key(job_id),
            UpdateExpression="SET #status = :status, updatedAt = :ts",
            ConditionExpression="#status = :in_progress",
            ExpressionAttributeNames=_names("#status"),
            ExpressionAttributeValues={
                ":status": _serialize(status),
                ":in_progress": _serialize(STATUS_IN_PROGRESS),
                ":ts": _serialize(_now_z()),
            },
        )
    except ClientError as exc:
        if _is_condition_failure(exc):
            logger.info("[INFO] job %s already closed by another worker", job_id)
            return None
        raise
    return status


# ---------------------------------------------------------------------------
# Stale job sweep
# ---------------------------------------------------------------------------


def _iter_stale_jobs(cutoff_z: str) -> Iterator[Dict[str, Any]]:
    """Yield in-progress jobs whose last update is older than `cutoff_z`."""
    ddb = _get_ddb()
    kwargs: Dict[str, Any] = {
        "TableName": JOBS_TABLE,
        "FilterExpression": "#status = :in_progress AND updatedAt < :cutoff",
        "ExpressionAttributeNames": _names("#status"),
        "ExpressionAttributeValues": {
            ":in_progress": _serialize(STATUS_IN_PROGRESS),
            ":cutoff": _serialize(cutoff_z),
        },
    }
    while True:
        page = ddb.scan(**kwargs)
        for raw in page.get("Items", []):
            yield _deserialize(raw)
        last_key = page.get("LastEvaluatedKey")
        if not last_key:
            return
        kwargs["ExclusiveStartKey"] = last_key


def _force_close_stale(job: Dict[str, Any]) -> bool:
    """Fail every unsettled item of a stalled job in one conditional write.

    The condition pins the counters and `updatedAt` seen by the sweep, so a job
    that made progress in the meantime is left alone.
    """
    processed = int(job.get("processed") or 0)
    failed = int(job.get("failed") or 0)
    total = int(job.get("total") or 0)
    missing = max(0, total - processed - failed)
    entry = {
        "itemId": None,
        "ticketId": None,
        "date": None,
        "error": f"Job stalled: {missing} item(s) never settled",
    }
    try:
        _get_ddb().update_item(
            TableName=JOBS_TABLE,
            Key=_job_key(job["jobId"]),
            UpdateExpression=(
                "SET #failed = :failed_total, #status = :failed_status, updatedAt = :ts, "
                "#errors = list_append(if_not_exists(#errors, :empty), :entry)"
            ),
            ConditionExpression=(
                "#status = :in_progress AND #processed = :processed "
                "AND #failed = :failed AND updatedAt = :seen_updated"
            ),
            ExpressionAttributeNames=_names("#failed", "#status", "#errors", "#processed"),
            ExpressionAttributeValues={
                ":failed_total": _serialize(failed + missing),
                ":failed_status": _serialize(STATUS_FAILED),
                ":ts": _serialize(_now_z()),
                ":empty": _serialize([]),
                ":entry": _serialize([entry]),
                ":in_progress": _serialize(STATUS_IN_PROGRESS),
                ":processed": _serialize(processed),
                ":failed": _serialize(failed),
                ":seen_updated": _serialize(str(job.get("updatedAt") or "")),
            },
        )
    except ClientError as exc:
        if _is_condition_failure(exc):
            return False
        raise
    return True


# ---------------------------------------------------------------------------
# Public view
# ---------------------------------------------------------------------------


def _job_snapshot(job: Dict[str, Any]) -> Dict[str, Any]:
    processed = int(job.get("processed") or 0)
    failed = int(job.get("failed") or 0)
    total = int(job.get("total") or 0)
    return {
        "jobId": job.get("jobId"),
        "total": total,
        "processed": processed,
        "failed": failed,
        "status": job.get("status"),
        "progress": _progress(processed, failed, total),
        "errors": list(job.get("errors") or []),
        "createdAt": job.get("createdAt"),
        "updatedAt": job.get("updatedAt"),
    }
