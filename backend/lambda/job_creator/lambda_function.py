"""job_creator/lambda_function.py

Lambda API handler that admits a bulk timesheet job.

Routes (via API Gateway proxy):
    POST    /jobs   — Validate, write the Job Record, fan out work items
    OPTIONS /jobs   — CORS preflight

Flow:
    validate request -> write Job Record (total = |dates| x |tickets|)
    -> SendMessageBatch to the work queue (chunks of 10, in parallel)
    -> 201 {jobId, total}

The Job Record is written before any message is sent, so a reader never
sees messages in flight for an unknown job. Enqueue failures are logged
and not rolled back; the job_sweeper Lambda closes jobs that stall.

Environment variables:
    JOBS_TABLE            default: timesheet-jobs
    QUEUE_URL             SQS FIFO work queue URL (required)
    DISPATCH_CONCURRENCY  parallel SendMessageBatch calls (default 8)
    MAX_JOB_ITEMS         largest accepted dates x tickets product (default 1000)
    ALLOWED_ORIGINS       comma-separated CORS allowlist
"""

from __future__ import annotations

import hashlib
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from timesheet_shared.aws_clients import _get_sqs
from timesheet_shared.http_utils import (
    _bearer_token,
    _error,
    _ok,
    _parse_body,
    _with_cors,
)
from timesheet_shared.jira import VALID_INSTANCES
from timesheet_shared.job_store import _create_job
from timesheet_shared.models import (
    Ticket,
    WorkItemMessage,
    _expand_work_items,
    _parse_dates,
    _ticket_is_complete,
)
from timesheet_shared.serialization import _emit_event, _new_job_id

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

QUEUE_URL = os.environ.get("QUEUE_URL", "")
DISPATCH_CONCURRENCY = max(1, int(os.environ.get("DISPATCH_CONCURRENCY", "8")))
MAX_JOB_ITEMS = int(os.environ.get("MAX_JOB_ITEMS", "1000"))
SQS_BATCH_LIMIT = 10

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)


class RequestValidationError(ValueError):
    pass


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_request(event: Dict[str, Any]) -> Tuple[str, str, List[str], List[Ticket], str]:
    """Validate in the documented order; the first failure wins.

    Returns (token, username, dates, tickets, jira_instance).
    """
    try:
        body = _parse_body(event)
    except ValueError as exc:
        raise RequestValidationError("Invalid JSON body") from exc
    if body is None:
        raise RequestValidationError("Missing request body")
    if not isinstance(body, dict):
        raise RequestValidationError("Invalid JSON body")

    token = _bearer_token(event)
    if token is None:
        raise RequestValidationError("Missing Authorization header")
    if not token:
        raise RequestValidationError("Invalid Authorization header format")

    username = str(body.get("username") or "").strip()
    if not username:
        raise RequestValidationError("Missing required field: username")

    raw_dates = body.get("dates")
    dates = _parse_dates(raw_dates) if isinstance(raw_dates, str) else []
    if not dates:
        raise RequestValidationError("Missing required field: dates")

    jira_instance = body.get("jiraInstance")
    if not jira_instance:
        raise RequestValidationError("Missing required field: jiraInstance")
    if jira_instance not in VALID_INSTANCES:
        raise RequestValidationError('Invalid jiraInstance: must be "jira3", "jira9", or "jiradc"')

    raw_tickets = body.get("tickets")
    if not isinstance(raw_tickets, list):
        raise RequestValidationError("Missing or invalid tickets: must provide a tickets array")
    if not raw_tickets:
        raise RequestValidationError("Empty tickets array: at least one ticket is required")
    if not all(_ticket_is_complete(t) for t in raw_tickets):
        raise RequestValidationError(
            "Invalid ticket format: each ticket must have ticketId, timeSpend, description, and typeOfWork"
        )

    tickets = [Ticket.from_dict(t) for t in raw_tickets]
    if len(dates) * len(tickets) > MAX_JOB_ITEMS:
        raise RequestValidationError(
            f"Too many work items: {len(dates)} date(s) x {len(tickets)} ticket(s) exceeds the limit of {MAX_JOB_ITEMS}"
        )
    return token, username, dates, tickets, jira_instance


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def _chunks(items: Sequence[WorkItemMessage], size: int) -> List[Sequence[WorkItemMessage]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _dedup_id(message: WorkItemMessage) -> str:
    """SQS only accepts ASCII punctuation and alphanumerics here; item ids carry raw user input."""
    return hashlib.sha256(f"{message.job_id}:{message.item_id}".encode("utf-8")).hexdigest()


def _send_chunk(chunk: Sequence[WorkItemMessage]) -> List[str]:
    """Send one SendMessageBatch call. Returns the item ids that were not enqueued."""
    entries = [
        {
            "Id": str(idx),
            "MessageBody": message.to_json(),
            "MessageGroupId": message.job_id,
            "MessageDeduplicationId": _dedup_id(message),
        }
        for idx, message in enumerate(chunk)
    ]
    try:
        resp = _get_sqs().send_message_batch(QueueUrl=QUEUE_URL, Entries=entries)
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] SendMessageBatch failed for %d item(s): %s", len(chunk), exc)
        return [m.item_id for m in chunk]

    failed_ids: List[str] = []
    for failure in resp.get("Failed") or []:
        message = chunk[int(failure["Id"])]
        logger.error(
            "[ERROR] enqueue rejected: job=%s item=%s code=%s",
            message.job_id, message.item_id, failure.get("Code"),
        )
        failed_ids.append(message.item_id)
    return failed_ids


def _dispatch(items: Sequence[WorkItemMessage]) -> List[str]:
    """Enqueue every item, waiting for all acknowledgements. Returns failed item ids."""
    chunks = _chunks(items, SQS_BATCH_LIMIT)
    if not chunks:
        return []
    workers = min(DISPATCH_CONCURRENCY, len(chunks))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(_send_chunk, chunks))
    return [item_id for failed in results for item_id in failed]


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


def _handle_create_job(event: Dict[str, Any]) -> Dict[str, Any]:
    try:
        token, username, dates, tickets, jira_instance = _validate_request(event)
    except RequestValidationError as exc:
        logger.info("[INFO] job request rejected: %s", exc)
        return _error(400, str(exc))

    job_id = _new_job_id()
    items = _expand_work_items(
        job_id=job_id,
        username=username,
        dates=dates,
        tickets=tickets,
        token=token,
        jira_instance=jira_instance,
    )
    total = len(items)

    _create_job(job_id, total, username=username, jira_instance=jira_instance)
    failed_ids = _dispatch(items)

    _emit_event(
        "job_creator",
        "job_created",
        job_id=job_id,
        username=username,
        jira_instance=jira_instance,
        total=total,
        dates=len(dates),
        tickets=len(tickets),
        enqueue_failed=len(failed_ids),
    )
    if failed_ids:
        logger.warning(
            "[WARNING] job %s: %d of %d item(s) were not enqueued: %s",
            job_id, len(failed_ids), total, failed_ids,
        )

    return _ok(
        "Job created successfully. Processing started.",
        status_code=201,
        jobId=job_id,
        total=total,
    )


@_with_cors
def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    try:
        return _handle_create_job(event)
    except (ClientError, BotoCoreError) as exc:
        logger.error("[ERROR] AWS error creating job: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
