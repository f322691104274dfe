"""ticket_worker/lambda_function.py — SQS work item processor.

Triggered by the timesheet work queue (SQS FIFO, message group = job id,
batch size <= 10, ReportBatchItemFailures enabled). Each record is one
(date, ticket) work item: post the worklog to the selected Jira instance,
then settle the item on the shared Job Record and close the job when every
item has settled.

Flow per record:
  parse -> skip if job closed or item already settled -> POST worklog
  -> ADD processed (2xx) | ADD failed + append error (otherwise)
  -> close job if processed + failed >= total

Records are handled sequentially with ITEM_DELAY_SECONDS between them to
stay under the upstream rate limit. A failure of one record never aborts
its siblings. Only store errors are reported back to SQS for redelivery;
the queue's maxReceiveCount then routes exhausted items to the DLQ.

Environment variables:
  JOBS_TABLE          DynamoDB Job Record table (default: timesheet-jobs)
  ITEM_DELAY_SECONDS  pause between records (default: 1.0)
  JIRA_BASE_URL / JIRA_BASE_URL_PARAM / JIRA_MAX_RETRIES / JIRA_TIMEOUT_SECONDS
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import time
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from timesheet_shared.jira import JiraRequestError, _load_jira_config, _post_worklog
from timesheet_shared.job_store import (
    _get_job,
    _is_item_settled,
    _mark_terminal_if_done,
    _record_failure,
    _record_success,
)
from timesheet_shared.models import TERMINAL_STATUSES, WorkItemMessage
from timesheet_shared.serialization import _emit_event

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Environment configuration
# ---------------------------------------------------------------------------

ITEM_DELAY_SECONDS = float(os.environ.get("ITEM_DELAY_SECONDS", "1.0"))

_sleep = time.sleep

# ---------------------------------------------------------------------------
# Upstream call
# ---------------------------------------------------------------------------


def _current_time() -> str:
    return dt.datetime.now().strftime("%H:%M:%S")


def _build_worklog_payload(message: WorkItemMessage, now: Optional[str] = None) -> Dict[str, Any]:
    """Tempo log-work payload for one (date, ticket) item. Hours become seconds."""
    ticket = message.ticket
    return {
        "description": ticket.description,
        "endDate": message.date,
        "issueKey": ticket.ticket_id,
        "period": False,
        "remainingTime": 0,
        "startDate": message.date,
        "time": f" {now or _current_time()}",
        "timeSpend": float(ticket.time_spend) * 3600,
        "typeOfWork": ticket.type_of_work,
        "username": message.username,
    }


def _submit_worklog(message: WorkItemMessage) -> None:
    config = _load_jira_config()
    url = config.worklog_url(message.jira_instance)
    payload = _build_worklog_payload(message)
    _post_worklog(config, url, payload, config.headers(message.token, message.jira_instance))


# ---------------------------------------------------------------------------
# Record processing
# ---------------------------------------------------------------------------


def _process_message(message: WorkItemMessage) -> str:
    """Perform one work item and settle it. Returns the outcome label.

    Store errors propagate to the caller, which reports the record for
    redelivery. Upstream errors are settled as item failures.
    """
    job = _get_job(message.job_id)
    if job is None:
        logger.warning("[WARNING] job record missing (expired?): %s", message.describe())
        return "orphaned"
    if job.get("status") in TERMINAL_STATUSES:
        # Closed jobs (including sweeper force-closes) never reach the upstream.
        logger.info("[INFO] job already %s, skipping late delivery: %s", job.get("status"), message.describe())
        return "closed"
    if _is_item_settled(job, message.item_id):
        logger.info("[INFO] duplicate delivery, item already settled: %s", message.describe())
        _mark_terminal_if_done(message.job_id)
        return "duplicate"

    error: Optional[str] = None
    try:
        _submit_worklog(message)
    except JiraRequestError as exc:
        error = str(exc)
    except ValueError as exc:
        # Bad hours value or unknown instance: no retry can fix it.
        error = f"Invalid work item: {exc}"

    if error is None:
        updated = _record_success(message.job_id, message.item_id)
        outcome = "processed"
    else:
        logger.error("[ERROR] work item failed: %s: %s", message.describe(), error)
        updated = _record_failure(
            message.job_id,
            message.item_id,
            ticket_id=message.ticket.ticket_id,
            date=message.date,
            error=error,
        )
        outcome = "failed"

    # A None image means another delivery settled it first; re-read to close.
    closed = _mark_terminal_if_done(message.job_id, updated)
    _emit_event(
        "ticket_worker",
        "item_settled",
        job_id=message.job_id,
        item_id=message.item_id,
        outcome=outcome,
        counted=updated is not None,
        closed_status=closed or "",
    )
    return outcome


def _process_record(record: Dict[str, Any]) -> bool:
    """Process one SQS record. Returns False when SQS should redeliver it."""
    message_id = record.get("messageId", "")
    try:
        message = WorkItemMessage.from_json(record.get("body", ""))
    except ValueError as exc:
        logger.error("[ERROR] dropping malformed message %s: %s", message_id, exc)
        return True

    try:
        _process_message(message)
    except (ClientError, BotoCoreError) as exc:
        logger.error(
            "[ERROR] store update failed, leaving for redelivery: %s: %s",
            message.describe(), exc, exc_info=True,
        )
        return False
    except Exception as exc:
        logger.error("[ERROR] unexpected error processing %s: %s", message.describe(), exc, exc_info=True)
        return False
    return True


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    records: List[Dict[str, Any]] = event.get("Records") or []
    logger.info("[START] work item batch received (%d records)", len(records))

    failures: List[Dict[str, str]] = []
    for idx, record in enumerate(records):
        if not _process_record(record):
            failures.append({"itemIdentifier": record.get("messageId", "")})
        if ITEM_DELAY_SECONDS > 0 and idx < len(records) - 1:
            _sleep(ITEM_DELAY_SECONDS)

    logger.info("[END] batch done: %d record(s), %d left for redelivery", len(records), len(failures))
    return {"batchItemFailures": failures}
