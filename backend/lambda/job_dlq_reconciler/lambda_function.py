"""job_dlq_reconciler/lambda_function.py — Dead-letter queue reconciler.

Triggered by the work queue's dead-letter queue. A message lands there once
it exceeded the work queue's maxReceiveCount; the Job Record still counts
it in `total`, so without this function the job would stay in-progress
forever. Each dead-lettered item is settled as failed and the job closed
when that was its last outstanding item.

The settle call is guarded by the per-item dedup set, so an item that was
counted before its message was dead-lettered is not counted again.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from botocore.exceptions import BotoCoreError, ClientError

from timesheet_shared.job_store import _mark_terminal_if_done, _record_failure
from timesheet_shared.models import WorkItemMessage

logger = logging.getLogger()
logger.setLevel(logging.INFO)

DEAD_LETTER_ERROR = "Delivery attempts exhausted (dead-lettered)"


def _receive_count(record: Dict[str, Any]) -> str:
    return str((record.get("attributes") or {}).get("ApproximateReceiveCount", ""))


def _reconcile(message: WorkItemMessage, receive_count: str) -> bool:
    """Settle one dead-lettered item. Returns True if it changed the counters."""
    error = DEAD_LETTER_ERROR
    if receive_count:
        error = f"{DEAD_LETTER_ERROR} after {receive_count} receive(s)"
    updated = _record_failure(
        message.job_id,
        message.item_id,
        ticket_id=message.ticket.ticket_id,
        date=message.date,
        error=error,
    )
    _mark_terminal_if_done(message.job_id, updated)
    return updated is not None


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    records: List[Dict[str, Any]] = event.get("Records") or []
    failures: List[Dict[str, str]] = []
    reconciled = 0
    already_settled = 0
    dropped = 0

    for record in records:
        message_id = record.get("messageId", "")
        try:
            message = WorkItemMessage.from_json(record.get("body", ""))
        except ValueError as exc:
            dropped += 1
            logger.error("[ERROR] dropping malformed dead letter %s: %s", message_id, exc)
            continue

        try:
            if _reconcile(message, _receive_count(record)):
                reconciled += 1
            else:
                already_settled += 1
        except (ClientError, BotoCoreError) as exc:
            logger.error("[ERROR] reconcile failed for %s: %s", message.describe(), exc)
            failures.append({"itemIdentifier": message_id})

    result = {
        "received": len(records),
        "reconciled": reconciled,
        "already_settled": already_settled,
        "dropped": dropped,
        "retry": len(failures),
    }
    logger.info("[END] DLQ reconcile: %s", json.dumps(result))
    return {"batchItemFailures": failures, **result}
