"""timesheet_shared.models — Bulk job request and work item message shapes.

A bulk request is expanded into one `WorkItemMessage` per (date, ticket)
pair. Each message is self-contained: the worker never needs a secondary
lookup to perform the upstream call.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence

STATUS_IN_PROGRESS = "in-progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

REQUIRED_TICKET_FIELDS = ("ticketId", "timeSpend", "description", "typeOfWork")


def _is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


@dataclass(frozen=True)
class Ticket:
    ticket_id: str
    time_spend: str
    description: str
    type_of_work: str

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Ticket":
        return cls(
            ticket_id=str(raw["ticketId"]).strip(),
            time_spend=str(raw["timeSpend"]).strip(),
            description=str(raw["description"]),
            type_of_work=str(raw["typeOfWork"]).strip(),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "ticketId": self.ticket_id,
            "timeSpend": self.time_spend,
            "description": self.description,
            "typeOfWork": self.type_of_work,
        }


def _ticket_is_complete(raw: Any) -> bool:
    if not isinstance(raw, dict):
        return False
    return not any(_is_blank(raw.get(field)) for field in REQUIRED_TICKET_FIELDS)


@dataclass(frozen=True)
class WorkItemMessage:
    job_id: str
    item_id: str
    username: str
    date: str
    ticket: Ticket
    token: str
    jira_instance: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "jobId": self.job_id,
                "itemId": self.item_id,
                "username": self.username,
                "date": self.date,
                "ticket": self.ticket.to_dict(),
                "token": self.token,
                "jiraInstance": self.jira_instance,
            }
        )

    @classmethod
    def from_json(cls, body: str) -> "WorkItemMessage":
        """Parse an SQS message body. Raises ValueError on any malformed input."""
        try:
            raw = json.loads(body)
        except (json.JSONDecodeError, TypeError) as exc:
            raise ValueError(f"Message body is not JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValueError("Message body must be a JSON object")

        missing = [k for k in ("jobId", "date", "ticket", "token", "jiraInstance", "username") if _is_blank(raw.get(k))]
        if missing:
            raise ValueError(f"Message missing field(s): {', '.join(missing)}")
        if not _ticket_is_complete(raw["ticket"]):
            raise ValueError("Message ticket is incomplete")

        ticket = Ticket.from_dict(raw["ticket"])
        date = str(raw["date"])
        item_id = str(raw.get("itemId") or _item_id(0, ticket.ticket_id, date))
        return cls(
            job_id=str(raw["jobId"]),
            item_id=item_id,
            username=str(raw["username"]),
            date=date,
            ticket=ticket,
            token=str(raw["token"]),
            jira_instance=str(raw["jiraInstance"]),
        )

    def describe(self) -> str:
        """Token-free summary for logs."""
        return f"job={self.job_id} item={self.item_id} instance={self.jira_instance}"


def _parse_dates(raw: str) -> List[str]:
    """Split a comma-separated date list, trimming whitespace and dropping blanks."""
    return [part.strip() for part in str(raw).split(",") if part.strip()]


def _item_id(seq: int, ticket_id: str, date: str) -> str:
    return f"{seq}:{ticket_id}@{date}"


def _expand_work_items(
    *,
    job_id: str,
    username: str,
    dates: Sequence[str],
    tickets: Iterable[Ticket],
    token: str,
    jira_instance: str,
) -> List[WorkItemMessage]:
    """Cartesian expansion: one message per (date, ticket) pair, dates outermost."""
    ticket_list = list(tickets)
    items: List[WorkItemMessage] = []
    for date in dates:
        for ticket in ticket_list:
            items.append(
                WorkItemMessage(
                    job_id=job_id,
                    item_id=_item_id(len(items), ticket.ticket_id, date),
                    username=username,
                    date=date,
                    ticket=ticket,
                    token=token,
                    jira_instance=jira_instance,
                )
            )
    return items


def _terminal_status(failed: int) -> str:
    return STATUS_FAILED if failed > 0 else STATUS_COMPLETED


def _progress(processed: int, failed: int, total: int) -> int:
    """Percentage of settled items, rounded half up and clamped to [0, 100]."""
    if total <= 0:
        return 0
    settled = max(0, processed) + max(0, failed)
    pct = (200 * settled + total) // (2 * total)
    return max(0, min(100, pct))
