"""Unit tests for ticket_worker work item processing."""

from __future__ import annotations

import importlib.util
import json
import os
import random

import pytest
from botocore.exceptions import ClientError

from timesheet_shared import jira, job_store
from timesheet_shared.jira import JiraConfig, JiraRequestError
from timesheet_shared.models import Ticket, _expand_work_items

_SPEC = importlib.util.spec_from_file_location(
    "ticket_worker_lambda",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
ticket_worker = importlib.util.module_from_spec(_SPEC)
assert _SPEC.loader is not None
_SPEC.loader.exec_module(ticket_worker)

JIRA = JiraConfig(base_url="https://jira.example")


class _Upstream:
    """Records worklog posts; `outcomes` maps issue key -> exception to raise."""

    def __init__(self):
        self.posts = []
        self.outcomes = {}

    def __call__(self, config, url, payload, headers):
        self.posts.append({"url": url, "payload": payload, "headers": headers})
        exc = self.outcomes.get(payload["issueKey"])
        if exc is not None:
            raise exc
        return {"id": len(self.posts)}


@pytest.fixture
def upstream(monkeypatch):
    fake = _Upstream()
    monkeypatch.setattr(ticket_worker, "_post_worklog", fake)
    monkeypatch.setattr(ticket_worker, "_load_jira_config", lambda: JIRA)
    monkeypatch.setattr(ticket_worker, "ITEM_DELAY_SECONDS", 0.0)
    return fake


def _job(jobs_table, *, dates=("1/Jan/26", "2/Jan/26"), ticket_ids=("AB-1",), instance="jira9", job_id="job-1"):
    tickets = [
        Ticket(ticket_id=t, time_spend="2", description="Dev work", type_of_work="Create") for t in ticket_ids
    ]
    items = _expand_work_items(
        job_id=job_id, username="alice", dates=list(dates), tickets=tickets, token="tok", jira_instance=instance,
    )
    job_store._create_job(job_id, len(items), username="alice", jira_instance=instance)
    return items


def _records(items):
    return [{"messageId": f"m-{i}", "body": item.to_json()} for i, item in enumerate(items)]


def test_build_worklog_payload_converts_hours():
    item = _expand_work_items(
        job_id="j", username="alice", dates=["1/Jan/26"],
        tickets=[Ticket(ticket_id="AB-1", time_spend="1.5", description="d", type_of_work="Review")],
        token="t", jira_instance="jira3",
    )[0]

    payload = ticket_worker._build_worklog_payload(item, now="09:30:00")

    assert payload == {
        "description": "d",
        "endDate": "1/Jan/26",
        "issueKey": "AB-1",
        "period": False,
        "remainingTime": 0,
        "startDate": "1/Jan/26",
        "time": " 09:30:00",
        "timeSpend": 5400.0,
        "typeOfWork": "Review",
        "username": "alice",
    }


def test_successful_items_complete_job(jobs_table, upstream):
    items = _job(jobs_table)

    result = ticket_worker.lambda_handler({"Records": _records(items)}, None)

    assert result == {"batchItemFailures": []}
    record = jobs_table.record("job-1")
    assert (record["processed"], record["failed"], record["status"]) == (2, 0, "completed")
    assert record["errors"] == []
    assert upstream.posts[0]["url"] == "https://jira.example/jira9/rest/tempo/1.0/log-work/create-log-work"
    assert upstream.posts[0]["headers"]["Authorization"] == "Bearer tok"


def test_all_items_rejected_fails_job(jobs_table, upstream):
    items = _job(jobs_table)
    upstream.outcomes["AB-1"] = JiraRequestError("Jira worklog request failed (401): Unauthorized", status=401)

    result = ticket_worker.lambda_handler({"Records": _records(items)}, None)

    assert result == {"batchItemFailures": []}
    snapshot = job_store._job_snapshot(job_store._get_job("job-1"))
    assert snapshot["failed"] == 2
    assert snapshot["processed"] == 0
    assert snapshot["status"] == "failed"
    assert snapshot["progress"] == 100
    assert len(snapshot["errors"]) == 2
    assert {e["date"] for e in snapshot["errors"]} == {"1/Jan/26", "2/Jan/26"}
    assert all("401" in e["error"] for e in snapshot["errors"])


def test_mixed_outcome_is_failed(jobs_table, upstream):
    items = _job(jobs_table, dates=("1/Jan/26",), ticket_ids=("AB-1", "AB-2"))
    upstream.outcomes["AB-2"] = JiraRequestError("Max retries exceeded", status=503, attempts=11)

    ticket_worker.lambda_handler({"Records": _records(items)}, None)

    record = jobs_table.record("job-1")
    assert (record["processed"], record["failed"], record["status"]) == (1, 1, "failed")
    assert record["errors"][0]["ticketId"] == "AB-2"


def test_invalid_hours_counted_as_failure(jobs_table, upstream):
    items = _job(jobs_table, dates=("1/Jan/26",))
    bad = json.loads(items[0].to_json())
    bad["ticket"]["timeSpend"] = "two"

    result = ticket_worker.lambda_handler({"Records": [{"messageId": "m-0", "body": json.dumps(bad)}]}, None)

    assert result == {"batchItemFailures": []}
    record = jobs_table.record("job-1")
    assert record["failed"] == 1
    assert record["errors"][0]["error"].startswith("Invalid work item:")
    assert upstream.posts == []


def test_duplicate_delivery_is_not_counted_twice(jobs_table, upstream):
    items = _job(jobs_table)
    first = _records(items[:1])

    ticket_worker.lambda_handler({"Records": first}, None)
    ticket_worker.lambda_handler({"Records": first}, None)

    record = jobs_table.record("job-1")
    assert record["processed"] == 1
    assert record["status"] == "in-progress"
    assert len(upstream.posts) == 1


def test_redelivery_after_closure_closes_nothing_new(jobs_table, upstream):
    items = _job(jobs_table)
    ticket_worker.lambda_handler({"Records": _records(items)}, None)

    ticket_worker.lambda_handler({"Records": _records(items)}, None)

    record = jobs_table.record("job-1")
    assert (record["processed"], record["failed"], record["status"]) == (2, 0, "completed")
    assert len(upstream.posts) == 2


def test_store_error_reports_only_that_record(jobs_table, upstream, monkeypatch):
    items = _job(jobs_table)
    calls = {"n": 0}
    real_success = ticket_worker._record_success

    def _flaky(job_id, item_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow"}}, "UpdateItem")
        return real_success(job_id, item_id)

    monkeypatch.setattr(ticket_worker, "_record_success", _flaky)

    result = ticket_worker.lambda_handler({"Records": _records(items)}, None)

    assert result == {"batchItemFailures": [{"itemIdentifier": "m-0"}]}
    assert jobs_table.record("job-1")["processed"] == 1


def test_malformed_message_is_dropped(jobs_table, upstream):
    result = ticket_worker.lambda_handler(
        {"Records": [{"messageId": "m-x", "body": "not json"}, {"messageId": "m-y", "body": "{}"}]}, None
    )

    assert result == {"batchItemFailures": []}
    assert upstream.posts == []


def test_orphaned_message_is_acknowledged(jobs_table, upstream):
    items = _expand_work_items(
        job_id="expired", username="alice", dates=["1/Jan/26"],
        tickets=[Ticket(ticket_id="AB-1", time_spend="1", description="d", type_of_work="Create")],
        token="t", jira_instance="jira3",
    )

    result = ticket_worker.lambda_handler({"Records": _records(items)}, None)

    assert result == {"batchItemFailures": []}
    assert upstream.posts == []
    assert "expired" not in jobs_table.items


def test_sleeps_between_records_only(jobs_table, upstream, monkeypatch):
    items = _job(jobs_table, dates=("1/Jan/26", "2/Jan/26", "3/Jan/26"))
    sleeps = []
    monkeypatch.setattr(ticket_worker, "ITEM_DELAY_SECONDS", 1.0)
    monkeypatch.setattr(ticket_worker, "_sleep", sleeps.append)

    ticket_worker.lambda_handler({"Records": _records(items)}, None)

    assert sleeps == [1.0, 1.0]


@pytest.mark.parametrize("seed", range(5))
def test_shuffled_duplicated_deliveries_settle_exactly(jobs_table, upstream, seed):
    rng = random.Random(seed)
    items = _job(jobs_table, dates=("d1", "d2", "d3"), ticket_ids=("AB-1", "AB-2", "AB-3"))
    upstream.outcomes["AB-2"] = JiraRequestError("bad", status=400)
    deliveries = items + rng.sample(items, 4)
    rng.shuffle(deliveries)

    last = (0, 0)
    for record in _records(deliveries):
        ticket_worker.lambda_handler({"Records": [record]}, None)
        job = jobs_table.record("job-1")
        current = (int(job["processed"]), int(job["failed"]))
        assert current[0] >= last[0] and current[1] >= last[1]
        assert sum(current) <= job["total"]
        last = current

    job = jobs_table.record("job-1")
    assert (job["processed"], job["failed"]) == (6, 3)
    assert job["status"] == "failed"
    assert len(job["errors"]) == 3


def test_late_delivery_after_force_close_skips_upstream(jobs_table, upstream):
    items = _job(jobs_table, dates=("1/Jan/26",))
    assert job_store._force_close_stale(job_store._get_job("job-1")) is True

    result = ticket_worker.lambda_handler({"Records": _records(items)}, None)

    assert result == {"batchItemFailures": []}
    assert upstream.posts == []
    record = jobs_table.record("job-1")
    assert (record["processed"], record["failed"], record["status"]) == (0, 1, "failed")


def test_connection_reset_is_recorded_as_item_failure(jobs_table, upstream, monkeypatch):
    items = _job(jobs_table, dates=("1/Jan/26",))
    calls = []

    def _reset(*_args, **_kwargs):
        calls.append(1)
        raise ConnectionResetError("Connection reset by peer")

    monkeypatch.setattr("urllib.request.urlopen", _reset)
    monkeypatch.setattr(ticket_worker, "_post_worklog", jira._post_worklog)

    result = ticket_worker.lambda_handler({"Records": _records(items)}, None)

    assert result == {"batchItemFailures": []}
    assert len(calls) == 1
    record = jobs_table.record("job-1")
    assert (record["failed"], record["status"]) == (1, "failed")
    assert "Connection reset" in record["errors"][0]["error"]
