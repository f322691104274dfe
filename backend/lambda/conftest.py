"""Shared pytest fixtures for the timesheet job Lambdas.

`FakeJobsTable` is an in-memory stand-in for the Job Record table. It
understands the expression shapes job_store issues (AND-joined conditions,
SET with list_append/if_not_exists, ADD on numbers and string sets) and
raises the same ConditionalCheckFailedException a real table would.
"""

from __future__ import annotations

import copy
import re
import threading
from typing import Any, Dict, List, Optional

import pytest
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from timesheet_shared import job_store

_SER = TypeSerializer()
_DESER = TypeDeserializer()

_ATTR_EXISTS = re.compile(r"^attribute_exists\((#?\w+)\)$")
_ATTR_NOT_EXISTS = re.compile(r"^attribute_not_exists\((#?\w+)\)$")
_NOT_CONTAINS = re.compile(r"^NOT contains\((#?\w+), (:\w+)\)$")
_EQUALS = re.compile(r"^(#?\w+) = (:\w+)$")
_LESS_THAN = re.compile(r"^(#?\w+) < (:\w+)$")
_LIST_APPEND = re.compile(r"^list_append\(if_not_exists\((#?\w+), (:\w+)\), (:\w+)\)$")


def _condition_failed(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        operation,
    )


def _split_top_level(expr: str) -> List[str]:
    parts: List[str] = []
    depth = 0
    current = ""
    for ch in expr:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append(current.strip())
            current = ""
            continue
        current += ch
    if current.strip():
        parts.append(current.strip())
    return parts


class FakeJobsTable:
    def __init__(self) -> None:
        self.items: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.page_size: Optional[int] = None
        self.fail_updates_with: Optional[Exception] = None
        self._lock = threading.Lock()

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _load(attrs: Dict[str, Any]) -> Dict[str, Any]:
        return {k: _DESER.deserialize(v) for k, v in attrs.items()}

    @staticmethod
    def _dump(item: Dict[str, Any]) -> Dict[str, Any]:
        return {k: _SER.serialize(v) for k, v in item.items()}

    def _check(self, item: Optional[Dict[str, Any]], expr: Optional[str], names: Dict[str, str], values: Dict[str, Any]) -> bool:
        if not expr:
            return True
        for clause in expr.split(" AND "):
            clause = clause.strip()
            if m := _ATTR_EXISTS.match(clause):
                ok = item is not None and names.get(m[1], m[1]) in item
            elif m := _ATTR_NOT_EXISTS.match(clause):
                ok = item is None or names.get(m[1], m[1]) not in item
            elif m := _NOT_CONTAINS.match(clause):
                ok = item is not None and values[m[2]] not in (item.get(names.get(m[1], m[1])) or ())
            elif m := _EQUALS.match(clause):
                ok = item is not None and item.get(names.get(m[1], m[1])) == values[m[2]]
            elif m := _LESS_THAN.match(clause):
                attr = names.get(m[1], m[1])
                ok = item is not None and attr in item and item[attr] < values[m[2]]
            else:
                raise AssertionError(f"unsupported condition clause: {clause}")
            if not ok:
                return False
        return True

    def _apply(self, item: Dict[str, Any], expr: str, names: Dict[str, str], values: Dict[str, Any]) -> None:
        set_part, add_part = expr, ""
        if " ADD " in expr:
            set_part, add_part = expr.split(" ADD ", 1)
        elif expr.startswith("ADD "):
            set_part, add_part = "", expr[4:]
        set_part = set_part.strip()
        if set_part.startswith("SET "):
            set_part = set_part[4:]

        for assignment in _split_top_level(set_part):
            target, rhs = (s.strip() for s in assignment.split("=", 1))
            attr = names.get(target, target)
            if m := _LIST_APPEND.match(rhs):
                existing = item.get(names.get(m[1], m[1]))
                base = existing if existing is not None else values[m[2]]
                item[attr] = list(base) + list(values[m[3]])
            elif rhs.startswith(":"):
                item[attr] = values[rhs]
            else:
                raise AssertionError(f"unsupported SET expression: {assignment}")

        for action in _split_top_level(add_part):
            target, placeholder = action.split()
            attr = names.get(target, target)
            value = values[placeholder]
            if isinstance(value, set):
                item[attr] = set(item.get(attr) or set()) | value
            else:
                item[attr] = item.get(attr, 0) + value

    # -- DynamoDB client surface -------------------------------------------

    def put_item(self, TableName, Item, ConditionExpression=None, **_kwargs):  # noqa: N803
        self.calls.append("put_item")
        with self._lock:
            item = self._load(Item)
            key = item["jobId"]
            if not self._check(self.items.get(key), ConditionExpression, {}, {}):
                raise _condition_failed("PutItem")
            self.items[key] = item
        return {}

    def get_item(self, TableName, Key, **_kwargs):  # noqa: N803
        self.calls.append("get_item")
        with self._lock:
            item = self.items.get(self._load(Key)["jobId"])
            return {"Item": self._dump(item)} if item is not None else {}

    def update_item(self, TableName, Key, UpdateExpression, ConditionExpression=None,  # noqa: N803
                    ExpressionAttributeNames=None, ExpressionAttributeValues=None,
                    ReturnValues=None, **_kwargs):
        self.calls.append("update_item")
        if self.fail_updates_with is not None:
            raise self.fail_updates_with
        names = ExpressionAttributeNames or {}
        values = self._load(ExpressionAttributeValues or {})
        with self._lock:
            key = self._load(Key)["jobId"]
            current = self.items.get(key)
            if not self._check(current, ConditionExpression, names, values):
                raise _condition_failed("UpdateItem")
            item = copy.deepcopy(current) if current is not None else {"jobId": key}
            self._apply(item, UpdateExpression, names, values)
            self.items[key] = item
            if ReturnValues == "ALL_NEW":
                return {"Attributes": self._dump(item)}
        return {}

    def scan(self, TableName, FilterExpression=None, ExpressionAttributeNames=None,  # noqa: N803
             ExpressionAttributeValues=None, ExclusiveStartKey=None, **_kwargs):
        self.calls.append("scan")
        names = ExpressionAttributeNames or {}
        values = self._load(ExpressionAttributeValues or {})
        with self._lock:
            keys = sorted(self.items)
            start = 0
            if ExclusiveStartKey:
                start = keys.index(self._load(ExclusiveStartKey)["jobId"]) + 1
            end = len(keys) if self.page_size is None else min(len(keys), start + self.page_size)
            page_keys = keys[start:end]
            matched = [
                self._dump(self.items[k])
                for k in page_keys
                if self._check(self.items[k], FilterExpression, names, values)
            ]
            resp: Dict[str, Any] = {"Items": matched}
            if end < len(keys):
                resp["LastEvaluatedKey"] = {"jobId": _SER.serialize(page_keys[-1])}
            return resp

    # -- test conveniences --------------------------------------------------

    def record(self, job_id: str) -> Dict[str, Any]:
        return self.items[job_id]


@pytest.fixture
def jobs_table(monkeypatch):
    table = FakeJobsTable()
    monkeypatch.setattr(job_store, "_get_ddb", lambda: table)
    return table
