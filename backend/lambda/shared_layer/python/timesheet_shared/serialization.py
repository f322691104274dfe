"""timesheet_shared.serialization — DynamoDB serialization, identifiers, structured logs.

Provides TypeSerializer/TypeDeserializer wrappers, timestamp helpers, the
time-sortable job identifier and the one-line JSON observability event used
across the timesheet job Lambdas.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import time
import uuid
from decimal import Decimal
from typing import Any, Dict

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

logger = logging.getLogger(__name__)

_SER = TypeSerializer()
_DESER = TypeDeserializer()


def _normalize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else float(value)
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize(v) for v in value]
    return value


def _serialize(value: Any) -> Any:
    """Serialize a Python value for DynamoDB."""
    if isinstance(value, float):
        value = Decimal(str(value))
    return _SER.serialize(value)


def _deserialize(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize a DynamoDB item to a plain Python dict (Decimals -> int/float)."""
    return {k: _normalize(_DESER.deserialize(v)) for k, v in item.items()}


def _now_z() -> str:
    """Current UTC timestamp in ISO 8601 format with Z suffix."""
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _z_minutes_ago(minutes: float) -> str:
    """UTC timestamp `minutes` in the past, same format as `_now_z`."""
    then = dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=minutes)
    return then.strftime("%Y-%m-%dT%H:%M:%SZ")


def _unix_now() -> int:
    """Current Unix epoch as integer."""
    return int(time.time())


def _new_job_id() -> str:
    """Return a UUIDv7 string: 48-bit millisecond timestamp, then random bits."""
    unix_ms = time.time_ns() // 1_000_000
    rand = int.from_bytes(os.urandom(10), "big")
    value = (unix_ms & 0xFFFF_FFFF_FFFF) << 80
    value |= 0x7 << 76
    value |= ((rand >> 62) & 0xFFF) << 64
    value |= 0b10 << 62
    value |= rand & 0x3FFF_FFFF_FFFF_FFFF
    return str(uuid.UUID(int=value))


def _emit_event(component: str, event: str, **fields: Any) -> None:
    """Log one structured JSON line for dashboards and log insights queries."""
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
    }
    payload.update(fields)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
