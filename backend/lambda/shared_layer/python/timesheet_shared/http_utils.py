"""timesheet_shared.http_utils — HTTP response helpers with CORS.

Standard response envelope, request parsing and origin-allowlist CORS
used by the API Gateway facing job Lambdas.
"""

from __future__ import annotations

import base64
import functools
import json
import logging
import os
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def _normalize_origins(*raw_values: str) -> tuple[str, ...]:
    """Return deduplicated, non-empty origins from scalar/csv env sources."""
    origins: list[str] = []
    seen: set[str] = set()
    for raw in raw_values:
        if not raw:
            continue
        for part in str(raw).split(","):
            origin = part.strip().rstrip("/")
            if not origin or origin in seen:
                continue
            seen.add(origin)
            origins.append(origin)
    return tuple(origins)


ALLOWED_ORIGINS: tuple[str, ...] = _normalize_origins(
    os.environ.get("ALLOWED_ORIGINS", "https://satio.dev,https://elevensystems.dev"),
)

_ALLOW_METHODS = "GET, POST, OPTIONS"
_ALLOW_HEADERS = "Content-Type, Authorization, X-Amz-Date, X-Api-Key, X-Amz-Security-Token"


def _header(event: Dict[str, Any], name: str) -> str:
    """Case-insensitive header lookup (API Gateway v1 keeps client casing)."""
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted and value is not None:
            return str(value)
    return ""


def _cors_headers(event: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """CORS headers; the origin is echoed only when it is allowlisted."""
    origin = _header(event or {}, "origin").rstrip("/")
    headers: Dict[str, str] = {}
    if origin and origin in ALLOWED_ORIGINS:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
    headers["Access-Control-Allow-Methods"] = _ALLOW_METHODS
    headers["Access-Control-Allow-Headers"] = _ALLOW_HEADERS
    headers["Vary"] = "Origin"
    return headers


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    """Build a standard API Gateway proxy response."""
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body, default=_json_default),
    }


def _ok(message: str, status_code: int = 200, **data: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"success": True, "message": message}
    payload.update(data)
    return _response(status_code, payload)


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    """Build a standard error response.

    Args:
        status_code: HTTP status code.
        message: Human-readable error message.
        **extra: Additional fields merged into the response payload.
    """
    payload: Dict[str, Any] = {
        "success": False,
        "error": message,
    }
    if extra:
        payload.update(extra)
    return _response(status_code, payload)


def _parse_body(event: Dict[str, Any]) -> Any:
    """Parse JSON body from API Gateway event (handles base64).

    Returns None when the body is absent; raises ValueError when it is not JSON.
    """
    raw = event.get("body")
    if raw in (None, ""):
        return None
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ValueError(f"Invalid JSON body: {exc}") from exc


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    """Extract HTTP method and path from an API Gateway v1 or v2 event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = http.get("path") or event.get("rawPath") or event.get("path") or "/"
    return method, path


def _query_param(event: Dict[str, Any], name: str) -> str:
    qs = event.get("queryStringParameters") or {}
    return str(qs.get(name) or "").strip()


def _bearer_token(event: Dict[str, Any]) -> Optional[str]:
    """Return the credential from the Authorization header.

    None means the header is absent; an empty string means it carried no token.
    """
    raw = _header(event, "authorization")
    if not raw:
        return None
    if raw.startswith("Bearer "):
        raw = raw[len("Bearer "):]
    return raw.strip()


def _with_cors(handler: Callable[[Dict[str, Any], Any], Dict[str, Any]]):
    """Wrap an API handler: answer preflight, attach CORS headers, trap crashes."""

    @functools.wraps(handler)
    def wrapper(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
        cors = _cors_headers(event)
        method, _path = _path_method(event)
        if method == "OPTIONS":
            return {"statusCode": 204, "headers": cors, "body": ""}

        try:
            resp = handler(event, context)
        except Exception as exc:
            logger.error("[ERROR] Unhandled error in %s: %s", handler.__name__, exc, exc_info=True)
            resp = _error(500, "Internal service error")

        resp["headers"] = {**(resp.get("headers") or {}), **cors}
        return resp

    return wrapper
