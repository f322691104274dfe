"""timesheet_shared.jira — Jira (Tempo) worklog client.

Instance-specific URLs and headers are data held in `JiraConfig`; callers
never build them inline. Requests go through stdlib urllib with a retry
loop for rate limiting (429) and server errors (5xx).

Environment variables:
    JIRA_BASE_URL        explicit base URL (wins over the SSM parameter)
    JIRA_BASE_URL_PARAM  SSM parameter holding the base URL
    JIRA_TIMEOUT_SECONDS per-attempt timeout (default 15)
    JIRA_MAX_RETRIES     retries after the first attempt (default 10)
"""

from __future__ import annotations

import http.client
import json
import logging
import os
import random
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .params import _get_parameter

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://insight.fsoft.com.vn"
VALID_INSTANCES: Tuple[str, ...] = ("jira3", "jira9", "jiradc")
WORKLOG_PATH = "/{instance}/rest/tempo/1.0/log-work/create-log-work"

_BACKOFF_BASE_SECONDS = 1.0
_BACKOFF_CAP_SECONDS = 30.0
_MAX_ERROR_BODY = 500

_sleep = time.sleep


class JiraRequestError(Exception):
    """Upstream call failed permanently (fatal status, or retries exhausted)."""

    def __init__(self, message: str, *, status: Optional[int] = None, attempts: int = 1) -> None:
        super().__init__(message)
        self.status = status
        self.attempts = attempts


@dataclass(frozen=True)
class JiraConfig:
    base_url: str = DEFAULT_BASE_URL
    instances: Tuple[str, ...] = VALID_INSTANCES
    worklog_path: str = WORKLOG_PATH
    timeout_seconds: float = 15.0
    max_retries: int = 10

    def is_valid_instance(self, instance: Any) -> bool:
        return isinstance(instance, str) and instance in self.instances

    def worklog_url(self, instance: str) -> str:
        if not self.is_valid_instance(instance):
            raise ValueError(f"Unknown Jira instance: {instance!r}")
        return self.base_url.rstrip("/") + self.worklog_path.format(instance=instance)

    def headers(self, token: str, instance: str) -> Dict[str, str]:
        base = self.base_url.rstrip("/")
        return {
            "Accept": "application/json, text/javascript, */*; q=0.01",
            "Content-Type": "application/json",
            "Origin": base,
            "Referer": f"{base}/{instance}/",
            "X-Requested-With": "XMLHttpRequest",
            "Connection": "close",
            "Authorization": f"Bearer {token}",
        }


_config: Optional[JiraConfig] = None


def _load_jira_config() -> JiraConfig:
    """Resolve the Jira config once per container (env, then SSM, then default)."""
    global _config
    if _config is not None:
        return _config

    base_url = os.environ.get("JIRA_BASE_URL", "").strip()
    param_name = os.environ.get("JIRA_BASE_URL_PARAM", "").strip()
    if not base_url and param_name:
        base_url = _get_parameter(param_name).strip()

    _config = JiraConfig(
        base_url=base_url or DEFAULT_BASE_URL,
        timeout_seconds=float(os.environ.get("JIRA_TIMEOUT_SECONDS", "15")),
        max_retries=int(os.environ.get("JIRA_MAX_RETRIES", "10")),
    )
    return _config


def _backoff_delay(attempt: int) -> float:
    """Exponential backoff with up to one second of jitter."""
    base = min(_BACKOFF_BASE_SECONDS * (2 ** attempt), _BACKOFF_CAP_SECONDS)
    return base + random.random()


def _read_error_body(exc: urllib.error.HTTPError) -> str:
    try:
        return exc.read().decode("utf-8", errors="replace")[:_MAX_ERROR_BODY]
    except Exception:
        return ""


def _post_worklog(
    config: JiraConfig,
    url: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
) -> Any:
    """POST a worklog payload; retries 429/5xx, raises JiraRequestError otherwise."""
    data = json.dumps(payload).encode("utf-8")

    for attempt in range(config.max_retries + 1):
        req = urllib.request.Request(url, method="POST", data=data, headers=headers)
        try:
            with urllib.request.urlopen(req, timeout=config.timeout_seconds) as resp:  # nosec B310
                raw = resp.read()
            try:
                return json.loads(raw.decode("utf-8")) if raw else {}
            except (json.JSONDecodeError, UnicodeDecodeError):
                return {}
        except urllib.error.HTTPError as exc:
            body_text = _read_error_body(exc)
            retryable = exc.code == 429 or exc.code >= 500
            if not retryable or attempt >= config.max_retries:
                logger.error(
                    "[ERROR] Jira worklog request failed after %d attempt(s): %s %s",
                    attempt + 1, exc.code, body_text,
                )
                raise JiraRequestError(
                    f"Jira worklog request failed ({exc.code}): {body_text}",
                    status=exc.code,
                    attempts=attempt + 1,
                ) from exc
            delay = _backoff_delay(attempt)
            logger.warning(
                "[WARNING] Jira returned %s. Attempt %d/%d. Retrying in %.0fms",
                exc.code, attempt + 1, config.max_retries, delay * 1000,
            )
            _sleep(delay)
        except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
            # Covers resets and truncated responses raised outside urllib's wrapping.
            # The upstream may have accepted the worklog; do not re-post.
            logger.error("[ERROR] Jira worklog request did not complete: %s", exc)
            raise JiraRequestError(
                f"Jira worklog request failed: {exc}",
                attempts=attempt + 1,
            ) from exc

    raise JiraRequestError("Max retries exceeded", attempts=config.max_retries + 1)
