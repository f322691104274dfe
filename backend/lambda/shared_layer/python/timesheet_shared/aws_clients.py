"""timesheet_shared.aws_clients — Warm-container boto3 clients for the job pipeline.

Each Lambda touches at most three services (the Job Record table, the work
queue and Parameter Store). Clients are built on first use and kept for the
life of the container, one per (service, region).

Environment variables:
    JOBS_REGION            region of the Job Record table (default: AWS_REGION, then ap-southeast-1)
    QUEUE_REGION           region of the work queue (default: JOBS_REGION)
    SSM_REGION             region of Parameter Store (default: JOBS_REGION)
    AWS_CONNECT_TIMEOUT    botocore connect timeout in seconds (default 3)
    AWS_READ_TIMEOUT       botocore read timeout in seconds (default 10)
"""

from __future__ import annotations

import os
import threading
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.config import Config

JOBS_REGION: str = os.environ.get("JOBS_REGION", os.environ.get("AWS_REGION", "ap-southeast-1"))
QUEUE_REGION: str = os.environ.get("QUEUE_REGION", JOBS_REGION)
SSM_REGION: str = os.environ.get("SSM_REGION", JOBS_REGION)

_CONNECT_TIMEOUT = float(os.environ.get("AWS_CONNECT_TIMEOUT", "3"))
_READ_TIMEOUT = float(os.environ.get("AWS_READ_TIMEOUT", "10"))

# service -> (default region, max attempts)
_SERVICES: Dict[str, Tuple[str, int]] = {
    "dynamodb": (JOBS_REGION, 5),
    "sqs": (QUEUE_REGION, 3),
    "ssm": (SSM_REGION, 5),
}

_clients: Dict[Tuple[str, str], Any] = {}
# job_creator sends batches from a thread pool; boto3.client() is not thread-safe.
_lock = threading.Lock()


def _client(service: str, region: Optional[str] = None):
    default_region, attempts = _SERVICES[service]
    key = (service, region or default_region)
    client = _clients.get(key)
    if client is None:
        with _lock:
            client = _clients.get(key)
            if client is None:
                client = boto3.client(
                    service,
                    region_name=key[1],
                    config=Config(
                        connect_timeout=_CONNECT_TIMEOUT,
                        read_timeout=_READ_TIMEOUT,
                        retries={"max_attempts": attempts, "mode": "standard"},
                    ),
                )
                _clients[key] = client
    return client


def _get_ddb(region: Optional[str] = None):
    """DynamoDB client for the Job Record table."""
    return _client("dynamodb", region)


def _get_sqs(region: Optional[str] = None):
    """SQS client for the work queue."""
    return _client("sqs", region)


def _get_ssm(region: Optional[str] = None):
    """SSM client for configuration parameters."""
    return _client("ssm", region)


def _reset_clients() -> None:
    """Drop cached clients (tests, or after a credentials rotation)."""
    with _lock:
        _clients.clear()
