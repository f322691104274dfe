"""timesheet_shared.params — SSM Parameter Store lookups with a warm-container cache."""

from __future__ import annotations

import logging
import time
from typing import Dict, Tuple

from .aws_clients import _get_ssm

logger = logging.getLogger(__name__)

_PARAM_TTL: float = 900.0
_param_cache: Dict[str, Tuple[str, float]] = {}


class ParameterNotFound(LookupError):
    pass


def _get_parameter(name: str, *, decrypt: bool = True) -> str:
    """Fetch an SSM parameter value (cached for `_PARAM_TTL` seconds)."""
    now = time.time()
    cached = _param_cache.get(name)
    if cached and (now - cached[1]) < _PARAM_TTL:
        return cached[0]

    resp = _get_ssm().get_parameter(Name=name, WithDecryption=decrypt)
    value = (resp.get("Parameter") or {}).get("Value")
    if not value:
        raise ParameterNotFound(f"Parameter {name} not found")

    _param_cache[name] = (value, now)
    logger.info("[INFO] loaded SSM parameter %s", name)
    return value


def _clear_cache() -> None:
    _param_cache.clear()
