from __future__ import annotations

from typing import Any, Dict, Optional

import bittensor as bt
import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

HEALTH_PATH = "/ext/health"


class CheckResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Any = None
    error: Optional[str] = None
    # RFC 3339 with nanoseconds; kept as text.
    timestamp: Optional[str] = None
    duration: Optional[int] = None
    contiguous_failures: Optional[int] = Field(default=None, alias="contiguousFailures")
    time_of_first_failure: Optional[str] = Field(default=None, alias="timeOfFirstFailure")


class HealthResponse(BaseModel):
    checks: Optional[Dict[str, CheckResult]] = None
    healthy: Optional[bool] = None

    @property
    def ok(self) -> bool:
        return bool(self.healthy)

    def failing(self) -> Dict[str, str]:
        return {name: (c.error or "unhealthy") for name, c in (self.checks or {}).items() if c.error}


def parse_health(text: str) -> HealthResponse:
    try:
        return HealthResponse.model_validate_json(text)
    except ValidationError as e:
        raise ValueError(f"invalid health response: {e}") from e


def check_health(http_endpoint: str, *, path: str = HEALTH_PATH, timeout_s: float = 5.0) -> Optional[HealthResponse]:
    """
    Query the node's health API. None when unreachable or unparsable.

    The node answers 503 with a full body while unhealthy, so the status code
    alone is not used.
    """
    url = f"{http_endpoint.rstrip('/')}{path}"
    try:
        r = requests.get(url, timeout=timeout_s)
    except requests.RequestException as e:
        bt.logging.debug(f"Health check {url} unreachable: {e}")
        return None
    try:
        return parse_health(r.text)
    except ValueError as e:
        bt.logging.debug(f"Health check {url} returned garbage: {e}")
        return None


def is_healthy(http_endpoint: str, *, path: str = HEALTH_PATH, timeout_s: float = 5.0) -> bool:
    resp = check_health(http_endpoint, path=path, timeout_s=timeout_s)
    return resp is not None and resp.ok
