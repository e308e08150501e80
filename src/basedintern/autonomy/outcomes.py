from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import requests


OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_RATE_LIMITED = "rate_limited"
OUTCOME_SKIPPED = "skipped"

REASON_CIRCUIT_OPEN = "circuit_open"


class RateLimitedError(Exception):
    """An external dependency throttled the request; not evidence it is broken."""

    def __init__(self, message: str, reset_at_ms: Optional[int] = None):
        super().__init__(message)
        self.reset_at_ms = reset_at_ms


@dataclass
class Outcome:
    kind: str
    reason: Optional[str] = None
    reset_at_ms: Optional[int] = None
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.kind == OUTCOME_SUCCESS

    @classmethod
    def success(cls, value: Any = None) -> "Outcome":
        return cls(kind=OUTCOME_SUCCESS, value=value)

    @classmethod
    def failure(cls, reason: str) -> "Outcome":
        return cls(kind=OUTCOME_FAILURE, reason=reason)

    @classmethod
    def rate_limited(cls, reset_at_ms: Optional[int] = None, reason: str = "rate_limited") -> "Outcome":
        return cls(kind=OUTCOME_RATE_LIMITED, reason=reason, reset_at_ms=reset_at_ms)

    @classmethod
    def skipped(cls, reason: str) -> "Outcome":
        return cls(kind=OUTCOME_SKIPPED, reason=reason)


def _positive_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return float(value)


def parse_retry_after_ms(headers: Optional[Mapping[str, str]], body: Any) -> Optional[int]:
    if isinstance(body, dict):
        secs = _positive_number(body.get("retry_after_seconds"))
        if secs is not None:
            return int(secs * 1000)
        mins = _positive_number(body.get("retry_after_minutes"))
        if mins is not None:
            return int(mins * 60_000)

    raw = (headers or {}).get("Retry-After") or (headers or {}).get("retry-after")
    if not raw:
        return None
    try:
        n = float(str(raw).strip())
    except ValueError:
        return None
    if not math.isfinite(n) or n <= 0:
        return None
    # Most servers send seconds; very large values are treated as milliseconds.
    if n > 60_000:
        return int(n)
    return int(n * 1000)


def parse_reset_header_ms(headers: Optional[Mapping[str, str]]) -> Optional[int]:
    raw = (headers or {}).get("x-rate-limit-reset") or (headers or {}).get("X-Rate-Limit-Reset")
    if not raw:
        return None
    try:
        epoch_seconds = float(str(raw).strip())
    except ValueError:
        return None
    if not math.isfinite(epoch_seconds) or epoch_seconds <= 0:
        return None
    return int(epoch_seconds * 1000)


def classify_response(resp: requests.Response, now_ms: int) -> Outcome:
    if resp.status_code == 429:
        try:
            body = resp.json()
        except ValueError:
            body = None
        retry_after_ms = parse_retry_after_ms(resp.headers, body)
        if retry_after_ms is not None:
            return Outcome.rate_limited(reset_at_ms=now_ms + retry_after_ms)
        return Outcome.rate_limited(reset_at_ms=parse_reset_header_ms(resp.headers))
    if 200 <= resp.status_code < 300:
        return Outcome.success(value=resp)
    return Outcome.failure(reason=f"http_{resp.status_code}")
