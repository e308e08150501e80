from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .config import Config
from .logging_utils import get_logger
from .migrations import timestamp_ms
from .outcomes import (
    OUTCOME_FAILURE,
    OUTCOME_RATE_LIMITED,
    OUTCOME_SUCCESS,
    REASON_CIRCUIT_OPEN,
    Outcome,
    RateLimitedError,
)


# dependency key -> (failure count field, disabled-until field)
BREAKER_FIELDS: Dict[str, Tuple[str, str]] = {
    "x_api": ("xApiFailureCount", "xApiCircuitBreakerDisabledUntilMs"),
    "x_mentions": ("xMentionsFailureCount", "xMentionsCircuitBreakerDisabledUntilMs"),
    "moltbook": ("moltbookFailureCount", "moltbookCircuitBreakerDisabledUntilMs"),
    "chain_post": ("chainPostFailureCount", "chainPostCircuitBreakerDisabledUntilMs"),
}


@dataclass
class CircuitBreaker:
    """Failure isolation for one external dependency, backed by two state fields.

    Every method that changes the breaker returns a new state dict; the
    caller's dict is never modified.
    """

    key: str
    failure_field: str
    until_field: str
    threshold: int = 3
    cooldown_ms: int = 30 * 60_000
    rate_limit_cooldown_ms: int = 15 * 60_000

    def failure_count(self, state: Dict[str, Any]) -> int:
        value = state.get(self.failure_field, 0)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return 0
        return value

    def disabled_until_ms(self, state: Dict[str, Any]) -> Optional[int]:
        return timestamp_ms(state.get(self.until_field))

    def is_open(self, state: Dict[str, Any], now_ms: int) -> bool:
        until = self.disabled_until_ms(state)
        return until is not None and until > now_ms

    def remaining_ms(self, state: Dict[str, Any], now_ms: int) -> int:
        until = self.disabled_until_ms(state)
        if until is None:
            return 0
        return max(0, until - now_ms)

    def record_failure(self, state: Dict[str, Any], now_ms: int) -> Dict[str, Any]:
        out = dict(state)
        count = self.failure_count(state) + 1
        out[self.failure_field] = count
        if count >= self.threshold:
            out[self.until_field] = now_ms + self.cooldown_ms
        return out

    def record_rate_limited(
        self,
        state: Dict[str, Any],
        now_ms: int,
        reset_at_ms: Optional[float] = None,
    ) -> Dict[str, Any]:
        out = dict(state)
        out[self.failure_field] = 0
        valid_reset = (
            reset_at_ms is not None
            and not isinstance(reset_at_ms, bool)
            and isinstance(reset_at_ms, (int, float))
            and math.isfinite(reset_at_ms)
            and reset_at_ms > now_ms
        )
        out[self.until_field] = int(reset_at_ms) if valid_reset else now_ms + self.rate_limit_cooldown_ms
        return out

    def record_success(self, state: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(state)
        out[self.failure_field] = 0
        out[self.until_field] = None
        return out

    def record_outcome(self, state: Dict[str, Any], outcome: Outcome, now_ms: int) -> Dict[str, Any]:
        if outcome.kind == OUTCOME_SUCCESS:
            return self.record_success(state)
        if outcome.kind == OUTCOME_RATE_LIMITED:
            return self.record_rate_limited(state, now_ms, outcome.reset_at_ms)
        if outcome.kind == OUTCOME_FAILURE:
            return self.record_failure(state, now_ms)
        return state

    def call(
        self,
        state: Dict[str, Any],
        fn: Callable[[], Any],
        now_ms: int,
        logger: Optional[logging.Logger] = None,
    ) -> Tuple[Dict[str, Any], Outcome]:
        """Run ``fn`` unless the breaker is open and record what happened.

        ``fn`` may return an :class:`Outcome`; any other return value counts
        as success. ``RateLimitedError`` is recorded as a rate limit and any
        other exception as a failure.
        """
        logger = logger or get_logger()
        if self.is_open(state, now_ms):
            logger.info(
                "Skipping dependency=%s reason=%s remaining_ms=%s failures=%s",
                self.key,
                REASON_CIRCUIT_OPEN,
                self.remaining_ms(state, now_ms),
                self.failure_count(state),
            )
            return state, Outcome.skipped(REASON_CIRCUIT_OPEN)

        try:
            result = fn()
        except RateLimitedError as e:
            outcome = Outcome.rate_limited(reset_at_ms=e.reset_at_ms, reason=str(e) or "rate_limited")
        except Exception as e:
            logger.warning("Dependency call failed dependency=%s error=%s", self.key, e)
            outcome = Outcome.failure(reason=str(e) or type(e).__name__)
        else:
            outcome = result if isinstance(result, Outcome) else Outcome.success(value=result)

        next_state = self.record_outcome(state, outcome, now_ms)
        if outcome.kind == OUTCOME_RATE_LIMITED:
            logger.warning(
                "Dependency rate limited dependency=%s disabled_until_ms=%s",
                self.key,
                next_state.get(self.until_field),
            )
        elif outcome.kind == OUTCOME_FAILURE and self.is_open(next_state, now_ms):
            logger.warning(
                "Circuit breaker tripped dependency=%s failures=%s disabled_until_ms=%s",
                self.key,
                self.failure_count(next_state),
                next_state.get(self.until_field),
            )
        return next_state, outcome


def build_breakers(cfg: Config) -> Dict[str, CircuitBreaker]:
    return {
        key: CircuitBreaker(
            key=key,
            failure_field=failure_field,
            until_field=until_field,
            threshold=cfg.breaker_failure_threshold,
            cooldown_ms=cfg.breaker_cooldown_minutes * 60_000,
            rate_limit_cooldown_ms=cfg.rate_limit_cooldown_minutes * 60_000,
        )
        for key, (failure_field, until_field) in BREAKER_FIELDS.items()
    }
