from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from .breaker import build_breakers
from .config import Config, loop_interval_ms, tick_stale_ms, venue_configured
from .migrations import CURRENT_SCHEMA_VERSION, document_version, timestamp_ms
from .redeploy import FEATURE_FIELDS, cooldown_status, last_action_ms
from .state import DAY_COUNTERS, day_count, to_ms, utc_day_key


def build_status(state: Dict[str, Any], cfg: Config, now: datetime) -> Dict[str, Any]:
    """Summarize a loaded state for operators. Never modifies ``state``."""
    at_ms = to_ms(now)

    breakers: Dict[str, Any] = {}
    for key, breaker in build_breakers(cfg).items():
        breakers[key] = {
            "open": breaker.is_open(state, at_ms),
            "failures": breaker.failure_count(state),
            "remainingMs": breaker.remaining_ms(state, at_ms),
        }

    in_flight_since = timestamp_ms(state.get("tickInFlightSinceMs"))
    in_flight_age_ms = at_ms - in_flight_since if in_flight_since is not None else None

    min_interval_ms = cfg.min_interval_minutes * 60_000
    trade_ok, trade_reason, trade_remaining = cooldown_status(state, "trade", at_ms, min_interval_ms)

    per_feature = state.get("featureLastActionAtMs")
    features = sorted(set(FEATURE_FIELDS) | set(per_feature if isinstance(per_feature, dict) else {}))

    return {
        "schemaVersion": document_version(state),
        "currentSchemaVersion": CURRENT_SCHEMA_VERSION,
        "dayKey": utc_day_key(now),
        "counters": {name: day_count(state, name, now) for name in DAY_COUNTERS},
        "dailyTradeCap": cfg.daily_trade_cap,
        "trading": {
            "killSwitch": cfg.kill_switch,
            "tradingEnabled": cfg.trading_enabled,
            "dryRun": cfg.dry_run,
            "venueConfigured": venue_configured(cfg),
            "lastExecutedTradeAtMs": state.get("lastExecutedTradeAtMs"),
            "minIntervalOk": trade_ok,
            "minIntervalReason": trade_reason,
            "minIntervalRemainingMs": trade_remaining,
        },
        "breakers": breakers,
        "redeploy": {
            "tickInFlightSinceMs": in_flight_since,
            "tickInFlightAgeMs": in_flight_age_ms,
            "tickInFlightStale": in_flight_age_ms is not None and in_flight_age_ms >= tick_stale_ms(cfg),
            "lastTickCompletedAtMs": state.get("lastTickCompletedAtMs"),
            "loopIntervalMs": loop_interval_ms(cfg),
            "lastTxNonce": state.get("lastTxNonce"),
        },
        "featureLastActionAtMs": {feature: last_action_ms(state, feature) for feature in features},
    }
