"""Overlap heuristics for the window where two agent instances share one state file.

None of these checks is a lock. They read timestamps and the wallet nonce
from the persisted state and skip work conservatively when another
instance looks active.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .logging_utils import get_logger
from .migrations import timestamp_ms
from .state import copy_state


REASON_RECENT_COMPLETION = "recent_completion"
REASON_TICK_IN_FLIGHT = "tick_in_flight"
REASON_NONCE_CHANGED = "nonce_changed"
REASON_COOLDOWN = "cooldown"

# Features that predate featureLastActionAtMs keep their own timestamp field.
FEATURE_FIELDS: Dict[str, str] = {
    "trade": "lastExecutedTradeAtMs",
    "lp_add": "lpLastAddAtMs",
    "news_post": "newsLastPostMs",
    "moltbook_post": "moltbookLastPostMs",
    "discussion_post": "moltbookDiscussionLastPostMs",
    "campaign_post": "lpCampaignLastPostMs",
    "mention_reply": "xMentionsLastReplyMs",
}


@dataclass
class TickGate:
    proceed: bool
    reason: str
    state: Dict[str, Any]


class RedeployCoordinator:
    def __init__(
        self,
        loop_interval_ms: int,
        tick_stale_ms: int,
        started_at_ms: int,
        logger: Optional[logging.Logger] = None,
    ):
        if tick_stale_ms <= 0:
            raise ValueError("tick_stale_ms must be positive")
        self.loop_interval_ms = loop_interval_ms
        self.tick_stale_ms = tick_stale_ms
        self.started_at_ms = started_at_ms
        self.logger = logger or get_logger()
        self._first_tick_checked = False

    def start_tick(self, state: Dict[str, Any], now_ms: int) -> TickGate:
        if not self._first_tick_checked:
            self._first_tick_checked = True
            skip, reason = should_skip_first_tick(state, self.started_at_ms, self.loop_interval_ms)
            if skip:
                self.logger.info(
                    "Tick skipped reason=%s last_completed_ms=%s started_at_ms=%s",
                    reason,
                    state.get("lastTickCompletedAtMs"),
                    self.started_at_ms,
                )
                return TickGate(proceed=False, reason=reason, state=state)

        since = timestamp_ms(state.get("tickInFlightSinceMs"))
        if since is not None:
            age_ms = now_ms - since
            if age_ms < self.tick_stale_ms:
                self.logger.info(
                    "Tick skipped reason=%s in_flight_since_ms=%s age_ms=%s",
                    REASON_TICK_IN_FLIGHT,
                    since,
                    age_ms,
                )
                return TickGate(proceed=False, reason=REASON_TICK_IN_FLIGHT, state=state)
            self.logger.warning(
                "Replacing stale tick marker in_flight_since_ms=%s age_ms=%s stale_after_ms=%s",
                since,
                age_ms,
                self.tick_stale_ms,
            )

        out = copy_state(state)
        out["tickInFlightSinceMs"] = now_ms
        return TickGate(proceed=True, reason="ok", state=out)

    def finish_tick(self, state: Dict[str, Any], now_ms: int) -> Dict[str, Any]:
        out = copy_state(state)
        out["tickInFlightSinceMs"] = None
        out["lastTickCompletedAtMs"] = now_ms
        return out


def should_skip_first_tick(state: Dict[str, Any], started_at_ms: int, loop_interval_ms: int) -> Tuple[bool, str]:
    last_completed = timestamp_ms(state.get("lastTickCompletedAtMs"))
    if last_completed is None:
        return False, "ok"
    if started_at_ms - last_completed < loop_interval_ms:
        return True, REASON_RECENT_COMPLETION
    return False, "ok"


def check_nonce(state: Dict[str, Any], current_nonce: int) -> Tuple[bool, str]:
    recorded = timestamp_ms(state.get("lastTxNonce"))
    if recorded is None:
        return True, "ok"
    if recorded != current_nonce:
        return False, REASON_NONCE_CHANGED
    return True, "ok"


def record_tx_nonce(state: Dict[str, Any], nonce: int) -> Dict[str, Any]:
    out = copy_state(state)
    out["lastTxNonce"] = int(nonce)
    return out


def last_action_ms(state: Dict[str, Any], feature: str) -> Optional[int]:
    field = FEATURE_FIELDS.get(feature)
    if field:
        return timestamp_ms(state.get(field))
    per_feature = state.get("featureLastActionAtMs")
    if not isinstance(per_feature, dict):
        return None
    return timestamp_ms(per_feature.get(feature))


def cooldown_status(
    state: Dict[str, Any],
    feature: str,
    now_ms: int,
    cooldown_ms: int,
) -> Tuple[bool, str, int]:
    last = last_action_ms(state, feature)
    if last is None or last <= 0:
        return True, "ok", 0
    elapsed = now_ms - last
    if elapsed < cooldown_ms:
        return False, REASON_COOLDOWN, cooldown_ms - elapsed
    return True, "ok", 0


def mark_feature_action(state: Dict[str, Any], feature: str, now_ms: int) -> Dict[str, Any]:
    out = copy_state(state)
    field = FEATURE_FIELDS.get(feature)
    if field:
        out[field] = now_ms
        return out
    per_feature = out.get("featureLastActionAtMs")
    if not isinstance(per_feature, dict):
        per_feature = {}
    per_feature[feature] = now_ms
    out["featureLastActionAtMs"] = per_feature
    return out
