"""Turns a proposed trade into an enforceable decision.

``decide`` is pure: it reads the config, the state counters, live balances
and the clock from its arguments and never performs I/O. Guards run in a
fixed order and the first one that fails names the block reason.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from .config import Config, venue_configured
from .migrations import timestamp_ms
from .state import day_count, to_ms
from .units import parse_ether


ACTION_BUY = "BUY"
ACTION_SELL = "SELL"
ACTION_HOLD = "HOLD"
VALID_ACTIONS = {ACTION_BUY, ACTION_SELL, ACTION_HOLD}

BPS_DENOMINATOR = 10_000


def normalize_action(value: Any) -> str:
    action = str(value or "").strip().upper()
    if action in VALID_ACTIONS:
        return action
    return ACTION_HOLD


@dataclass
class Proposal:
    action: str
    rationale: str = ""

    def __post_init__(self) -> None:
        self.action = normalize_action(self.action)


@dataclass
class DecisionContext:
    cfg: Config
    state: Dict[str, Any]
    now: datetime
    eth_wei: int
    intern_amount: int


@dataclass
class Decision:
    action: str
    rationale: str
    blocked_reason: Optional[str] = None
    buy_spend_wei: Optional[int] = None
    sell_amount: Optional[int] = None
    should_execute: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "rationale": self.rationale,
            "blockedReason": self.blocked_reason,
            "buySpendWei": str(self.buy_spend_wei) if self.buy_spend_wei is not None else None,
            "sellAmount": str(self.sell_amount) if self.sell_amount is not None else None,
            "shouldExecute": self.should_execute,
        }


def hold(blocked_reason: Optional[str], rationale: str) -> Decision:
    return Decision(action=ACTION_HOLD, rationale=rationale, blocked_reason=blocked_reason)


def _trade_gate(ctx: DecisionContext) -> Optional[str]:
    cfg = ctx.cfg
    if cfg.kill_switch:
        return "KILL_SWITCH=true"
    if not cfg.trading_enabled:
        return "TRADING_ENABLED=false"
    if cfg.dry_run:
        return "DRY_RUN=true"
    if not venue_configured(cfg):
        return "router not configured (set ROUTER_TYPE + ROUTER_ADDRESS)"

    trades_today = day_count(ctx.state, "trades", ctx.now)
    if trades_today >= cfg.daily_trade_cap:
        return f"daily cap reached ({trades_today}/{cfg.daily_trade_cap})"

    last_trade_ms = timestamp_ms(ctx.state.get("lastExecutedTradeAtMs"))
    if last_trade_ms is not None:
        elapsed_min = (to_ms(ctx.now) - last_trade_ms) / 1000 / 60
        if elapsed_min < cfg.min_interval_minutes:
            return f"min interval not met ({elapsed_min:.1f}m < {cfg.min_interval_minutes}m)"
    return None


def _size(action: str, cfg: Config, eth_wei: int, intern_amount: int, rationale: str) -> Decision:
    if action == ACTION_BUY:
        cap_wei = parse_ether(cfg.max_spend_eth_per_trade)
        if cap_wei <= 0:
            return hold("MAX_SPEND_ETH_PER_TRADE not positive", rationale)
        reserve_wei = max(0, parse_ether(cfg.eth_gas_reserve))
        available = max(0, eth_wei - reserve_wei)
        spend = min(available, cap_wei)
        if spend <= 0:
            return hold("insufficient ETH", rationale)
        return Decision(
            action=ACTION_BUY,
            rationale=rationale,
            buy_spend_wei=spend,
            should_execute=True,
        )

    sell = (max(0, intern_amount) * cfg.sell_fraction_bps) // BPS_DENOMINATOR
    if sell <= 0:
        return hold("no INTERN to sell (or fraction too small)", rationale)
    return Decision(
        action=ACTION_SELL,
        rationale=rationale,
        sell_amount=sell,
        should_execute=True,
    )


def decide(proposal: Proposal, ctx: DecisionContext) -> Decision:
    action = normalize_action(proposal.action)
    if action == ACTION_HOLD:
        return hold(None, proposal.rationale)

    blocked = _trade_gate(ctx)
    if blocked:
        return hold(blocked, proposal.rationale)
    return _size(action, ctx.cfg, ctx.eth_wei, ctx.intern_amount, proposal.rationale)
