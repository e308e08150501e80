from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from basedintern.chain_reader import RpcChainReader

from .breaker import CircuitBreaker, build_breakers
from .config import Config, loop_interval_ms, tick_stale_ms
from .guardrails import ACTION_HOLD, Decision, DecisionContext, Proposal, decide
from .logging_utils import get_logger, setup_logging
from .outcomes import Outcome
from .redeploy import REASON_NONCE_CHANGED, RedeployCoordinator, check_nonce, record_tx_nonce
from .state import StateStore, apply_chain_snapshot, now_ms, record_trade, to_ms, utc_now
from .units import format_ether


Balances = Tuple[int, int]


@dataclass
class Collaborators:
    """Side-effecting dependencies of a tick.

    ``read_balances`` returns ``(eth_wei, intern_amount)``; ``read_nonce``
    returns the wallet's pending transaction count; ``execute_trade`` may
    return an :class:`Outcome` or raise ``RateLimitedError``.
    """

    read_balances: Callable[[], Balances]
    read_nonce: Callable[[], int]
    propose: Callable[[Dict[str, Any], Balances], Proposal]
    execute_trade: Callable[[Decision], Any]


@dataclass
class TickReport:
    started: bool
    skip_reason: Optional[str] = None
    decision: Optional[Decision] = None
    outcome: Optional[Outcome] = None
    executed: bool = False
    errors: List[str] = field(default_factory=list)
    state: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "skipReason": self.skip_reason,
            "decision": self.decision.to_dict() if self.decision else None,
            "outcome": self.outcome.kind if self.outcome else None,
            "executed": self.executed,
            "errors": list(self.errors),
        }


def hold_proposer(state: Dict[str, Any], balances: Balances) -> Proposal:  # noqa: ARG001
    return Proposal(action=ACTION_HOLD, rationale="no strategy configured")


def _execution_unavailable(decision: Decision) -> Any:
    raise RuntimeError(f"Trade execution is not available action={decision.action}")


def rpc_collaborators(
    cfg: Config,
    reader: Optional[RpcChainReader] = None,
    propose: Optional[Callable[[Dict[str, Any], Balances], Proposal]] = None,
    execute_trade: Optional[Callable[[Decision], Any]] = None,
) -> Collaborators:
    if not cfg.wallet_address:
        raise ValueError("WALLET_ADDRESS is required to read balances")
    if reader is None:
        if not cfg.rpc_url:
            raise ValueError("RPC_URL is required to read balances")
        reader = RpcChainReader(cfg.rpc_url)
    wallet = cfg.wallet_address

    def read_balances() -> Balances:
        eth_wei = reader.get_balance(wallet)
        intern_amount = reader.get_erc20_balance(cfg.token_address, wallet) if cfg.token_address else 0
        return eth_wei, intern_amount

    return Collaborators(
        read_balances=read_balances,
        read_nonce=lambda: reader.get_transaction_count(wallet),
        propose=propose or hold_proposer,
        execute_trade=execute_trade or _execution_unavailable,
    )


def _finish(
    store: StateStore,
    coordinator: RedeployCoordinator,
    report: TickReport,
    state: Dict[str, Any],
    finished_ms: int,
) -> TickReport:
    state = coordinator.finish_tick(state, finished_ms)
    if not store.save(state):
        report.errors.append("state_save_failed")
    report.state = state
    return report


def run_tick(
    cfg: Config,
    store: StateStore,
    coordinator: RedeployCoordinator,
    breakers: Dict[str, CircuitBreaker],
    collaborators: Collaborators,
    now: Optional[datetime] = None,
    logger: Optional[logging.Logger] = None,
) -> TickReport:
    """Run one load, decide, execute and persist cycle.

    Collaborator failures end up in ``TickReport.errors``; only a fatal
    ``StateDirectoryError`` propagates.
    """
    logger = logger or get_logger()
    at = now or utc_now()
    at_ms = to_ms(at)
    clock_ms: Callable[[], int] = now_ms if now is None else (lambda: at_ms)

    state = store.load(now=at)
    gate = coordinator.start_tick(state, at_ms)
    if not gate.proceed:
        return TickReport(started=False, skip_reason=gate.reason, state=state)

    state = gate.state
    # The in-flight marker must be on disk before any side effect.
    if not store.save(state):
        logger.warning("Tick skipped reason=marker_not_persisted path=%s", store.path)
        return TickReport(started=False, skip_reason="marker_not_persisted", state=state)

    report = TickReport(started=True)
    try:
        balances = collaborators.read_balances()
        tick_nonce = collaborators.read_nonce()
    except Exception as e:
        logger.warning("Chain read failed error=%s", e)
        report.errors.append(f"chain_read_failed: {e}")
        return _finish(store, coordinator, report, state, clock_ms())

    eth_wei, intern_amount = balances
    state = apply_chain_snapshot(
        state,
        {"lastSeenNonce": tick_nonce, "lastSeenEthWei": str(eth_wei), "lastSeenTokenRaw": str(intern_amount)},
    )
    state = record_tx_nonce(state, tick_nonce)
    logger.info(
        "Balances eth=%s intern_raw=%s nonce=%s",
        format_ether(eth_wei),
        intern_amount,
        tick_nonce,
    )

    try:
        proposal = collaborators.propose(state, balances)
    except Exception as e:
        logger.warning("Proposal failed; holding error=%s", e)
        report.errors.append(f"propose_failed: {e}")
        proposal = Proposal(action=ACTION_HOLD, rationale="proposal failed")

    decision = decide(
        proposal,
        DecisionContext(cfg=cfg, state=state, now=at, eth_wei=eth_wei, intern_amount=intern_amount),
    )
    report.decision = decision
    if decision.blocked_reason:
        logger.info(
            "Guardrails blocked proposed=%s reason=%s",
            proposal.action,
            decision.blocked_reason,
        )
    if not decision.should_execute:
        logger.info("Decision action=%s rationale=%s", decision.action, decision.rationale)
        return _finish(store, coordinator, report, state, clock_ms())

    try:
        current_nonce = collaborators.read_nonce()
    except Exception as e:
        logger.warning("Tick skipped reason=nonce_unavailable error=%s", e)
        report.errors.append(f"nonce_read_failed: {e}")
        return _finish(store, coordinator, report, state, clock_ms())
    nonce_ok, nonce_reason = check_nonce(state, current_nonce)
    if not nonce_ok:
        logger.warning(
            "Tick skipped reason=%s expected_nonce=%s current_nonce=%s",
            nonce_reason,
            state.get("lastTxNonce"),
            current_nonce,
        )
        report.skip_reason = REASON_NONCE_CHANGED
        return _finish(store, coordinator, report, record_tx_nonce(state, current_nonce), clock_ms())

    state, outcome = breakers["chain_post"].call(
        state,
        lambda: collaborators.execute_trade(decision),
        at_ms,
        logger=logger,
    )
    report.outcome = outcome
    if outcome.ok:
        state = record_trade(state, at)
        state = record_tx_nonce(state, current_nonce + 1)
        report.executed = True
        logger.info(
            "TRADE EXECUTED action=%s buy_spend_wei=%s sell_amount=%s result=%s",
            decision.action,
            decision.buy_spend_wei,
            decision.sell_amount,
            outcome.value,
        )
    else:
        report.errors.append(f"execute_{outcome.kind}: {outcome.reason}")
    return _finish(store, coordinator, report, state, clock_ms())


def run_loop(
    cfg: Config,
    collaborators: Collaborators,
    max_ticks: Optional[int] = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> None:
    logger = setup_logging(cfg)
    store = StateStore(cfg.state_path, backup_every=cfg.backup_every_saves, logger=logger)
    coordinator = RedeployCoordinator(
        loop_interval_ms=loop_interval_ms(cfg),
        tick_stale_ms=tick_stale_ms(cfg),
        started_at_ms=now_ms(),
        logger=logger,
    )
    breakers = build_breakers(cfg)

    logger.info(
        (
            "Agent loop starting loop_minutes=%s dry_run=%s trading_enabled=%s kill_switch=%s "
            "daily_trade_cap=%s min_interval_minutes=%s router_type=%s state_path=%s"
        ),
        cfg.loop_minutes,
        cfg.dry_run,
        cfg.trading_enabled,
        cfg.kill_switch,
        cfg.daily_trade_cap,
        cfg.min_interval_minutes,
        cfg.router_type,
        cfg.state_path,
    )
    if cfg.log_path:
        logger.info("File logging enabled path=%s", cfg.log_path)

    ticks = 0
    sleep_seconds = cfg.loop_minutes * 60
    while True:
        report = run_tick(cfg, store, coordinator, breakers, collaborators, logger=logger)
        ticks += 1
        if report.errors:
            logger.warning("Tick finished with errors count=%s errors=%s", len(report.errors), report.errors)
        if max_ticks is not None and ticks >= max_ticks:
            logger.info("Agent loop stopping ticks=%s", ticks)
            return
        logger.info("Sleeping seconds=%s reason=%s", sleep_seconds, report.skip_reason or "loop_interval")
        sleep_fn(sleep_seconds)
