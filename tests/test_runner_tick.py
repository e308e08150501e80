import json
import tempfile
import unittest
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

from basedintern.autonomy.breaker import build_breakers
from basedintern.autonomy.config import Config
from basedintern.autonomy.guardrails import ACTION_BUY, ACTION_HOLD, Proposal
from basedintern.autonomy.outcomes import OUTCOME_SKIPPED
from basedintern.autonomy.redeploy import REASON_NONCE_CHANGED, REASON_TICK_IN_FLIGHT, RedeployCoordinator
from basedintern.autonomy.runner import Collaborators, rpc_collaborators, run_loop, run_tick
from basedintern.autonomy.state import StateStore, to_ms
from basedintern.autonomy.units import parse_ether


NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)
NOW_MS = to_ms(NOW)


def _config(state_path: Path, **overrides) -> Config:
    cfg = Config(
        state_path=state_path,
        backup_every_saves=10,
        loop_minutes=30,
        tick_stale_minutes=20,
        dry_run=False,
        trading_enabled=True,
        kill_switch=False,
        daily_trade_cap=2,
        min_interval_minutes=60,
        max_spend_eth_per_trade="0.01",
        eth_gas_reserve="0.0005",
        sell_fraction_bps=500,
        router_type="aerodrome",
        router_address="0x" + "11" * 20,
        pool_address=None,
        token_address=None,
        wallet_address=None,
        rpc_url=None,
        breaker_failure_threshold=3,
        breaker_cooldown_minutes=30,
        rate_limit_cooldown_minutes=15,
        log_level="INFO",
        log_path=None,
    )
    return replace(cfg, **overrides)


def _collaborators(action=ACTION_BUY, nonces=(5, 5), execute=None) -> Collaborators:
    return Collaborators(
        read_balances=MagicMock(return_value=(parse_ether("1"), 10_000)),
        read_nonce=MagicMock(side_effect=list(nonces)),
        propose=MagicMock(return_value=Proposal(action, "test")),
        execute_trade=execute or MagicMock(return_value="0xhash"),
    )


class RunTickTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "state.json"
        self.store = StateStore(self.path)
        self.coordinator = RedeployCoordinator(
            loop_interval_ms=30 * 60_000,
            tick_stale_ms=20 * 60_000,
            started_at_ms=NOW_MS,
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _tick(self, cfg, collaborators):
        return run_tick(cfg, self.store, self.coordinator, build_breakers(cfg), collaborators, now=NOW)

    def _on_disk(self):
        return json.loads(self.path.read_text(encoding="utf-8"))

    def test_buy_executes_and_records_trade(self):
        cfg = _config(self.path)
        seen_markers = []

        def _execute(decision):
            seen_markers.append(self._on_disk()["tickInFlightSinceMs"])
            return "0xhash"

        collab = _collaborators(execute=_execute)
        with self.assertLogs("basedintern.autonomy", level="INFO") as logs:
            report = self._tick(cfg, collab)

        self.assertTrue(report.started)
        self.assertTrue(report.executed)
        self.assertEqual(report.decision.buy_spend_wei, parse_ether("0.01"))
        self.assertEqual(seen_markers, [NOW_MS])
        self.assertTrue(any("TRADE EXECUTED" in line for line in logs.output))

        disk = self._on_disk()
        self.assertEqual(disk["tradesExecutedToday"], 1)
        self.assertEqual(disk["lastExecutedTradeAtMs"], NOW_MS)
        self.assertEqual(disk["lastTxNonce"], 6)
        self.assertEqual(disk["lastSeenEthWei"], str(parse_ether("1")))
        self.assertIsNone(disk["tickInFlightSinceMs"])
        self.assertEqual(disk["lastTickCompletedAtMs"], NOW_MS)

    def test_hold_finishes_without_executing(self):
        cfg = _config(self.path)
        collab = _collaborators(action=ACTION_HOLD)
        report = self._tick(cfg, collab)

        self.assertEqual(report.decision.action, ACTION_HOLD)
        self.assertFalse(report.executed)
        collab.execute_trade.assert_not_called()
        self.assertEqual(self._on_disk()["lastTxNonce"], 5)
        self.assertEqual(self._on_disk()["tradesExecutedToday"], 0)

    def test_kill_switch_blocks_execution(self):
        cfg = _config(self.path, kill_switch=True)
        collab = _collaborators()
        with self.assertLogs("basedintern.autonomy", level="INFO") as logs:
            report = self._tick(cfg, collab)

        self.assertEqual(report.decision.blocked_reason, "KILL_SWITCH=true")
        collab.execute_trade.assert_not_called()
        self.assertTrue(any("Guardrails blocked" in line for line in logs.output))

    def test_nonce_change_skips_execution(self):
        cfg = _config(self.path)
        collab = _collaborators(nonces=(5, 6))
        report = self._tick(cfg, collab)

        self.assertEqual(report.skip_reason, REASON_NONCE_CHANGED)
        self.assertFalse(report.executed)
        collab.execute_trade.assert_not_called()
        self.assertEqual(self._on_disk()["lastTxNonce"], 6)
        self.assertEqual(self._on_disk()["tradesExecutedToday"], 0)

    def test_fresh_in_flight_marker_skips_whole_tick(self):
        cfg = _config(self.path)
        state = self.store.load(now=NOW)
        state["tickInFlightSinceMs"] = NOW_MS - 60_000
        self.store.save(state)
        collab = _collaborators()

        report = self._tick(cfg, collab)

        self.assertFalse(report.started)
        self.assertEqual(report.skip_reason, REASON_TICK_IN_FLIGHT)
        collab.read_balances.assert_not_called()
        self.assertEqual(self._on_disk()["tickInFlightSinceMs"], NOW_MS - 60_000)

    def test_execution_failure_counts_against_chain_breaker(self):
        cfg = _config(self.path)
        collab = _collaborators(execute=MagicMock(side_effect=RuntimeError("reverted")))
        report = self._tick(cfg, collab)

        self.assertFalse(report.executed)
        self.assertTrue(report.errors)
        disk = self._on_disk()
        self.assertEqual(disk["chainPostFailureCount"], 1)
        self.assertEqual(disk["tradesExecutedToday"], 0)
        self.assertIsNone(disk["tickInFlightSinceMs"])

    def test_open_chain_breaker_skips_execution(self):
        cfg = _config(self.path)
        state = self.store.load(now=NOW)
        state["chainPostCircuitBreakerDisabledUntilMs"] = NOW_MS + 60_000
        self.store.save(state)
        collab = _collaborators()

        report = self._tick(cfg, collab)

        self.assertEqual(report.outcome.kind, OUTCOME_SKIPPED)
        collab.execute_trade.assert_not_called()

    def test_chain_read_failure_is_reported(self):
        cfg = _config(self.path)
        collab = _collaborators()
        collab.read_balances.side_effect = RuntimeError("rpc down")

        report = self._tick(cfg, collab)

        self.assertTrue(report.started)
        self.assertIsNone(report.decision)
        self.assertTrue(any("rpc down" in err for err in report.errors))
        self.assertIsNone(self._on_disk()["tickInFlightSinceMs"])

    def test_rpc_collaborators_require_wallet(self):
        with self.assertRaises(ValueError):
            rpc_collaborators(_config(self.path))

    def test_rpc_collaborators_read_through_reader(self):
        reader = MagicMock()
        reader.get_balance.return_value = 7
        reader.get_erc20_balance.return_value = 9
        reader.get_transaction_count.return_value = 3
        cfg = _config(self.path, wallet_address="0x" + "ab" * 20, token_address="0x" + "cd" * 20)

        collab = rpc_collaborators(cfg, reader=reader)

        self.assertEqual(collab.read_balances(), (7, 9))
        self.assertEqual(collab.read_nonce(), 3)
        self.assertEqual(collab.propose({}, (7, 9)).action, ACTION_HOLD)


class RunLoopTests(unittest.TestCase):
    def test_loop_sleeps_between_ticks_and_stops(self):
        with tempfile.TemporaryDirectory() as tmp:
            cfg = _config(Path(tmp) / "data" / "state.json", kill_switch=True)
            collab = Collaborators(
                read_balances=MagicMock(return_value=(0, 0)),
                read_nonce=MagicMock(return_value=1),
                propose=MagicMock(return_value=Proposal(ACTION_HOLD)),
                execute_trade=MagicMock(),
            )
            sleep_fn = MagicMock()

            run_loop(cfg, collab, max_ticks=2, sleep_fn=sleep_fn)

            sleep_fn.assert_called_once_with(30 * 60)
            self.assertEqual(collab.propose.call_count, 2)
            collab.execute_trade.assert_not_called()
            self.assertTrue(cfg.state_path.exists())


if __name__ == "__main__":
    unittest.main()
