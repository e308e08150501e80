import argparse
import json
from typing import Any

from basedintern.autonomy.config import ConfigError, load_config
from basedintern.autonomy.guardrails import DecisionContext, Proposal, decide
from basedintern.autonomy.logging_utils import setup_logging
from basedintern.autonomy.migrations import CURRENT_SCHEMA_VERSION, document_version
from basedintern.autonomy.runner import rpc_collaborators, run_loop
from basedintern.autonomy.state import StateStore, utc_now
from basedintern.autonomy.status import build_status
from basedintern.autonomy.storage import StateDirectoryError
from basedintern.autonomy.units import parse_ether


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _store(cfg) -> StateStore:
    return StateStore(cfg.state_path, backup_every=cfg.backup_every_saves, logger=setup_logging(cfg))


def cmd_status(_: argparse.Namespace) -> None:
    """Print counters, breakers and redeploy markers without writing the state file."""
    cfg = load_config()
    now = utc_now()
    state = _store(cfg).load(now=now, persist=False)
    print_json(build_status(state, cfg, now))


def cmd_migrate(_: argparse.Namespace) -> None:
    """Load the state file, upgrade it and write it back at the current schema version."""
    cfg = load_config()
    store = _store(cfg)
    state = store.load()
    from_version = document_version(state)
    saved = store.save(state)
    print_json(
        {
            "path": str(store.path),
            "saved": saved,
            "fromSchemaVersion": from_version,
            "schemaVersion": CURRENT_SCHEMA_VERSION if saved else from_version,
        }
    )


def cmd_decide(args: argparse.Namespace) -> None:
    """Run the guardrails against the stored state. Nothing is executed.

    Example:

        basedintern decide --action BUY --eth 0.02 --intern 0 --rationale "dip"
    """
    cfg = load_config()
    now = utc_now()
    state = _store(cfg).load(now=now, persist=False)
    try:
        intern_amount = int(args.intern)
    except ValueError:
        raise SystemExit(f"--intern must be an integer amount in base units, got {args.intern!r}")
    decision = decide(
        Proposal(action=args.action, rationale=args.rationale),
        DecisionContext(
            cfg=cfg,
            state=state,
            now=now,
            eth_wei=parse_ether(args.eth),
            intern_amount=intern_amount,
        ),
    )
    print_json(decision.to_dict())


def cmd_run(args: argparse.Namespace) -> None:
    """Run the tick loop with balances read over RPC_URL. Proposals always HOLD."""
    cfg = load_config()
    run_loop(cfg, rpc_collaborators(cfg), max_ticks=args.ticks)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Inspect and maintain the Based Intern agent state.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_status = subparsers.add_parser("status", help="Show state counters, breakers and redeploy markers")
    p_status.set_defaults(func=cmd_status)

    p_migrate = subparsers.add_parser("migrate", help="Upgrade the state file to the current schema")
    p_migrate.set_defaults(func=cmd_migrate)

    p_decide = subparsers.add_parser("decide", help="Evaluate a proposal against the guardrails")
    p_decide.add_argument("--action", required=True, help="BUY, SELL or HOLD")
    p_decide.add_argument("--eth", required=True, help="Wallet ETH balance, e.g. '0.02'")
    p_decide.add_argument("--intern", required=True, help="INTERN balance in base units")
    p_decide.add_argument("--rationale", default="", help="Free-text reason for the proposal")
    p_decide.set_defaults(func=cmd_decide)

    p_run = subparsers.add_parser("run", help="Run the tick loop")
    p_run.add_argument("--ticks", type=int, default=None, help="Stop after this many ticks")
    p_run.set_defaults(func=cmd_run)

    return parser


def main() -> None:
    try:
        parser = build_parser()
        args = parser.parse_args()
        args.func(args)
    except (ConfigError, StateDirectoryError) as e:
        raise SystemExit(str(e))
    except Exception as e:
        # Catch-all to avoid noisy tracebacks for common runtime issues
        raise SystemExit(f"Error: {e}")


if __name__ == "__main__":
    main()
