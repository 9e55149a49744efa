"""Operator entrypoint.

Usage:
  python -m tradecore.app.main locks                        # list active locks
  python -m tradecore.app.main lock AAPL 60 "manual pause"   # lock a symbol (or "*") for N minutes
  python -m tradecore.app.main unlock AAPL                  # release every lock on a symbol
  python -m tradecore.app.main sweep                        # deactivate expired locks
  python -m tradecore.app.main positions                    # list open positions
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from tradecore.app.container import Container, build_container
from tradecore.infrastructure.logging.logging import configure_logging, get_logger
from tradecore.infrastructure.utils.config import load_config
from tradecore.services.risk.pair_locks import LOCK_SIDES


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser("tradecore")
    parser.add_argument("--config", type=Path, default=None, help="YAML config path")
    parser.add_argument("--plain-logs", action="store_true", help="Human-readable logs instead of JSON")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("locks", help="List active locks")

    lock = sub.add_parser("lock", help="Lock a symbol ('*' for global)")
    lock.add_argument("symbol")
    lock.add_argument("minutes", type=float)
    lock.add_argument("reason")
    lock.add_argument("--side", choices=LOCK_SIDES, default="*")

    unlock = sub.add_parser("unlock", help="Release all locks for a symbol")
    unlock.add_argument("symbol")

    sub.add_parser("sweep", help="Deactivate expired locks")
    sub.add_parser("positions", help="List open positions")
    return parser


def run(args: argparse.Namespace, container: Container) -> int:
    store = container.lock_store

    if args.command == "locks":
        active = store.list_active()
        for lk in active:
            print(f"{lk.scope:<10} side={lk.side:<5} until={lk.lock_end}  {lk.reason or ''}")
        if not active:
            print("no active locks")
        return 0

    if args.command == "lock":
        lk = store.lock(args.symbol, args.minutes, args.reason, args.side)
        print(f"locked {lk.scope} until {lk.lock_end}")
        return 0

    if args.command == "unlock":
        print(f"released {store.unlock(args.symbol)} lock(s) on {args.symbol}")
        return 0

    if args.command == "sweep":
        print(f"deactivated {store.sweep_expired()} expired lock(s)")
        return 0

    if args.command == "positions":
        positions = container.positions.list_all()
        for p in positions:
            stop = p.trailing_stop if p.trailing_stop is not None else p.stop_loss
            print(
                f"{p.symbol:<8} shares={p.shares:g} entry={p.entry_price:.2f} "
                f"current={p.current_price if p.current_price is not None else '-'} "
                f"stop={stop if stop is not None else '-'} tp={p.take_profit if p.take_profit is not None else '-'} "
                f"partials={p.partial_exit_count}"
            )
        if not positions:
            print("no open positions")
        return 0

    return 2


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    config = load_config(args.config)
    configure_logging(config.log_level, json_logs=not args.plain_logs)
    log = get_logger("main")
    log.info("config_loaded", environment=config.environment, dry_run=config.execution.dry_run)

    container = build_container(config)
    try:
        return run(args, container)
    finally:
        container.close()


if __name__ == "__main__":
    raise SystemExit(main())
