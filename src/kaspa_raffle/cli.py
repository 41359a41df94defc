from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from typing import Tuple

from .config import Settings
from .dispersal import PrizeDispersal
from .engine import CompletionEngine
from .indexer import IndexerClient
from .rpc import KaspaBackend
from .scheduler import Scheduler
from .settlement import SettlementClient
from .store import JsonRaffleStore
from .verify import verify_raffle


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _settings(args: argparse.Namespace) -> Settings:
    return Settings.from_env(
        network_override=args.network,
        rpc_url_override=args.rpc_url,
        store_dir_override=args.store_dir,
    )


def build_engine(settings: Settings, timeout_s: float) -> Tuple[CompletionEngine, IndexerClient]:
    settings.require_treasury()
    store = JsonRaffleStore(settings.store_dir)
    settlement = SettlementClient(
        KaspaBackend(settings),
        commit_timeout_s=settings.commit_timeout_s,
        reveal_timeout_s=settings.reveal_timeout_s,
    )
    indexer = IndexerClient(settings.kaspa_api_url, settings.kasplex_api_url, timeout_s=timeout_s)
    dispersal = PrizeDispersal(
        store, settlement, reconciler=indexer, strict_reconcile=settings.reconcile_strict
    )
    return CompletionEngine(store, dispersal), indexer


async def _run(scheduler: Scheduler, indexer: IndexerClient) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt there.
            logging.getLogger("run").debug("Signal handlers unavailable on this platform")
    try:
        await scheduler.run(stop)
    finally:
        await indexer.close()


def cmd_run(args: argparse.Namespace) -> int:
    settings = _settings(args)
    engine, indexer = build_engine(settings, args.timeout)
    interval = args.interval if args.interval is not None else settings.interval_s
    asyncio.run(_run(Scheduler(engine, interval_s=interval), indexer))
    return 0


async def _tick(engine: CompletionEngine, indexer: IndexerClient):
    try:
        return await engine.run_pass()
    finally:
        await indexer.close()


def cmd_tick(args: argparse.Namespace) -> int:
    settings = _settings(args)
    engine, indexer = build_engine(settings, args.timeout)
    summary = asyncio.run(_tick(engine, indexer))
    print("========================================")
    print("🎟️  RAFFLE COMPLETION PASS")
    print("========================================")
    print(f"Completed     : {summary.completed}")
    print(f"Dispersed     : {summary.dispersed}")
    print(f"Partial       : {summary.partial}")
    print(f"Failed        : {summary.failed}")
    return 0 if summary.failed == 0 else 1


def cmd_show(args: argparse.Namespace) -> int:
    store = JsonRaffleStore(_settings(args).store_dir)
    raffle = store.get(args.raffle_id)
    if raffle is None:
        raise SystemExit(f"Raffle not found: {args.raffle_id}")
    print(json.dumps(raffle.to_document(), indent=2))
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    store = JsonRaffleStore(_settings(args).store_dir)
    raffle = store.get(args.raffle_id)
    if raffle is None:
        raise SystemExit(f"Raffle not found: {args.raffle_id}")
    result = verify_raffle(raffle)
    print("✅ RAFFLE VERIFIED")
    print(f"Status        : {result['status']}")
    print(f"Winners       : {', '.join(result['winners']) or '-'}")
    print(f"Share         : {result['share'] or '-'}")
    print(f"Paid winners  : {result['paid']} ({result['paid_total']})")
    print(f"Dispersed     : {result['prize_dispersed']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="kaspa-raffle",
        description="Raffle completion and prize settlement engine for Kaspa.",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--network", default=None, help="Override network id (else use env).")
    p.add_argument("--rpc-url", default=None, help="Override wRPC URL (else env or resolver).")
    p.add_argument("--store-dir", default=None, help="Override raffle store directory.")
    p.add_argument("--timeout", type=float, default=30.0, help="Indexer HTTP timeout seconds.")

    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("run", help="Run the completion scheduler until interrupted.")
    r.add_argument(
        "--interval", type=float, default=None, help="Seconds between passes (default 60)."
    )
    r.set_defaults(func=cmd_run)

    t = sub.add_parser("tick", help="Run a single completion-and-dispersal pass.")
    t.set_defaults(func=cmd_tick)

    s = sub.add_parser("show", help="Print a raffle document.")
    s.add_argument("--raffle-id", required=True, help="Raffle identifier.")
    s.set_defaults(func=cmd_show)

    v = sub.add_parser("verify", help="Audit a raffle's winners and prize ledger.")
    v.add_argument("--raffle-id", required=True, help="Raffle identifier.")
    v.set_defaults(func=cmd_verify)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)
    raise SystemExit(args.func(args))
