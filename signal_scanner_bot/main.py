from __future__ import annotations

import argparse
import asyncio
import logging

from .config import default_config, load_config
from .errors import RunAborted
from .formatters import format_batch, format_history, format_run_report, format_scan
from .runner import SignalRunner


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Signal Scanner - multi-timeframe signal scanner and outcome tracker")
    p.add_argument("--config", help="Path to YAML config (defaults when omitted)")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("scan", help="Run the scanner once and print alerts (nothing is stored)")
    sub.add_parser("signals", help="Run every enabled strategy once and store new signals")
    sub.add_parser("reconcile", help="Fill 24h outcomes for signals older than the window")

    bf = sub.add_parser("backfill", help="Fill missing 24h high/low on closed signals")
    bf.add_argument("--max-iterations", type=int, default=None)
    bf.add_argument("--batch-size", type=int, default=None)

    hist = sub.add_parser("history", help="Print the most recent stored signals with their 24h outcomes")
    hist.add_argument("--limit", type=int, default=20)

    sub.add_parser("run", help="Run signals on every closed clock candle; reconcile periodically")
    return p


async def _dispatch(runner: SignalRunner, args) -> None:
    if args.command == "scan":
        print(format_scan(await runner.scan()))
    elif args.command == "signals":
        print(format_run_report(await runner.run_signals()))
    elif args.command == "reconcile":
        print(format_batch("reconcile", await runner.reconcile()))
    elif args.command == "backfill":
        res = await runner.backfill(max_iterations=args.max_iterations, batch_size=args.batch_size)
        print(format_batch("backfill", res))
    elif args.command == "history":
        print(format_history(runner.history(args.limit)))
    elif args.command == "run":
        await runner.run_forever()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    cfg = load_config(args.config) if args.config else default_config()
    _setup_logging(cfg.app.log_level)

    runner = SignalRunner(cfg)

    async def _run() -> None:
        try:
            await _dispatch(runner, args)
        finally:
            # Close shared REST session cleanly.
            await runner.close()

    log = logging.getLogger("main")
    try:
        asyncio.run(_run())
        return 0
    except KeyboardInterrupt:
        return 0
    except RunAborted as e:
        log.error("run_aborted err=%s partial=%s", e, e.report)
        return 1
    except Exception as e:
        log.exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
