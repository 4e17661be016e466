from __future__ import annotations

import argparse
import asyncio
import logging

from signal_scanner_bot.config import default_config, load_config
from signal_scanner_bot.formatters import format_batch
from signal_scanner_bot.main import _setup_logging
from signal_scanner_bot.runner import SignalRunner


def main():
    p = argparse.ArgumentParser(description="Fill missing high24h/low24h on closed signals")
    p.add_argument("--config", help="Path to YAML config")
    p.add_argument("--max-iterations", type=int, default=None)
    p.add_argument("--batch-size", type=int, default=None)
    args = p.parse_args()

    cfg = load_config(args.config) if args.config else default_config()
    _setup_logging(cfg.app.log_level)
    runner = SignalRunner(cfg)

    async def _run():
        try:
            missing = runner.store.count_missing_high_low()
            print(f"Signals missing high24h/low24h: {missing}")
            if missing == 0:
                return
            res = await runner.backfill(max_iterations=args.max_iterations, batch_size=args.batch_size)
            print(format_batch("backfill", res))
            print(f"Still missing: {runner.store.count_missing_high_low()}")
        finally:
            await runner.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logging.getLogger("fill_high_low").info("interrupted")


if __name__ == "__main__":
    main()
