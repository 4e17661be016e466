from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .config import Config
from .errors import RunAborted
from .models import BatchResult, RunReport, Signal
from .outcomes import OutcomeReconciler
from .providers.binance import BinanceProvider, KlineEvent
from .retry import RetryPolicy
from .signal_engine import SignalEngine
from .store import open_store
from .timefilter import MINUTE_MS

log = logging.getLogger("runner")


class SignalRunner:
    """Wires provider, store, engine and reconciler for the CLI jobs."""

    def __init__(self, cfg: Config, *, provider=None, store=None):
        self.cfg = cfg
        self.provider = provider or BinanceProvider(
            market=cfg.provider.market,
            rest_timeout_s=cfg.provider.rest_timeout_s,
            ws_heartbeat_s=cfg.provider.ws_heartbeat_s,
        )
        self.store = store if store is not None else open_store(cfg.store.path)
        self.engine = SignalEngine(cfg, self.provider, self.store)
        self.outcomes = OutcomeReconciler(
            self.provider,
            self.store,
            cfg.outcomes,
            retry=RetryPolicy.from_delay_ms(cfg.scanner.request_delay_ms, cfg.scanner.max_retries),
        )
        self._last_close: Dict[Tuple[str, str], int] = {}
        self._last_reconcile_ms: Optional[int] = None
        self._metrics = {
            "cycles_total": 0,
            "signals_created_total": 0,
            "cycle_errors_total": 0,
        }

    async def close(self) -> None:
        await self.provider.close()

    async def scan(self, now_ms: Optional[int] = None) -> RunReport:
        return await self.engine.scanner.run(now_ms)

    async def run_signals(self, now_ms: Optional[int] = None) -> RunReport:
        return await self.engine.run_all(now_ms)

    async def reconcile(self, now_ms: Optional[int] = None) -> BatchResult:
        return await self.outcomes.reconcile(now_ms)

    async def backfill(self, max_iterations: Optional[int] = None, batch_size: Optional[int] = None) -> BatchResult:
        return await self.outcomes.backfill(max_iterations=max_iterations, batch_size=batch_size)

    def history(self, limit: int = 20) -> List[Signal]:
        """Most recent stored signals, newest first."""
        rows = sorted(self.store.all(), key=lambda s: s.generated_at_ms, reverse=True)
        return rows[: max(0, int(limit))]

    def _is_duplicate(self, evt: KlineEvent) -> bool:
        key = (evt.symbol, evt.timeframe)
        last = self._last_close.get(key)
        ct = evt.candle.close_time_ms
        if last is not None and ct <= last:
            return True
        self._last_close[key] = ct
        return False

    def _reconcile_due(self, now_ms: int) -> bool:
        if self._last_reconcile_ms is None:
            return True
        return now_ms - self._last_reconcile_ms >= self.cfg.runner.reconcile_every_minutes * MINUTE_MS

    async def cycle(self, now_ms: int) -> None:
        self._metrics["cycles_total"] += 1
        try:
            report = await self.run_signals(now_ms)
            self._metrics["signals_created_total"] += report.created
        except RunAborted as e:
            self._metrics["cycle_errors_total"] += 1
            log.warning("cycle_aborted err=%s", e)

        if self._reconcile_due(now_ms):
            self._last_reconcile_ms = now_ms
            await self.reconcile(now_ms)
            await self.backfill()

        log.info(
            "cycle_done cycles_total=%d signals_created_total=%d cycle_errors_total=%d",
            self._metrics["cycles_total"],
            self._metrics["signals_created_total"],
            self._metrics["cycle_errors_total"],
        )

    async def run_forever(self) -> None:
        symbol = self.cfg.runner.clock_symbol.upper()
        tf = self.cfg.runner.clock_timeframe
        log.info("runner_start clock=%s@%s strategies=%d", symbol, tf, len(self.engine.strategies))

        async for evt in self.provider.stream_klines([symbol], [tf]):
            if self._is_duplicate(evt):
                continue
            await self.cycle(evt.candle.close_time_ms + 1)
