from __future__ import annotations

import asyncio
import logging
import math
from typing import Awaitable, Callable, Optional, Sequence, Tuple

from .config import OutcomesConfig
from .errors import FetchError
from .models import BUY, CLOSED, BatchResult, Candle, Signal
from .retry import RetryPolicy
from .timefilter import HOUR_MS, now_ms as _now_ms, tf_ms

log = logging.getLogger("outcomes")


def result_24h(direction: str, entry: float, price: float) -> float:
    if direction == BUY:
        return price - entry
    return entry - price


def window_high_low(
    candles: Sequence[Candle],
    start_ms: int,
    end_ms: int,
    interval_ms: int,
    entry: float,
    price: float,
) -> Tuple[float, float]:
    """Extremes of candles overlapping [start_ms, end_ms], widened to cover entry and price."""
    highs = [entry, price]
    lows = [entry, price]
    for c in candles:
        if c.open_time_ms <= end_ms and c.open_time_ms + interval_ms > start_ms:
            highs.append(c.high)
            lows.append(c.low)
    return max(highs), min(lows)


class OutcomeReconciler:
    """24h reconciliation and the high/low backfill.

    Signals are handled one at a time. A failure on one signal is logged and
    counted and the batch moves on.
    """

    def __init__(
        self,
        provider,
        store,
        cfg: Optional[OutcomesConfig] = None,
        *,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.store = store
        self.cfg = cfg or OutcomesConfig()
        self.retry = retry or RetryPolicy(sleep=sleep)
        self.sleep = sleep

    @property
    def window_ms(self) -> int:
        return int(self.cfg.window_hours) * HOUR_MS

    async def window_extremes(self, sig: Signal, price: float) -> Tuple[float, float]:
        interval_ms = tf_ms(self.cfg.candle_interval)
        margin_ms = int(self.cfg.lookback_margin_hours) * HOUR_MS
        start = sig.generated_at_ms
        end = start + self.window_ms
        fetch_start = start - margin_ms
        fetch_end = end + margin_ms
        limit = min(1500, int(math.ceil((fetch_end - fetch_start) / interval_ms)) + 2)

        try:
            candles = await self.retry.call(
                lambda: self.provider.fetch_klines(
                    sig.symbol, self.cfg.candle_interval, limit, start_ms=fetch_start, end_ms=fetch_end
                ),
                label=f"outcome_klines:{sig.symbol}",
            )
        except FetchError as e:
            # extremes still cover entry and price
            log.warning("outcome_candles_unavailable id=%s symbol=%s err=%s", sig.id[:12], sig.symbol, e)
            candles = []
        return window_high_low(candles, start, end, interval_ms, sig.entry_price, price)

    async def reconcile(self, now_ms: Optional[int] = None) -> BatchResult:
        ts = _now_ms() if now_ms is None else now_ms
        res = BatchResult(iterations=1)
        due = self.store.find_signals_needing_reconciliation(ts - self.window_ms)
        log.info("reconcile_start due=%d", len(due))

        for n, sig in enumerate(due):
            if n > 0:
                await self.sleep(self.cfg.item_delay_ms / 1000.0)
            try:
                price = await self.retry.call(
                    lambda: self.provider.fetch_current_price(sig.symbol),
                    label=f"price:{sig.symbol}",
                )
                high, low = await self.window_extremes(sig, price)
                self.store.update_signal_outcome(
                    sig.id,
                    {
                        "price24h": price,
                        "result24h": result_24h(sig.direction, sig.entry_price, price),
                        "status24h": CLOSED,
                        "high24h": high,
                        "low24h": low,
                    },
                )
                res.updated += 1
            except Exception as e:
                res.errors += 1
                log.warning("reconcile_failed id=%s symbol=%s err=%s", sig.id[:12], sig.symbol, e)

        log.info("reconcile_done updated=%d errors=%d", res.updated, res.errors)
        return res

    async def backfill_pass(self, limit: Optional[int] = None) -> BatchResult:
        res = BatchResult(iterations=1)
        batch = self.store.find_signals_missing_high_low(limit or self.cfg.batch_size)

        for n, sig in enumerate(batch):
            if n > 0:
                await self.sleep(self.cfg.item_delay_ms / 1000.0)
            try:
                price = sig.price24h
                if price is None:
                    price = await self.retry.call(
                        lambda: self.provider.fetch_current_price(sig.symbol),
                        label=f"price:{sig.symbol}",
                    )
                high, low = await self.window_extremes(sig, price)
                self.store.update_signal_outcome(sig.id, {"high24h": high, "low24h": low})
                res.updated += 1
            except Exception as e:
                res.errors += 1
                log.warning("backfill_failed id=%s symbol=%s err=%s", sig.id[:12], sig.symbol, e)
        return res

    async def backfill(self, max_iterations: Optional[int] = None, batch_size: Optional[int] = None) -> BatchResult:
        """Repeat passes until one updates nothing or the iteration cap is hit."""
        cap = int(max_iterations or self.cfg.max_iterations)
        total = BatchResult()
        while total.iterations < cap:
            if total.iterations > 0:
                await self.sleep(self.cfg.chunk_delay_ms / 1000.0)
            res = await self.backfill_pass(batch_size)
            total.iterations += 1
            total.updated += res.updated
            total.errors += res.errors
            log.info("backfill_pass n=%d updated=%d errors=%d", total.iterations, res.updated, res.errors)
            if res.updated == 0:
                break

        log.info("backfill_done iterations=%d updated=%d errors=%d", total.iterations, total.updated, total.errors)
        return total
