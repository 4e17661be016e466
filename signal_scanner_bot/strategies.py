from __future__ import annotations

import abc
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Type

from .config import BreakoutConfig, RegimeConfig, RiskConfig, StrategyEntry
from .indicators import atr, closes_of, macd, pmo, rsi_wilder
from .models import LONG, SHORT, Candle, StrategyResult, side_to_direction
from .mtf_strategy import NONE, MultiTimeframeEvaluator, align_series, strength_for
from .risk import trade_levels
from .timefilter import AllowedHours, closed_candles

log = logging.getLogger("strategies")

Fetch = Callable[[str, str, int], Awaitable[List[Candle]]]

SCANNER_APLUS = "SCANNER_APLUS"
DEFAULT_ALLOWED_HOURS = [8, 12, 16, 20, 23]


def clamp_strength(value: float, lo: int = 0, hi: int = 100) -> int:
    return int(max(lo, min(hi, round(value))))


class Strategy(abc.ABC):
    """Base for strategies that look at one symbol on one timeframe."""

    name = ""
    timeframes: Tuple[str, ...] = ()
    hours_gated = False

    def __init__(
        self,
        params: Optional[Dict[str, Any]] = None,
        *,
        risk_cfg: Optional[RiskConfig] = None,
        regime_cfg: Optional[RegimeConfig] = None,
        breakout_cfg: Optional[BreakoutConfig] = None,
    ):
        self.params = dict(params or {})
        self.risk_cfg = risk_cfg or RiskConfig()
        self.regime_cfg = regime_cfg or RegimeConfig()
        self.breakout_cfg = breakout_cfg or BreakoutConfig()
        self.allowed_hours = AllowedHours(
            hours=list(self.params.get("allowed_hours", DEFAULT_ALLOWED_HOURS)),
            timezone=str(self.params.get("timezone", "UTC")),
            enabled=self.hours_gated,
        )

    def supports(self, timeframe: str) -> bool:
        return not self.timeframes or timeframe in self.timeframes

    @abc.abstractmethod
    async def evaluate(self, symbol: str, timeframe: str, fetch: Fetch, now_ms: int) -> Optional[StrategyResult]:
        """Result for the latest bar closed at ``now_ms``, or None."""

    async def _closed(self, fetch: Fetch, symbol: str, timeframe: str, limit: int, now_ms: int) -> List[Candle]:
        return closed_candles(await fetch(symbol, timeframe, limit), now_ms)

    def _result(
        self,
        candles: Sequence[Candle],
        side: str,
        strength: float,
        extra: Dict[str, Any],
    ) -> Optional[StrategyResult]:
        atr_value = atr(candles, 14)
        if atr_value is None:
            return None
        entry = candles[-1].close
        levels = trade_levels(
            candles,
            side,
            atr_value,
            entry,
            lookback=self.risk_cfg.structure_lookback,
            atr_mult=self.risk_cfg.stop_atr_mult,
            multiples=self.risk_cfg.target_r_multiples,
        )
        return StrategyResult(
            direction=side_to_direction(side),
            entry_price=entry,
            stop_loss=levels.stop,
            target1=levels.target1,
            target2=levels.target2,
            target3=levels.target3,
            strength=clamp_strength(strength),
            extra_info=extra,
        )


class RsiStrategy(Strategy):
    name = "RSI"
    timeframes = ("4h",)

    async def evaluate(self, symbol: str, timeframe: str, fetch: Fetch, now_ms: int) -> Optional[StrategyResult]:
        period = int(self.params.get("period", 14))
        overbought = float(self.params.get("overbought", 69))
        oversold = float(self.params.get("oversold", 30))

        candles = await self._closed(fetch, symbol, timeframe, period + 50, now_ms)
        value = rsi_wilder(closes_of(candles), period)
        if value is None:
            return None

        extra = {"rsi": value, "overbought": overbought, "oversold": oversold}
        if value < oversold:
            return self._result(candles, LONG, (oversold - value) / oversold * 100.0, extra)
        if value > overbought:
            return self._result(candles, SHORT, (value - overbought) / (100.0 - overbought) * 100.0, extra)
        return None


class MacdHistogramStrategy(Strategy):
    """Early entry as the histogram converges on the zero line."""

    name = "MACD_HISTOGRAM"
    timeframes = ("4h",)
    hours_gated = True

    async def evaluate(self, symbol: str, timeframe: str, fetch: Fetch, now_ms: int) -> Optional[StrategyResult]:
        if not self.allowed_hours.within(now_ms):
            return None
        fast = int(self.params.get("fast_period", 12))
        slow = int(self.params.get("slow_period", 26))
        signal = int(self.params.get("signal_period", 9))
        thr = float(self.params.get("early_entry_threshold", 0.001))

        candles = await self._closed(fetch, symbol, timeframe, slow + signal + 50, now_ms)
        closes = closes_of(candles)
        cur = macd(closes, fast, slow, signal)
        prev = macd(closes[:-1], fast, slow, signal)
        if cur is None or prev is None:
            return None

        hist = cur.histogram
        extra = {"histogram": hist, "prev_histogram": prev.histogram, "macd": cur.macd, "signal": cur.signal}
        strength = clamp_strength(abs(hist) * 1000, 60, 100)
        if prev.histogram < -thr and -thr < hist <= thr:
            return self._result(candles, LONG, strength, extra)
        if prev.histogram > thr and -thr <= hist < thr:
            return self._result(candles, SHORT, strength, extra)
        return None


class PmoStrategy(Strategy):
    name = "PMO"
    timeframes = ("4h",)
    hours_gated = True

    async def evaluate(self, symbol: str, timeframe: str, fetch: Fetch, now_ms: int) -> Optional[StrategyResult]:
        if not self.allowed_hours.within(now_ms):
            return None
        roc = int(self.params.get("roc_period", 10))
        fast = int(self.params.get("fast_period", 5))
        slow = int(self.params.get("slow_period", 35))

        candles = await self._closed(fetch, symbol, timeframe, roc + fast + slow + 50, now_ms)
        closes = closes_of(candles)
        cur = pmo(closes, roc, fast, slow)
        prev = pmo(closes[:-1], roc, fast, slow)
        if cur is None or prev is None:
            return None

        extra = {"pmo": cur.pmo, "prev_pmo": prev.pmo}
        strength = clamp_strength(abs(cur.pmo) * 10, 60, 100)
        if prev.pmo < 0 < cur.pmo:
            return self._result(candles, LONG, strength, extra)
        if prev.pmo > 0 > cur.pmo:
            return self._result(candles, SHORT, strength, extra)
        return None


class MacdHistogramPmoStrategy(Strategy):
    """Histogram zero cross, filtered by where PMO sits."""

    name = "MACD_HISTOGRAM_PMO"
    timeframes = ("1h",)

    async def evaluate(self, symbol: str, timeframe: str, fetch: Fetch, now_ms: int) -> Optional[StrategyResult]:
        fast = int(self.params.get("fast_period", 12))
        slow = int(self.params.get("slow_period", 26))
        signal = int(self.params.get("signal_period", 9))
        roc = int(self.params.get("roc_period", 10))
        pmo_fast = int(self.params.get("pmo_fast_period", 5))
        pmo_slow = int(self.params.get("pmo_slow_period", 35))
        buy_thr = float(self.params.get("pmo_buy_threshold", -0.5))
        sell_thr = float(self.params.get("pmo_sell_threshold", 0.5))

        need = max(slow + signal, roc + pmo_fast + pmo_slow) + 50
        candles = await self._closed(fetch, symbol, timeframe, need, now_ms)
        closes = closes_of(candles)
        cur = macd(closes, fast, slow, signal)
        prev = macd(closes[:-1], fast, slow, signal)
        osc = pmo(closes, roc, pmo_fast, pmo_slow)
        if cur is None or prev is None or osc is None:
            return None

        hist = cur.histogram
        hist_strength = min(50, round(abs(hist) * 1000))
        extra = {"histogram": hist, "prev_histogram": prev.histogram, "pmo": osc.pmo}
        if prev.histogram < 0 < hist and osc.pmo > buy_thr:
            pmo_strength = min(50, round((osc.pmo - buy_thr) * 20))
            return self._result(candles, LONG, clamp_strength(hist_strength + pmo_strength, 60, 100), extra)
        if prev.histogram > 0 > hist and osc.pmo < sell_thr:
            pmo_strength = min(50, round((sell_thr - osc.pmo) * 20))
            return self._result(candles, SHORT, clamp_strength(hist_strength + pmo_strength, 60, 100), extra)
        return None


class MultiTimeframeStrategy(Strategy):
    """4h regime with 1h entries on the latest closed 1h bar."""

    name = "MULTI_TIMEFRAME"
    timeframes = ("1h",)

    async def evaluate(self, symbol: str, timeframe: str, fetch: Fetch, now_ms: int) -> Optional[StrategyResult]:
        higher_limit = int(self.params.get("higher_limit", 120))
        replay_bars = int(self.params.get("replay_bars", self.breakout_cfg.retest_window_bars + 2))

        higher = await self._closed(fetch, symbol, "4h", higher_limit, now_ms)
        lower = await self._closed(fetch, symbol, timeframe, higher_limit * 4, now_ms)
        lower, higher = align_series(lower, higher)
        if not lower:
            return None

        ev = MultiTimeframeEvaluator(
            symbol,
            lower,
            higher,
            regime_cfg=self.regime_cfg,
            breakout_cfg=self.breakout_cfg,
        )
        sig = ev.replay_to(len(lower) - 1, replay_bars)
        if sig.type == NONE:
            log.debug("mtf_no_entry symbol=%s reason=%s", symbol, sig.reason)
            return None

        extra = {"regime": sig.regime, "bias": sig.bias, "reason": sig.reason}
        return self._result(lower, sig.type, strength_for(sig), extra)


STRATEGIES: Dict[str, Type[Strategy]] = {
    cls.name: cls
    for cls in (RsiStrategy, MacdHistogramStrategy, PmoStrategy, MacdHistogramPmoStrategy, MultiTimeframeStrategy)
}


def build_strategy(
    entry: StrategyEntry,
    *,
    risk_cfg: Optional[RiskConfig] = None,
    regime_cfg: Optional[RegimeConfig] = None,
    breakout_cfg: Optional[BreakoutConfig] = None,
) -> Strategy:
    cls = STRATEGIES.get(entry.name)
    if cls is None:
        raise ValueError(f"Unknown strategy: {entry.name}")
    return cls(entry.params, risk_cfg=risk_cfg, regime_cfg=regime_cfg, breakout_cfg=breakout_cfg)
