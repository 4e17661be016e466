from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import List, Optional, Sequence, Tuple

from .breakout import CONFIRMED, BreakoutTracker, step_at
from .config import BreakoutConfig, RegimeConfig
from .indicators import bollinger, closes_of, ema, rsi_wilder, volume_ma, volumes_of
from .models import BEAR, BULL, LONG, NEUTRAL, RANGE, SHORT, TREND, Candle
from .regime import classify_regime, regime_snapshot

log = logging.getLogger("mtf")

NONE = "NONE"

MIN_LOWER_BARS = 100
MIN_HIGHER_BARS = 60
BARS_PER_HIGHER = 4
DONCHIAN_LENGTH = 20


@dataclass(frozen=True)
class EntrySignal:
    type: str  # LONG, SHORT or NONE
    reason: str
    regime: Optional[str] = None
    bias: Optional[str] = None


def map_to_higher_index(i_lower: int, ratio: int = BARS_PER_HIGHER) -> int:
    """Most recently closed higher-timeframe bar for lower-timeframe bar ``i_lower``."""
    return (i_lower - 1) // ratio


def align_series(lower: Sequence[Candle], higher: Sequence[Candle]) -> Tuple[List[Candle], List[Candle]]:
    """Trim both series to start on the same higher-timeframe bar boundary."""
    if not lower or not higher:
        return list(lower), list(higher)
    higher = [c for c in higher if c.open_time_ms >= lower[0].open_time_ms]
    if not higher:
        return [], []
    start = higher[0].open_time_ms
    return [c for c in lower if c.open_time_ms >= start], higher


def _body_ratio(c: Candle) -> float:
    rng = c.high - c.low
    if rng <= 0:
        return 0.0
    return abs(c.close - c.open) / rng


class MultiTimeframeEvaluator:
    """4h regime / 1h entry evaluator for one symbol.

    ``higher`` must start on the same boundary as ``lower`` (see
    ``align_series``) so the index mapping holds. Breakout state lives in
    the evaluator's own tracker, so call ``evaluate`` with increasing indices.
    """

    def __init__(
        self,
        symbol: str,
        lower: Sequence[Candle],
        higher: Sequence[Candle],
        *,
        regime_cfg: Optional[RegimeConfig] = None,
        breakout_cfg: Optional[BreakoutConfig] = None,
    ):
        self.symbol = symbol
        self.lower = list(lower)
        self.higher = list(higher)
        self.regime_cfg = regime_cfg or RegimeConfig()
        bcfg = breakout_cfg or BreakoutConfig()
        self.tracker = BreakoutTracker(
            symbol,
            retest_window_bars=bcfg.retest_window_bars,
            retest_atr_mult=bcfg.retest_atr_mult,
            volume_mult=bcfg.volume_mult,
        )

    def _closed_higher_index(self, i: int) -> int:
        j = min(map_to_higher_index(i), len(self.higher) - 1)
        # the mapped bar may still be forming at the close of bar i
        close_ms = self.lower[i].close_time_ms
        while j >= 0 and self.higher[j].close_time_ms > close_ms:
            j -= 1
        return j

    def evaluate(self, i: int) -> EntrySignal:
        if i < MIN_LOWER_BARS or len(self.higher) < MIN_HIGHER_BARS:
            return EntrySignal(NONE, "warmup")
        if i >= len(self.lower):
            return EntrySignal(NONE, "index out of range")

        j = self._closed_higher_index(i)
        if j < 0 or j >= len(self.higher):
            return EntrySignal(NONE, "no closed higher-timeframe bar")

        snap = regime_snapshot(self.higher[: j + 1])
        if snap is None:
            return EntrySignal(NONE, "insufficient higher-timeframe history")
        state = classify_regime(snap, self.regime_cfg.trend_threshold, self.regime_cfg.range_threshold)
        if not state.tradable:
            return EntrySignal(NONE, "trend without bias", state.regime, state.bias)

        if state.regime == RANGE:
            return self._range_entry(i, state.regime, state.bias)
        return self._trend_entry(i, state.regime, state.bias)

    def _range_entry(self, i: int, regime: str, bias: str) -> EntrySignal:
        window = self.lower[: i + 1]
        closes = closes_of(window)
        bb = bollinger(closes, 20, 2.0)
        rsi = rsi_wilder(closes, 14)
        vol_ma = volume_ma(volumes_of(window), 20)
        ema50 = ema(closes, 50)
        if bb is None or rsi is None or vol_ma is None or ema50 is None:
            return EntrySignal(NONE, "insufficient entry-timeframe history", regime, bias)

        c = self.lower[i]
        vol_ok = c.volume > 1.1 * vol_ma
        strong_body = _body_ratio(c) > 0.5

        if c.low <= bb.lower and c.close > bb.lower and rsi < 35 and vol_ok and (c.close >= ema50 or strong_body):
            return EntrySignal(LONG, "lower band rejection", regime, bias)
        if c.high >= bb.upper and c.close < bb.upper and rsi > 65 and vol_ok and (c.close <= ema50 or strong_body):
            return EntrySignal(SHORT, "upper band rejection", regime, bias)
        return EntrySignal(NONE, "no band rejection", regime, bias)

    def _trend_entry(self, i: int, regime: str, bias: str) -> EntrySignal:
        side = LONG if bias == BULL else SHORT if bias == BEAR else None
        if side is None:
            return EntrySignal(NONE, "no bias", regime, bias)

        event = step_at(self.tracker, side, self.lower, i, channel_length=DONCHIAN_LENGTH)
        if event.state == CONFIRMED:
            log.debug("mtf_retest_confirmed symbol=%s side=%s level=%s index=%d", self.symbol, side, event.level, i)
            return EntrySignal(side, f"{side.lower()} retest of {event.level:g}", regime, bias)
        if event.detected_now:
            return EntrySignal(NONE, "breakout detected, awaiting retest", regime, bias)
        return EntrySignal(NONE, f"breakout {event.state.lower()}", regime, bias)

    def replay_to(self, last: int, bars: int) -> EntrySignal:
        """Evaluate the trailing ``bars`` indices up to ``last``; returns the result at ``last``."""
        result = EntrySignal(NONE, "no bars")
        for i in range(max(0, last - bars + 1), last + 1):
            result = self.evaluate(i)
        return result


def strength_for(sig: EntrySignal) -> int:
    strength = 50
    if sig.regime == TREND:
        strength += 20
    if sig.bias is not None and sig.bias != NEUTRAL:
        strength += 20
    aligned = (sig.type == LONG and sig.bias == BULL) or (sig.type == SHORT and sig.bias == BEAR)
    if aligned:
        strength += 10
    return min(100, strength)
