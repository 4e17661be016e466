from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from .indicators import bollinger, closes_of, ema, rsi_wilder
from .models import BEAR, BULL, NEUTRAL, RANGE, TREND, Candle, RegimeState


@dataclass(frozen=True)
class RegimeSnapshot:
    close: float
    ema20: float
    ema50: float
    rsi14: float
    bandwidth: float

    @property
    def ema_separation(self) -> float:
        if self.close == 0:
            return 0.0
        return abs(self.ema20 - self.ema50) / self.close


def regime_snapshot(candles: Sequence[Candle]) -> Optional[RegimeSnapshot]:
    """Indicator snapshot of the last bar, or None when history is too short."""
    if not candles:
        return None
    closes = closes_of(candles)
    ema20 = ema(closes, 20)
    ema50 = ema(closes, 50)
    rsi14 = rsi_wilder(closes, 14)
    bb = bollinger(closes, 20, 2.0)
    if ema20 is None or ema50 is None or rsi14 is None or bb is None:
        return None
    return RegimeSnapshot(
        close=closes[-1],
        ema20=ema20,
        ema50=ema50,
        rsi14=rsi14,
        bandwidth=bb.bandwidth,
    )


def classify_regime(
    snap: RegimeSnapshot,
    trend_threshold: float = 0.003,
    range_threshold: float = 0.05,
) -> RegimeState:
    if snap.ema_separation >= trend_threshold or snap.bandwidth >= range_threshold:
        regime = TREND
    else:
        regime = RANGE

    if snap.close > snap.ema50 and snap.ema20 > snap.ema50 and snap.rsi14 >= 50:
        bias = BULL
    elif snap.close < snap.ema50 and snap.ema20 < snap.ema50 and snap.rsi14 <= 50:
        bias = BEAR
    else:
        bias = NEUTRAL
    return RegimeState(regime=regime, bias=bias)
