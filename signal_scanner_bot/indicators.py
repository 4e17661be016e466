"""Stateless indicator functions.

Every function returns ``None`` when the history is shorter than the
indicator needs. None of them raise on short input.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence
import math

from .models import Candle


@dataclass(frozen=True)
class MacdResult:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float

    @property
    def bandwidth(self) -> float:
        if self.middle == 0:
            return 0.0
        return (self.upper - self.lower) / self.middle


@dataclass(frozen=True)
class DonchianChannel:
    high: float
    low: float


@dataclass(frozen=True)
class PmoResult:
    pmo: float
    fast_stage: float
    slow_stage: float


def closes_of(candles: Sequence[Candle]) -> List[float]:
    return [c.close for c in candles]


def volumes_of(candles: Sequence[Candle]) -> List[float]:
    return [c.volume for c in candles]


def ema_next(prev_ema: Optional[float], x: float, length: int) -> float:
    if length <= 1:
        return x
    alpha = 2.0 / (length + 1.0)
    return x if prev_ema is None else (alpha * x + (1.0 - alpha) * prev_ema)


def rma_next(prev: Optional[float], x: float, length: int) -> float:
    """Wilder's smoothing step."""
    if length <= 1 or prev is None:
        return x
    return prev + (x - prev) / float(length)


def sma(values: Sequence[float], length: int) -> Optional[float]:
    if length <= 0 or len(values) < length:
        return None
    return sum(values[-length:]) / float(length)


def ema_series(values: Sequence[float], length: int) -> Optional[List[float]]:
    """EMA seeded with the SMA of the first ``length`` values.

    Output is aligned to the tail: ``out[-1]`` belongs to ``values[-1]`` and the
    series has ``len(values) - length + 1`` points.
    """
    if length <= 0 or len(values) < length:
        return None
    out = [sum(values[:length]) / float(length)]
    for x in values[length:]:
        out.append(ema_next(out[-1], x, length))
    return out


def ema(values: Sequence[float], length: int) -> Optional[float]:
    series = ema_series(values, length)
    return series[-1] if series else None


def rsi_wilder(closes: Sequence[float], length: int = 14) -> Optional[float]:
    if length <= 0 or len(closes) < length:
        return None
    # The first bar has no previous close and contributes a zero change.
    gains = [0.0]
    losses = [0.0]
    for i in range(1, len(closes)):
        ch = closes[i] - closes[i - 1]
        gains.append(ch if ch > 0 else 0.0)
        losses.append(-ch if ch < 0 else 0.0)

    avg_gain = sum(gains[:length]) / length
    avg_loss = sum(losses[:length]) / length
    for i in range(length, len(closes)):
        avg_gain = rma_next(avg_gain, gains[i], length)
        avg_loss = rma_next(avg_loss, losses[i], length)

    if avg_gain == 0 and avg_loss == 0:
        return 50.0
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def true_range(high: float, low: float, prev_close: float) -> float:
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def atr(candles: Sequence[Candle], length: int = 14) -> Optional[float]:
    """Wilder ATR with SMA seed at the first full window."""
    if length <= 0 or len(candles) < length + 1:
        return None
    trs = [
        true_range(candles[i].high, candles[i].low, candles[i - 1].close)
        for i in range(1, len(candles))
    ]
    value = sum(trs[:length]) / float(length)
    for tr in trs[length:]:
        value = rma_next(value, tr, length)
    return value


def macd(
    closes: Sequence[float],
    fast_length: int = 12,
    slow_length: int = 26,
    signal_length: int = 9,
) -> Optional[MacdResult]:
    if fast_length <= 0 or slow_length <= fast_length or signal_length <= 0:
        return None
    if len(closes) < slow_length + signal_length - 1:
        return None
    fast = ema_series(closes, fast_length)
    slow = ema_series(closes, slow_length)
    if fast is None or slow is None:
        return None
    line = [f - s for f, s in zip(fast[slow_length - fast_length:], slow)]
    signal = ema_series(line, signal_length)
    if signal is None:
        return None
    return MacdResult(macd=line[-1], signal=signal[-1], histogram=line[-1] - signal[-1])


def bollinger(closes: Sequence[float], length: int = 20, std_mult: float = 2.0) -> Optional[BollingerBands]:
    if length <= 0 or len(closes) < length:
        return None
    window = closes[-length:]
    middle = sum(window) / float(length)
    variance = sum((x - middle) ** 2 for x in window) / float(length)
    dev = std_mult * math.sqrt(variance)
    return BollingerBands(upper=middle + dev, middle=middle, lower=middle - dev)


def donchian_at(candles: Sequence[Candle], length: int, index: int) -> Optional[DonchianChannel]:
    """Channel over the ``length`` bars strictly before ``index`` (no lookahead)."""
    if length <= 0 or index < length or index > len(candles):
        return None
    window = candles[index - length:index]
    return DonchianChannel(high=max(c.high for c in window), low=min(c.low for c in window))


def pmo(
    closes: Sequence[float],
    roc_length: int = 10,
    fast_length: int = 5,
    slow_length: int = 35,
) -> Optional[PmoResult]:
    """Price Momentum Oscillator.

    ROC over ``roc_length`` is smoothed by EMA(fast) and that stage again by
    EMA(slow). The oscillator is ``10 * (fast_stage - slow_stage)``.
    """
    if roc_length <= 0 or fast_length <= 0 or slow_length <= 0:
        return None
    if len(closes) < roc_length + fast_length + slow_length - 1:
        return None
    roc: List[float] = []
    for i in range(roc_length, len(closes)):
        base = closes[i - roc_length]
        if base == 0:
            return None
        roc.append((closes[i] - base) / base * 100.0)
    fast = ema_series(roc, fast_length)
    if fast is None:
        return None
    slow = ema_series(fast, slow_length)
    if slow is None:
        return None
    return PmoResult(pmo=10.0 * (fast[-1] - slow[-1]), fast_stage=fast[-1], slow_stage=slow[-1])


def volume_ma(volumes: Sequence[float], length: int = 20) -> Optional[float]:
    return sma(volumes, length)
