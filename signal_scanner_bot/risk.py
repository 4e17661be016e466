from __future__ import annotations

from dataclasses import dataclass
import math
from typing import List, Sequence

from .models import LONG, Candle


@dataclass(frozen=True)
class TradeLevels:
    stop: float
    targets: List[float]

    @property
    def target1(self) -> float:
        return self.targets[0]

    @property
    def target2(self) -> float:
        return self.targets[1] if len(self.targets) > 1 else self.targets[0]

    @property
    def target3(self) -> float:
        return self.targets[2] if len(self.targets) > 2 else self.target2


def structure_stop(
    candles: Sequence[Candle],
    side: str,
    atr_value: float,
    entry: float,
    *,
    lookback: int = 10,
    atr_mult: float = 1.2,
) -> float:
    """More conservative of the recent swing extreme and an ATR offset."""
    recent = candles[-min(lookback, len(candles)):] if candles else []
    if side == LONG:
        atr_stop = entry - atr_mult * atr_value
        if not recent:
            return atr_stop
        return min(min(c.low for c in recent), atr_stop)
    atr_stop = entry + atr_mult * atr_value
    if not recent:
        return atr_stop
    return max(max(c.high for c in recent), atr_stop)


def r_targets(entry: float, stop: float, side: str, multiples: Sequence[float] = (1.0, 2.0)) -> List[float]:
    risk = abs(entry - stop)
    if side == LONG:
        return [entry + m * risk for m in multiples]
    return [entry - m * risk for m in multiples]


def trade_levels(
    candles: Sequence[Candle],
    side: str,
    atr_value: float,
    entry: float,
    *,
    lookback: int = 10,
    atr_mult: float = 1.2,
    multiples: Sequence[float] = (1.0, 2.0, 3.0),
) -> TradeLevels:
    stop = structure_stop(candles, side, atr_value, entry, lookback=lookback, atr_mult=atr_mult)
    return TradeLevels(stop=stop, targets=r_targets(entry, stop, side, multiples or (1.0, 2.0)))


def risk_reward(entry: float, stop: float, target: float) -> float:
    risk = abs(entry - stop)
    if risk == 0:
        return 0.0
    return abs(target - entry) / risk


def position_size(balance: float, risk_percent: float, entry: float, stop: float) -> float:
    risk_per_unit = abs(entry - stop)
    if risk_per_unit == 0:
        return 0.0
    return max(0.0, balance * (risk_percent / 100.0) / risk_per_unit)


def adjust_to_step(qty: float, step_size: float) -> float:
    if step_size <= 0:
        return qty
    # tolerate float noise such as 0.3 / 0.1 == 2.9999999999999996
    return math.floor(qty / step_size + 1e-9) * step_size


def risk_quote(qty: float, entry: float, stop: float) -> float:
    return qty * abs(entry - stop)


def risk_percent_of_balance(balance: float, qty: float, entry: float, stop: float) -> float:
    if balance == 0:
        return 0.0
    return risk_quote(qty, entry, stop) / balance * 100.0
