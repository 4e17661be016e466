from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, List, Optional, Sequence

from .indicators import DonchianChannel, atr, closes_of, donchian_at, rsi_wilder, volume_ma, volumes_of
from .models import LONG, Candle, PendingBreakout

log = logging.getLogger("breakout")

IDLE = "IDLE"
PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class BreakoutEvent:
    state: str
    side: str
    index: int
    level: Optional[float] = None
    detected_now: bool = False


class BreakoutTracker:
    """Breakout-then-retest state for one symbol.

    At most one pending breakout per side. A later breakout never replaces a
    pending one; it has to be confirmed or expire first.
    """

    def __init__(
        self,
        symbol: str,
        *,
        retest_window_bars: int = 6,
        retest_atr_mult: float = 0.3,
        volume_mult: float = 1.5,
    ):
        self.symbol = symbol
        self.retest_window_bars = retest_window_bars
        self.retest_atr_mult = retest_atr_mult
        self.volume_mult = volume_mult
        self.pending: Dict[str, PendingBreakout] = {}

    def pending_for(self, side: str) -> Optional[PendingBreakout]:
        return self.pending.get(side)

    def expire(self, index: int, side: Optional[str] = None) -> List[PendingBreakout]:
        expired = [
            p for s, p in self.pending.items()
            if (side is None or s == side) and index > p.expires_at_index
        ]
        for p in expired:
            del self.pending[p.side]
            log.debug("breakout_expired symbol=%s side=%s level=%s index=%d", self.symbol, p.side, p.level, index)
        return expired

    def try_detect(
        self,
        side: str,
        index: int,
        candle: Candle,
        channel: DonchianChannel,
        vol_ma: float,
        rsi: float,
    ) -> Optional[PendingBreakout]:
        if side in self.pending:
            return None
        if candle.volume <= self.volume_mult * vol_ma:
            return None
        if side == LONG:
            if not (candle.close > channel.high and rsi > 50):
                return None
            level = channel.high
        else:
            if not (candle.close < channel.low and rsi < 50):
                return None
            level = channel.low
        p = PendingBreakout(
            side=side,
            level=level,
            detected_at_index=index,
            expires_at_index=index + self.retest_window_bars,
        )
        self.pending[side] = p
        log.debug("breakout_pending symbol=%s side=%s level=%s index=%d", self.symbol, side, level, index)
        return p

    def try_confirm(self, side: str, index: int, candle: Candle, atr_value: float) -> Optional[PendingBreakout]:
        p = self.pending.get(side)
        if p is None or index <= p.detected_at_index or index > p.expires_at_index:
            return None
        tol = self.retest_atr_mult * atr_value
        if side == LONG:
            ok = abs(candle.low - p.level) <= tol and candle.close > p.level
        else:
            ok = abs(candle.high - p.level) <= tol and candle.close < p.level
        if not ok:
            return None
        del self.pending[side]
        return p

    def step(
        self,
        side: str,
        index: int,
        candle: Candle,
        channel: Optional[DonchianChannel],
        vol_ma: Optional[float],
        rsi: Optional[float],
        atr_value: Optional[float],
    ) -> BreakoutEvent:
        """Advance the machine for one side on bar ``index``.

        Missing indicator values only allow the expiry transition.
        """
        expired = self.expire(index, side)

        p = self.pending.get(side)
        if p is not None:
            if atr_value is not None:
                confirmed = self.try_confirm(side, index, candle, atr_value)
                if confirmed is not None:
                    return BreakoutEvent(CONFIRMED, side, index, level=confirmed.level)
            return BreakoutEvent(PENDING, side, index, level=p.level)

        if channel is not None and vol_ma is not None and rsi is not None:
            created = self.try_detect(side, index, candle, channel, vol_ma, rsi)
            if created is not None:
                return BreakoutEvent(PENDING, side, index, level=created.level, detected_now=True)

        if expired:
            return BreakoutEvent(EXPIRED, side, index, level=expired[0].level)
        return BreakoutEvent(IDLE, side, index)


def step_at(
    tracker: BreakoutTracker,
    side: str,
    candles: Sequence[Candle],
    index: int,
    *,
    channel_length: int,
    volume_length: int = 20,
    rsi_length: int = 14,
    atr_length: int = 14,
) -> BreakoutEvent:
    """Run ``tracker.step`` on ``candles[index]`` using only bars up to ``index``."""
    window = candles[: index + 1]
    return tracker.step(
        side,
        index,
        candles[index],
        donchian_at(candles, channel_length, index),
        volume_ma(volumes_of(window), volume_length),
        rsi_wilder(closes_of(window), rsi_length),
        atr(window, atr_length),
    )


def replay(
    tracker: BreakoutTracker,
    side: str,
    candles: Sequence[Candle],
    start: int,
    *,
    channel_length: int,
) -> Optional[BreakoutEvent]:
    """Step the tracker over ``candles[start:]``; returns the event of the last bar."""
    event: Optional[BreakoutEvent] = None
    for i in range(max(0, start), len(candles)):
        event = step_at(tracker, side, candles, i, channel_length=channel_length)
    return event


class BreakoutBook:
    """symbol -> tracker table owned by one run."""

    def __init__(self, *, retest_window_bars: int = 6, retest_atr_mult: float = 0.3, volume_mult: float = 1.5):
        self.retest_window_bars = retest_window_bars
        self.retest_atr_mult = retest_atr_mult
        self.volume_mult = volume_mult
        self._trackers: Dict[str, BreakoutTracker] = {}

    def tracker_for(self, symbol: str) -> BreakoutTracker:
        tr = self._trackers.get(symbol)
        if tr is None:
            tr = BreakoutTracker(
                symbol,
                retest_window_bars=self.retest_window_bars,
                retest_atr_mult=self.retest_atr_mult,
                volume_mult=self.volume_mult,
            )
            self._trackers[symbol] = tr
        return tr

    def clear(self) -> None:
        self._trackers.clear()
