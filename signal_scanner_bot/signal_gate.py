from __future__ import annotations

import hashlib
import logging
from typing import Optional

from .models import (
    STATUS_NEW,
    EntryAlert,
    Signal,
    StrategyRef,
    StrategyResult,
    side_to_direction,
)
from .timefilter import MINUTE_MS

log = logging.getLogger("signal_gate")


def signal_id(symbol: str, strategy_id: str, timeframe: str, direction: str, generated_at_ms: int) -> str:
    raw = f"{symbol}:{strategy_id}:{timeframe}:{direction}:{int(generated_at_ms)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def strength_from_score(score: float) -> int:
    return int(max(0, min(100, round(score * 10))))


def result_from_alert(alert: EntryAlert) -> StrategyResult:
    return StrategyResult(
        direction=side_to_direction(alert.side),
        entry_price=alert.entry,
        stop_loss=alert.stop,
        target1=alert.target1,
        target2=alert.target2,
        strength=strength_from_score(alert.score),
        extra_info={
            "setup": alert.setup,
            "score": alert.score,
            "atr_percent": alert.atr_percent,
            "reasons": list(alert.reasons),
        },
    )


class SignalGate:
    """Writes a Signal unless an open one for the same key is younger than the window."""

    def __init__(self, store, window_minutes: int = 120):
        self.store = store
        self.window_ms = int(window_minutes) * MINUTE_MS

    def submit(
        self,
        *,
        symbol: str,
        timeframe: str,
        strategy: StrategyRef,
        result: StrategyResult,
        now_ms: int,
    ) -> Optional[Signal]:
        existing = self.store.find_open_signal(
            symbol, strategy.id, timeframe, result.direction, now_ms - self.window_ms
        )
        if existing is not None:
            log.info(
                "signal_duplicate symbol=%s strategy=%s tf=%s dir=%s existing=%s",
                symbol,
                strategy.id,
                timeframe,
                result.direction,
                existing.id[:12],
            )
            return None

        sig = Signal(
            id=signal_id(symbol, strategy.id, timeframe, result.direction, now_ms),
            symbol=symbol,
            direction=result.direction,
            timeframe=timeframe,
            strategy_id=strategy.id,
            strategy_name=strategy.display_name,
            entry_price=result.entry_price,
            stop_loss=result.stop_loss,
            target1=result.target1,
            target2=result.target2,
            target3=result.target3,
            strength=int(max(0, min(100, result.strength))),
            status=STATUS_NEW,
            generated_at_ms=int(now_ms),
            extra_info=dict(result.extra_info or {}),
        )
        stored = self.store.create_signal(sig)
        log.info(
            "signal_created symbol=%s strategy=%s tf=%s dir=%s entry=%s strength=%d id=%s",
            symbol,
            strategy.id,
            timeframe,
            sig.direction,
            sig.entry_price,
            sig.strength,
            sig.id[:12],
        )
        return stored

    def submit_alert(self, alert: EntryAlert, strategy: StrategyRef, now_ms: int) -> Optional[Signal]:
        return self.submit(
            symbol=alert.symbol,
            timeframe=alert.timeframe,
            strategy=strategy,
            result=result_from_alert(alert),
            now_ms=now_ms,
        )
