from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import pytest

from signal_scanner_bot.models import Candle


class FakeProvider:
    """In-memory candle/price/ranking source with scripted failures."""

    def __init__(self):
        self.klines: Dict[Tuple[str, str], List[Candle]] = {}
        self.prices: Dict[str, float] = {}
        self.top: List[str] = []
        self.errors: Dict[tuple, List[Exception]] = {}
        self.calls: List[tuple] = []

    def fail(self, key: tuple, *excs: Exception) -> None:
        self.errors.setdefault(key, []).extend(excs)

    def _maybe_fail(self, key: tuple) -> None:
        queue = self.errors.get(key)
        if queue:
            raise queue.pop(0)

    async def fetch_klines(
        self,
        symbol: str,
        timeframe: str,
        limit: int,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> List[Candle]:
        self.calls.append(("klines", symbol, timeframe, limit, start_ms, end_ms))
        self._maybe_fail(("klines", symbol, timeframe))
        rows = self.klines.get((symbol, timeframe), [])
        if start_ms is not None:
            rows = [c for c in rows if c.open_time_ms >= start_ms]
        if end_ms is not None:
            rows = [c for c in rows if c.open_time_ms <= end_ms]
        return list(rows[-limit:])

    async def fetch_current_price(self, symbol: str) -> float:
        self.calls.append(("price", symbol))
        self._maybe_fail(("price", symbol))
        return self.prices[symbol]

    async def fetch_top_symbols_by_volume(self, limit: int, min_quote_volume: float = 0.0) -> List[str]:
        self.calls.append(("top", limit, min_quote_volume))
        self._maybe_fail(("top",))
        return list(self.top[:limit])

    async def close(self) -> None:
        pass


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
