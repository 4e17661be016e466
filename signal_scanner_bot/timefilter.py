from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import List, Sequence
import re

from .models import Candle


_TZ_RE = re.compile(r"^UTC([+-])(\d{1,2})$")

MINUTE_MS = 60_000
HOUR_MS = 3_600_000



def _parse_tz(tz_str: str) -> timezone:
    tz_str = (tz_str or "UTC").strip().upper()
    if tz_str == "UTC":
        return timezone.utc
    m = _TZ_RE.match(tz_str)
    if not m:
        raise ValueError(f"Unsupported timezone format: {tz_str} (use 'UTC' or 'UTC+3' etc.)")
    sign = 1 if m.group(1) == "+" else -1
    hours = int(m.group(2))
    return timezone(timedelta(hours=sign * hours))


def tf_minutes(tf: str) -> int:
    tf = (tf or "").strip().lower()
    if tf.endswith("m"):
        return int(tf[:-1])
    if tf.endswith("h"):
        return int(tf[:-1]) * 60
    if tf.endswith("d"):
        return int(tf[:-1]) * 1440
    if tf.endswith("w"):
        return int(tf[:-1]) * 10080
    raise ValueError(f"Unsupported timeframe: {tf}")


def tf_ms(tf: str) -> int:
    return tf_minutes(tf) * MINUTE_MS


def now_ms() -> int:
    return int(datetime.now(tz=timezone.utc).timestamp() * 1000)


@dataclass
class AllowedHours:
    """Hour-of-day gate: a timestamp passes when its hour is listed."""

    hours: List[int] = field(default_factory=lambda: [8, 12, 16, 20, 23])
    timezone: str = "UTC"
    enabled: bool = True

    def within(self, ts_ms: int) -> bool:
        if not self.enabled:
            return True
        tz = _parse_tz(self.timezone)
        dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).astimezone(tz)
        return dt.hour in set(self.hours)


def closed_candles(candles: Sequence[Candle], now_ms: int) -> List[Candle]:
    """Drop trailing candles still open at ``now_ms``.

    Exchanges return the forming candle as the last kline row; indicators
    and entry rules only look at closed bars.
    """
    out = list(candles)
    while out and out[-1].close_time_ms > now_ms:
        out.pop()
    return out
