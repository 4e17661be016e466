import pytest

from signal_scanner_bot.models import Candle
from signal_scanner_bot.timefilter import HOUR_MS, AllowedHours, _parse_tz, closed_candles, tf_minutes, tf_ms


def test_tf_minutes():
    assert tf_minutes("15m") == 15
    assert tf_minutes("1h") == 60
    assert tf_minutes("4H") == 240
    assert tf_minutes("1d") == 1440
    assert tf_ms("1h") == HOUR_MS
    with pytest.raises(ValueError):
        tf_minutes("1x")


def test_allowed_hours_utc():
    gate = AllowedHours(hours=[8, 12])
    assert gate.within(8 * HOUR_MS)
    assert gate.within(8 * HOUR_MS + 59 * 60_000)
    assert not gate.within(9 * HOUR_MS)


def test_allowed_hours_offset_timezone():
    gate = AllowedHours(hours=[8], timezone="UTC+3")
    assert gate.within(5 * HOUR_MS)
    assert not gate.within(8 * HOUR_MS)


def test_disabled_gate_always_passes():
    assert AllowedHours(hours=[], enabled=False).within(3 * HOUR_MS)


def test_bad_timezone():
    with pytest.raises(ValueError):
        _parse_tz("Europe/Berlin")


def _hour(idx: int) -> Candle:
    base = idx * HOUR_MS
    return Candle(open_time_ms=base, close_time_ms=base + HOUR_MS - 1, open=1, high=1, low=1, close=1, volume=1)


def test_closed_candles_drops_forming_tail():
    candles = [_hour(i) for i in range(5)]
    assert closed_candles(candles, 4 * HOUR_MS + 1) == candles[:4]
    assert closed_candles(candles, 5 * HOUR_MS - 1) == candles
    assert closed_candles(candles, 0) == []
    assert closed_candles([], 10) == []
