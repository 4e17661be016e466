import pytest

from signal_scanner_bot.models import LONG, SHORT, Candle
from signal_scanner_bot.risk import (
    adjust_to_step,
    position_size,
    r_targets,
    risk_percent_of_balance,
    risk_quote,
    risk_reward,
    structure_stop,
    trade_levels,
)


def _c(idx: int, o: float, h: float, l: float, c: float, v: float = 1.0) -> Candle:
    base = idx * 900_000
    return Candle(
        open_time_ms=base,
        close_time_ms=base + 900_000 - 1,
        open=o,
        high=h,
        low=l,
        close=c,
        volume=v,
    )


def test_structure_stop_takes_the_wider_level():
    candles = [_c(i, 100, 101, 99, 100) for i in range(20)]
    candles[15] = _c(15, 100, 101, 95, 100)
    # swing low 95 is further than 100 - 1.2*2 = 97.6
    assert structure_stop(candles, LONG, 2.0, 100.0) == 95.0
    # 99 is closer than the ATR stop
    assert structure_stop(candles[16:], LONG, 2.0, 100.0) == pytest.approx(97.6)


def test_structure_stop_lookback_window():
    candles = [_c(i, 100, 101, 99, 100) for i in range(20)]
    candles[5] = _c(5, 100, 101, 90, 100)  # outside the last 10 bars
    assert structure_stop(candles, LONG, 0.5, 100.0) == pytest.approx(99.0)


def test_structure_stop_short():
    candles = [_c(i, 100, 101, 99, 100) for i in range(12)]
    candles[-1] = _c(11, 100, 106, 99, 100)
    assert structure_stop(candles, SHORT, 2.0, 100.0) == 106.0
    assert structure_stop(candles[:-1], SHORT, 2.0, 100.0) == pytest.approx(102.4)


def test_r_targets():
    assert r_targets(100.0, 95.0, LONG, (1.0, 2.0)) == [105.0, 110.0]
    assert r_targets(100.0, 105.0, SHORT, (1.0, 2.0)) == [95.0, 90.0]


def test_trade_levels_default_multiples():
    candles = [_c(i, 100, 101, 99, 100) for i in range(12)]
    lv = trade_levels(candles, LONG, 1.0, 100.0)
    assert lv.stop == pytest.approx(98.8)
    assert lv.target1 == pytest.approx(101.2)
    assert lv.target2 == pytest.approx(102.4)
    assert lv.target3 == pytest.approx(103.6)
    assert risk_reward(100.0, lv.stop, lv.target2) == pytest.approx(2.0)


def test_risk_reward_zero_risk():
    assert risk_reward(100.0, 100.0, 110.0) == 0.0


def test_position_sizing_helpers():
    qty = position_size(10_000, 1.0, 100.0, 95.0)
    assert qty == pytest.approx(20.0)
    assert position_size(10_000, 1.0, 100.0, 100.0) == 0.0
    assert risk_quote(qty, 100.0, 95.0) == pytest.approx(100.0)
    assert risk_percent_of_balance(10_000, qty, 100.0, 95.0) == pytest.approx(1.0)
    assert risk_percent_of_balance(0, qty, 100.0, 95.0) == 0.0


def test_adjust_to_step():
    assert adjust_to_step(0.3, 0.1) == pytest.approx(0.3)
    assert adjust_to_step(1.2399, 0.01) == pytest.approx(1.23)
    assert adjust_to_step(5.0, 0.0) == 5.0
