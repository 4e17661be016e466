from signal_scanner_bot.models import BEAR, BULL, LONG, NEUTRAL, RANGE, SHORT, TREND, Candle
from signal_scanner_bot.regime import RegimeSnapshot, classify_regime, regime_snapshot


def _c(idx: int, o: float, h: float, l: float, c: float, v: float = 1.0) -> Candle:
    base = idx * 3_600_000
    return Candle(
        open_time_ms=base,
        close_time_ms=base + 3_600_000 - 1,
        open=o,
        high=h,
        low=l,
        close=c,
        volume=v,
    )


def test_bull_bias_without_strict_ordering():
    # close > EMA50 > EMA20 does not hold, the bias rule still does
    snap = RegimeSnapshot(close=101.0, ema20=100.5, ema50=100.0, rsi14=60.0, bandwidth=0.01)
    st = classify_regime(snap)
    assert st.bias == BULL
    assert st.regime == TREND  # separation 0.5/101 >= 0.003
    assert st.tradable
    assert st.allows(LONG) and not st.allows(SHORT)


def test_bear_bias_mirrors_bull():
    snap = RegimeSnapshot(close=95.0, ema20=97.0, ema50=99.0, rsi14=40.0, bandwidth=0.02)
    st = classify_regime(snap)
    assert st.bias == BEAR
    assert st.allows(SHORT)


def test_range_when_tight_and_narrow():
    snap = RegimeSnapshot(close=100.0, ema20=100.1, ema50=100.0, rsi14=50.0, bandwidth=0.01)
    st = classify_regime(snap)
    assert st.regime == RANGE
    assert st.bias == NEUTRAL
    assert st.tradable


def test_wide_bands_alone_make_trend():
    snap = RegimeSnapshot(close=100.0, ema20=100.1, ema50=100.0, rsi14=50.0, bandwidth=0.08)
    assert classify_regime(snap).regime == TREND


def test_trend_without_bias_is_not_tradable():
    snap = RegimeSnapshot(close=100.0, ema20=101.0, ema50=99.0, rsi14=45.0, bandwidth=0.01)
    st = classify_regime(snap)
    assert st.regime == TREND
    assert st.bias == NEUTRAL
    assert not st.tradable


def test_thresholds_are_configurable():
    snap = RegimeSnapshot(close=100.0, ema20=100.4, ema50=100.0, rsi14=55.0, bandwidth=0.01)
    assert classify_regime(snap).regime == TREND
    assert classify_regime(snap, trend_threshold=0.01).regime == RANGE


def test_snapshot_needs_fifty_bars():
    rising = [_c(i, 100 + i, 101 + i, 99 + i, 100 + i) for i in range(60)]
    assert regime_snapshot(rising[:49]) is None
    snap = regime_snapshot(rising)
    assert snap is not None
    assert snap.close == 159
    assert snap.ema20 > snap.ema50
    assert snap.rsi14 == 100.0
    st = classify_regime(snap)
    assert st.regime == TREND and st.bias == BULL
