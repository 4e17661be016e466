import pytest

from signal_scanner_bot.breakout import (
    CONFIRMED,
    EXPIRED,
    IDLE,
    PENDING,
    BreakoutBook,
    BreakoutTracker,
    replay,
)
from signal_scanner_bot.indicators import DonchianChannel
from signal_scanner_bot.models import LONG, SHORT, Candle


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


CH = DonchianChannel(high=104.0, low=90.0)


def _detect_long(tr: BreakoutTracker, k: int = 10):
    return tr.step(LONG, k, _c(k, 103, 106, 103, 105, 2.0), CH, 1.0, 60.0, 1.0)


def test_detection_enters_pending_with_expiry():
    tr = BreakoutTracker("BTCUSDT")
    ev = _detect_long(tr)
    assert ev.state == PENDING
    assert ev.detected_now
    p = tr.pending_for(LONG)
    assert p.level == 104.0
    assert p.detected_at_index == 10
    assert p.expires_at_index == 16


@pytest.mark.parametrize(
    "volume,rsi,close",
    [
        (1.5, 60.0, 105.0),  # volume not above 1.5x MA
        (2.0, 50.0, 105.0),  # RSI not above 50
        (2.0, 60.0, 104.0),  # close not beyond the channel
    ],
)
def test_detection_guards(volume, rsi, close):
    tr = BreakoutTracker("BTCUSDT")
    ev = tr.step(LONG, 10, _c(10, 103, 106, 103, close, volume), CH, 1.0, rsi, 1.0)
    assert ev.state == IDLE
    assert tr.pending_for(LONG) is None


def test_pending_expires_after_window():
    tr = BreakoutTracker("BTCUSDT")
    _detect_long(tr, k=10)
    far = lambda i: _c(i, 110, 111, 108, 110, 1.0)  # noqa: E731
    for i in range(11, 17):
        assert tr.step(LONG, i, far(i), None, None, None, 1.0).state == PENDING
    ev = tr.step(LONG, 17, far(17), None, None, None, 1.0)
    assert ev.state == EXPIRED
    assert ev.level == 104.0
    assert tr.pending_for(LONG) is None


def test_retest_confirms_and_clears():
    tr = BreakoutTracker("BTCUSDT")
    _detect_long(tr, k=10)
    ev = tr.step(LONG, 12, _c(12, 105, 106, 104.2, 105, 1.0), None, None, None, 1.0)
    assert ev.state == CONFIRMED
    assert ev.level == 104.0
    assert tr.pending_for(LONG) is None


def test_no_confirmation_on_detection_bar():
    tr = BreakoutTracker("BTCUSDT")
    _detect_long(tr, k=10)
    assert tr.try_confirm(LONG, 10, _c(10, 105, 106, 104.1, 105), 1.0) is None


def test_retest_must_close_back_beyond_level():
    tr = BreakoutTracker("BTCUSDT")
    _detect_long(tr, k=10)
    ev = tr.step(LONG, 11, _c(11, 105, 105, 103.9, 103.95), None, None, None, 1.0)
    assert ev.state == PENDING


def test_retest_after_expiry_does_not_confirm():
    tr = BreakoutTracker("BTCUSDT")
    _detect_long(tr, k=10)
    ev = tr.step(LONG, 17, _c(17, 105, 106, 104.1, 105), None, None, None, 1.0)
    assert ev.state == EXPIRED


def test_first_pending_is_kept():
    tr = BreakoutTracker("BTCUSDT")
    _detect_long(tr, k=10)
    higher = DonchianChannel(high=107.0, low=90.0)
    ev = tr.step(LONG, 11, _c(11, 107, 110, 108, 109, 5.0), higher, 1.0, 70.0, 1.0)
    assert ev.state == PENDING
    assert not ev.detected_now
    assert tr.pending_for(LONG).level == 104.0


def test_short_side_mirrors():
    tr = BreakoutTracker("ETHUSDT")
    ev = tr.step(SHORT, 5, _c(5, 91, 91, 88, 89, 3.0), CH, 1.0, 40.0, 1.0)
    assert ev.state == PENDING
    assert tr.pending_for(SHORT).level == 90.0
    assert tr.pending_for(LONG) is None
    ev = tr.step(SHORT, 6, _c(6, 89, 89.8, 88, 88.5, 1.0), None, None, None, 1.0)
    assert ev.state == CONFIRMED


def test_replay_on_candles_confirms_on_last_bar():
    candles = [_c(i, 100, 101, 99, 100, 1.0) for i in range(30)]
    candles.append(_c(30, 100, 104, 100, 103.5, 5.0))
    candles.append(_c(31, 103.5, 104, 101.2, 103, 1.0))

    tr = BreakoutTracker("BTCUSDT")
    ev = replay(tr, LONG, candles, 24, channel_length=20)
    assert ev.state == CONFIRMED
    assert ev.index == 31
    assert ev.level == 101

    # same bars without the retest bar stop at PENDING
    tr2 = BreakoutTracker("BTCUSDT")
    ev2 = replay(tr2, LONG, candles[:31], 24, channel_length=20)
    assert ev2.state == PENDING and ev2.detected_now


def test_book_owns_one_tracker_per_symbol():
    book = BreakoutBook(retest_window_bars=4)
    a = book.tracker_for("BTCUSDT")
    assert book.tracker_for("BTCUSDT") is a
    assert book.tracker_for("ETHUSDT") is not a
    assert a.retest_window_bars == 4
    book.clear()
    assert book.tracker_for("BTCUSDT") is not a
