import asyncio

from signal_scanner_bot.config import Config, EngineConfig, RunnerConfig, StrategyEntry
from signal_scanner_bot.formatters import format_batch, format_entry, format_history, format_pre_setup, format_signal
from signal_scanner_bot.models import (
    BUY,
    CLOSED,
    LONG,
    STATUS_NEW,
    TREND_PULLBACK,
    BatchResult,
    Candle,
    EntryAlert,
    PreSetupAlert,
    Signal,
)
from signal_scanner_bot.providers.binance import KlineEvent
from signal_scanner_bot.runner import SignalRunner
from signal_scanner_bot.store import MemorySignalStore

T0 = 1_700_000_000_000


def _runner(provider):
    cfg = Config(
        strategies=[],
        engine=EngineConfig(symbols=[]),
        runner=RunnerConfig(reconcile_every_minutes=60),
    )
    return SignalRunner(cfg, provider=provider, store=MemorySignalStore())


def _evt(close_ms):
    c = Candle(open_time_ms=close_ms - 899_999, close_time_ms=close_ms, open=1, high=1, low=1, close=1, volume=1)
    return KlineEvent(symbol="BTCUSDT", timeframe="15m", candle=c)


def test_repeated_close_is_ignored(provider):
    r = _runner(provider)
    assert not r._is_duplicate(_evt(T0))
    assert r._is_duplicate(_evt(T0))
    assert r._is_duplicate(_evt(T0 - 900_000))
    assert not r._is_duplicate(_evt(T0 + 900_000))


def test_cycle_reconciles_on_schedule(provider):
    r = _runner(provider)
    asyncio.run(r.cycle(T0))
    assert r._last_reconcile_ms == T0
    asyncio.run(r.cycle(T0 + 30 * 60_000))
    assert r._last_reconcile_ms == T0
    asyncio.run(r.cycle(T0 + 60 * 60_000))
    assert r._last_reconcile_ms == T0 + 60 * 60_000
    assert r._metrics["cycles_total"] == 3
    assert r._metrics["cycle_errors_total"] == 0


def test_cycle_survives_aborted_scan(provider):
    provider.fail(("top",), ValueError("ranking down"))
    cfg = Config(
        strategies=[StrategyEntry(name="SCANNER_APLUS")],
        engine=EngineConfig(symbols=[]),
        runner=RunnerConfig(reconcile_every_minutes=60),
    )
    r = SignalRunner(cfg, provider=provider, store=MemorySignalStore())
    asyncio.run(r.cycle(T0))
    assert r._metrics["cycle_errors_total"] == 1
    assert r._last_reconcile_ms == T0


def test_formatters():
    entry = EntryAlert(
        symbol="BTCUSDT",
        side=LONG,
        setup=TREND_PULLBACK,
        timeframe="15m",
        score=8.0,
        entry=100.2,
        stop=99.5,
        target1=100.9,
        target2=101.6,
        atr_percent=0.5,
        reasons=("EMA21 cross trigger (+2)",),
        timestamp_ms=T0,
    )
    text = format_entry(entry)
    assert text.startswith("ENTRY LONG BTCUSDT | 15m | TREND_PULLBACK | Score: 8.0/10")
    assert "SL: 99.5" in text and "TP2: 101.6" in text
    assert "  EMA21 cross trigger (+2)" in text

    pre = PreSetupAlert(
        symbol="ETHUSDT",
        side=LONG,
        setup=TREND_PULLBACK,
        timeframe="15m",
        score=5.0,
        price=2000.0,
        atr_percent=0.7,
        reasons=("waiting for trigger",),
        timestamp_ms=T0,
    )
    assert "SL" not in format_pre_setup(pre)

    sig = Signal(
        id="x",
        symbol="BTCUSDT",
        direction=BUY,
        timeframe="4h",
        strategy_id="RSI",
        strategy_name="RSI",
        entry_price=100.0,
        stop_loss=95.0,
        target1=105.0,
        target2=None,
        target3=None,
        strength=70,
        status=STATUS_NEW,
        generated_at_ms=T0,
        price24h=110.0,
        result24h=10.0,
        status24h=CLOSED,
        high24h=112.0,
        low24h=99.0,
    )
    assert "24h: price=110 result=10 high=112 low=99" in format_signal(sig)
    assert format_batch("backfill", BatchResult(updated=3, errors=1, iterations=2)) == (
        "backfill: updated=3 errors=1 iterations=2"
    )


def test_history_is_newest_first_and_bounded(provider):
    r = _runner(provider)
    assert format_history(r.history()) == "No stored signals"
    for i in range(3):
        r.store.create_signal(
            Signal(
                id=f"sig-{i}",
                symbol="BTCUSDT",
                direction=BUY,
                timeframe="4h",
                strategy_id="RSI",
                strategy_name="RSI",
                entry_price=100.0 + i,
                stop_loss=95.0,
                target1=105.0,
                target2=None,
                target3=None,
                strength=70,
                status=STATUS_NEW,
                generated_at_ms=T0 + i * 3_600_000,
            )
        )
    rows = r.history(limit=2)
    assert [s.id for s in rows] == ["sig-2", "sig-1"]
    text = format_history(rows)
    assert len(text.splitlines()) == 2
    assert text.splitlines()[0].startswith("RSI BUY BTCUSDT 4h @ 102")
