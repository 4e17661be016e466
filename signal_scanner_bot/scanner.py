from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .breakout import CONFIRMED, BreakoutBook, BreakoutTracker, replay
from .config import BreakoutConfig, RegimeConfig, RiskConfig, ScannerConfig
from .errors import RunAborted
from .indicators import atr, closes_of, ema_series, rsi_wilder, volume_ma, volumes_of
from .models import (
    BREAKOUT_RETEST,
    BULL,
    LONG,
    SHORT,
    TREND,
    TREND_PULLBACK,
    Candle,
    EntryAlert,
    PreSetupAlert,
    RegimeState,
    RunReport,
)
from .regime import RegimeSnapshot, classify_regime, regime_snapshot
from .retry import RetryPolicy
from .risk import risk_reward, trade_levels
from .timefilter import MINUTE_MS, closed_candles, now_ms as _now_ms

log = logging.getLogger("scanner")

Alert = Union[EntryAlert, PreSetupAlert]

ZONE_ATR_MULT = 0.5
ZONE_CLOSE_ATR_MULT = 0.25
SLOPE_BARS = 10


@dataclass(frozen=True)
class MarketSnapshot:
    """Indicator values of one symbol on both timeframes at the latest bar."""

    symbol: str
    regime: RegimeSnapshot
    htf_close: float
    htf_ema21: float
    htf_atr: float
    htf_ema200: float
    htf_ema200_prev: float
    ltf_close: float
    ltf_prev_close: float
    ltf_ema21: float
    ltf_ema21_prev: float
    ltf_atr: float
    ltf_rsi: float
    ltf_volume: float
    ltf_volume_ma: float

    @property
    def atr_percent(self) -> float:
        if self.ltf_close == 0:
            return 0.0
        return self.ltf_atr / self.ltf_close * 100.0

    @property
    def zone_distance_atr(self) -> float:
        if self.htf_atr <= 0:
            return float("inf")
        return abs(self.htf_close - self.htf_ema21) / self.htf_atr

    @property
    def slope_pct(self) -> float:
        if self.htf_ema200_prev == 0:
            return 0.0
        return (self.htf_ema200 - self.htf_ema200_prev) / self.htf_ema200_prev * 100.0

    def slope_for(self, side: str) -> float:
        return self.slope_pct if side == LONG else -self.slope_pct


def build_snapshot(symbol: str, higher: Sequence[Candle], lower: Sequence[Candle]) -> Optional[MarketSnapshot]:
    """None when either timeframe is too short for any required indicator."""
    if len(lower) < 2:
        return None
    reg = regime_snapshot(higher)
    if reg is None:
        return None

    htf_closes = closes_of(higher)
    htf_ema21 = ema_series(htf_closes, 21)
    htf_ema200 = ema_series(htf_closes, 200)
    htf_atr = atr(higher, 14)
    if htf_ema21 is None or htf_ema200 is None or len(htf_ema200) <= SLOPE_BARS or htf_atr is None:
        return None

    ltf_closes = closes_of(lower)
    ltf_ema21 = ema_series(ltf_closes, 21)
    ltf_atr = atr(lower, 14)
    ltf_rsi = rsi_wilder(ltf_closes, 14)
    ltf_vol_ma = volume_ma(volumes_of(lower), 20)
    if ltf_ema21 is None or len(ltf_ema21) < 2 or ltf_atr is None or ltf_rsi is None or ltf_vol_ma is None:
        return None

    return MarketSnapshot(
        symbol=symbol,
        regime=reg,
        htf_close=htf_closes[-1],
        htf_ema21=htf_ema21[-1],
        htf_atr=htf_atr,
        htf_ema200=htf_ema200[-1],
        htf_ema200_prev=htf_ema200[-1 - SLOPE_BARS],
        ltf_close=ltf_closes[-1],
        ltf_prev_close=ltf_closes[-2],
        ltf_ema21=ltf_ema21[-1],
        ltf_ema21_prev=ltf_ema21[-2],
        ltf_atr=ltf_atr,
        ltf_rsi=ltf_rsi,
        ltf_volume=lower[-1].volume,
        ltf_volume_ma=ltf_vol_ma,
    )


def clamp_score(score: float) -> float:
    return max(0.0, min(10.0, float(score)))


def in_zone(snap: MarketSnapshot) -> bool:
    return snap.zone_distance_atr <= ZONE_ATR_MULT


def pullback_trigger(snap: MarketSnapshot, side: str) -> bool:
    """Entry-timeframe EMA21 cross in the bias direction, volume and RSI confirmed."""
    if side == LONG:
        crossed = snap.ltf_prev_close <= snap.ltf_ema21_prev and snap.ltf_close > snap.ltf_ema21
        rsi_ok = snap.ltf_rsi <= 72
    else:
        crossed = snap.ltf_prev_close >= snap.ltf_ema21_prev and snap.ltf_close < snap.ltf_ema21
        rsi_ok = snap.ltf_rsi >= 28
    return crossed and rsi_ok and snap.ltf_volume > snap.ltf_volume_ma


def _score_context(snap: MarketSnapshot, side: str, state: RegimeState) -> Tuple[float, List[str]]:
    score = 0.0
    b = []

    if state.regime == TREND:
        score += 2
        b.append(f"TREND regime, {state.bias} bias (+2)")
    else:
        score += 1
        b.append(f"RANGE regime, {state.bias} bias (+1)")

    slope = snap.slope_for(side)
    if slope > 0.15:
        score += 3
        b.append(f"EMA200 slope {slope:+.2f}% (+3)")
    elif slope > 0.1:
        score += 2
        b.append(f"EMA200 slope {slope:+.2f}% (+2)")
    else:
        b.append(f"EMA200 slope {slope:+.2f}% (+0)")
    return score, b


def _score_confirmation(snap: MarketSnapshot, side: str) -> Tuple[float, List[str]]:
    score = 0.0
    b = []

    ratio = snap.ltf_volume / snap.ltf_volume_ma if snap.ltf_volume_ma > 0 else 0.0
    if ratio > 1.5:
        score += 3
        b.append(f"Volume {ratio:.2f}x MA (+3)")
    elif ratio > 1.0:
        score += 2
        b.append(f"Volume {ratio:.2f}x MA (+2)")
    else:
        b.append(f"Volume {ratio:.2f}x MA (+0)")

    rsi = snap.ltf_rsi
    if 35 <= rsi <= 65:
        score += 2
        b.append(f"RSI {rsi:.1f} in 35-65 (+2)")
    elif (side == LONG and 65 < rsi <= 72) or (side == SHORT and 28 <= rsi < 35):
        score += 1
        b.append(f"RSI {rsi:.1f} stretched (+1)")
    else:
        score -= 1
        b.append(f"RSI {rsi:.1f} extreme (-1)")
    return score, b


def score_pullback(
    snap: MarketSnapshot,
    side: str,
    state: RegimeState,
    *,
    rr: float,
    min_rr: float,
    triggered: bool,
) -> Tuple[float, List[str]]:
    score, b = _score_context(snap, side, state)

    dist = snap.zone_distance_atr
    if dist <= ZONE_CLOSE_ATR_MULT:
        score += 3
        b.append(f"In EMA21 zone, {dist:.2f} ATR away (+3)")
    elif dist <= ZONE_ATR_MULT:
        score += 2
        b.append(f"In EMA21 zone, {dist:.2f} ATR away (+2)")

    if triggered:
        score += 2
        b.append("EMA21 cross trigger (+2)")

    s, more = _score_confirmation(snap, side)
    score += s
    b.extend(more)

    if rr >= min_rr:
        score += 2
        b.append(f"R:R {rr:.1f} (+2)")
    else:
        b.append(f"R:R {rr:.1f} (+0)")

    return clamp_score(score), b


def score_breakout(
    snap: MarketSnapshot,
    side: str,
    state: RegimeState,
    *,
    rr: float,
    min_rr: float,
) -> Tuple[float, List[str]]:
    score, b = _score_context(snap, side, state)

    score += 3
    b.append("Breakout retest confirmed (+3)")

    s, more = _score_confirmation(snap, side)
    score += s
    b.extend(more)

    if rr >= min_rr:
        score += 2
        b.append(f"R:R {rr:.1f} (+2)")
    else:
        b.append(f"R:R {rr:.1f} (+0)")

    return clamp_score(score), b


def side_for(state: RegimeState) -> Optional[str]:
    if not state.tradable:
        return None
    if state.bias == BULL:
        return LONG
    if state.allows(SHORT):
        return SHORT
    return None


class Scanner:
    """Volume-ranked symbol scan producing ENTRY and PRE_SETUP alerts.

    Symbols are processed one after another. The only suspension points are
    the market-data fetches and the pause between symbols.
    """

    def __init__(
        self,
        provider,
        cfg: ScannerConfig,
        *,
        regime_cfg: Optional[RegimeConfig] = None,
        breakout_cfg: Optional[BreakoutConfig] = None,
        risk_cfg: Optional[RiskConfig] = None,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.cfg = cfg
        self.regime_cfg = regime_cfg or RegimeConfig()
        self.breakout_cfg = breakout_cfg or BreakoutConfig()
        self.risk_cfg = risk_cfg or RiskConfig()
        self.sleep = sleep
        self.retry = retry or RetryPolicy.from_delay_ms(cfg.request_delay_ms, cfg.max_retries, sleep=sleep)
        self._last_entry_ms: Dict[str, int] = {}

    # ---- per-symbol evaluation (no I/O) ----

    def classify(self, snap: MarketSnapshot) -> RegimeState:
        return classify_regime(snap.regime, self.regime_cfg.trend_threshold, self.regime_cfg.range_threshold)

    def passes_volatility_filter(self, snap: MarketSnapshot) -> bool:
        return self.cfg.min_atr_percent <= snap.atr_percent <= self.cfg.max_atr_percent

    def _levels(self, lower: Sequence[Candle], side: str, snap: MarketSnapshot):
        return trade_levels(
            lower,
            side,
            snap.ltf_atr,
            snap.ltf_close,
            lookback=self.risk_cfg.structure_lookback,
            atr_mult=self.risk_cfg.stop_atr_mult,
            multiples=self.risk_cfg.target_r_multiples,
        )

    def evaluate_pullback(
        self,
        snap: MarketSnapshot,
        state: RegimeState,
        lower: Sequence[Candle],
        side: str,
        ts_ms: int,
    ) -> Optional[Alert]:
        if not in_zone(snap):
            return None

        if not pullback_trigger(snap, side):
            _, reasons = _score_context(snap, side, state)
            reasons.append(f"Price {snap.zone_distance_atr:.2f} ATR from {self.cfg.higher_timeframe} EMA21, waiting for trigger")
            return PreSetupAlert(
                symbol=snap.symbol,
                side=side,
                setup=TREND_PULLBACK,
                timeframe=self.cfg.entry_timeframe,
                score=clamp_score(self.cfg.pre_setup_score),
                price=snap.ltf_close,
                atr_percent=snap.atr_percent,
                reasons=tuple(reasons),
                timestamp_ms=ts_ms,
            )

        levels = self._levels(lower, side, snap)
        rr = risk_reward(snap.ltf_close, levels.stop, levels.target2)
        score, reasons = score_pullback(snap, side, state, rr=rr, min_rr=self.cfg.min_risk_reward, triggered=True)
        if score < self.cfg.min_entry_score:
            log.debug("pullback_below_min symbol=%s side=%s score=%.1f", snap.symbol, side, score)
            return None
        return EntryAlert(
            symbol=snap.symbol,
            side=side,
            setup=TREND_PULLBACK,
            timeframe=self.cfg.entry_timeframe,
            score=score,
            entry=snap.ltf_close,
            stop=levels.stop,
            target1=levels.target1,
            target2=levels.target2,
            atr_percent=snap.atr_percent,
            reasons=tuple(reasons),
            timestamp_ms=ts_ms,
        )

    def evaluate_breakout(
        self,
        snap: MarketSnapshot,
        state: RegimeState,
        lower: Sequence[Candle],
        side: str,
        tracker: BreakoutTracker,
        ts_ms: int,
    ) -> Optional[EntryAlert]:
        last = len(lower) - 1
        start = last - (self.breakout_cfg.retest_window_bars + 1)
        event = replay(tracker, side, lower, start, channel_length=self.cfg.breakout_period)
        if event is None or event.state != CONFIRMED or event.index != last:
            return None

        levels = self._levels(lower, side, snap)
        rr = risk_reward(snap.ltf_close, levels.stop, levels.target2)
        score, reasons = score_breakout(snap, side, state, rr=rr, min_rr=self.cfg.min_risk_reward)
        reasons.insert(0, f"Retest of {self.cfg.breakout_period}-bar level {event.level:g}")
        if score < self.cfg.min_entry_score:
            log.debug("breakout_below_min symbol=%s side=%s score=%.1f", snap.symbol, side, score)
            return None
        return EntryAlert(
            symbol=snap.symbol,
            side=side,
            setup=BREAKOUT_RETEST,
            timeframe=self.cfg.entry_timeframe,
            score=score,
            entry=snap.ltf_close,
            stop=levels.stop,
            target1=levels.target1,
            target2=levels.target2,
            atr_percent=snap.atr_percent,
            reasons=tuple(reasons),
            timestamp_ms=ts_ms,
        )

    def in_cooldown(self, symbol: str, ts_ms: int) -> bool:
        last = self._last_entry_ms.get(symbol)
        return last is not None and ts_ms - last < self.cfg.cooldown_minutes * MINUTE_MS

    def evaluate_symbol(
        self,
        symbol: str,
        higher: Sequence[Candle],
        lower: Sequence[Candle],
        book: BreakoutBook,
        ts_ms: int,
    ) -> Optional[List[Alert]]:
        """Alerts for one symbol. None means insufficient data."""
        snap = build_snapshot(symbol, higher, lower)
        if snap is None:
            log.debug("insufficient_data symbol=%s htf=%d ltf=%d", symbol, len(higher), len(lower))
            return None

        if not self.passes_volatility_filter(snap):
            log.debug("atr_filter symbol=%s atr_pct=%.3f", symbol, snap.atr_percent)
            return []

        state = self.classify(snap)
        side = side_for(state)
        if side is None:
            log.debug("no_direction symbol=%s regime=%s bias=%s", symbol, state.regime, state.bias)
            return []

        out: List[Alert] = []
        if self.cfg.enable_breakout_retest:
            alert = self.evaluate_breakout(snap, state, lower, side, book.tracker_for(symbol), ts_ms)
            if alert is not None:
                out.append(alert)

        pullback = self.evaluate_pullback(snap, state, lower, side, ts_ms)
        if pullback is not None:
            out.append(pullback)

        kept: List[Alert] = []
        for alert in out:
            if isinstance(alert, EntryAlert):
                if self.in_cooldown(symbol, ts_ms):
                    log.info("cooldown_skip symbol=%s setup=%s", symbol, alert.setup)
                    continue
                self._last_entry_ms[symbol] = ts_ms
            kept.append(alert)
        return kept

    # ---- run ----

    async def _fetch_pair(self, symbol: str, now_ms: int) -> Tuple[List[Candle], List[Candle]]:
        higher = await self.provider.fetch_klines(symbol, self.cfg.higher_timeframe, self.cfg.candle_limit)
        lower = await self.provider.fetch_klines(symbol, self.cfg.entry_timeframe, self.cfg.candle_limit)
        return closed_candles(higher, now_ms), closed_candles(lower, now_ms)

    def _symbol_delay_s(self, n_symbols: int) -> float:
        delay_ms = self.cfg.request_delay_ms
        if n_symbols > 75:
            delay_ms = max(300, int(delay_ms * 0.6))
        return delay_ms / 1000.0

    async def run(self, now_ms: Optional[int] = None) -> RunReport:
        ts_ms = _now_ms() if now_ms is None else now_ms
        report = RunReport()

        try:
            symbols = await self.retry.call(
                lambda: self.provider.fetch_top_symbols_by_volume(self.cfg.top_symbols_limit, self.cfg.min_quote_volume),
                label="top_symbols",
            )
        except Exception as e:
            log.warning("symbol_ranking_failed err=%s", e)
            raise RunAborted(f"symbol ranking unavailable: {e}", report) from e

        log.info("scan_start symbols=%d breakout_retest=%s", len(symbols), self.cfg.enable_breakout_retest)
        book = BreakoutBook(
            retest_window_bars=self.breakout_cfg.retest_window_bars,
            retest_atr_mult=self.breakout_cfg.retest_atr_mult,
            volume_mult=self.breakout_cfg.volume_mult,
        )
        delay_s = self._symbol_delay_s(len(symbols))

        for i, symbol in enumerate(symbols):
            if i > 0:
                await self.sleep(delay_s)
            try:
                higher, lower = await self.retry.call(lambda: self._fetch_pair(symbol, ts_ms), label=symbol)
                alerts = self.evaluate_symbol(symbol, higher, lower, book, ts_ms)
            except Exception as e:
                report.errors += 1
                log.warning("scan_symbol_failed symbol=%s err=%s", symbol, e)
                continue

            report.evaluated += 1
            if alerts is None:
                report.skipped += 1
                continue
            for alert in alerts:
                if isinstance(alert, EntryAlert):
                    report.entries.append(alert)
                else:
                    report.pre_setups.append(alert)

        report.entries.sort(key=lambda a: a.score, reverse=True)
        report.entries = report.entries[: self.cfg.top_n_alerts]
        report.pre_setups.sort(key=lambda a: a.score, reverse=True)
        report.pre_setups = report.pre_setups[: self.cfg.max_pre_setups]
        book.clear()

        log.info(
            "scan_done evaluated=%d entries=%d pre_setups=%d skipped=%d errors=%d",
            report.evaluated,
            len(report.entries),
            len(report.pre_setups),
            report.skipped,
            report.errors,
        )
        return report
