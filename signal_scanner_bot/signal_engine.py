from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from .config import Config, ScannerConfig, StrategyEntry
from .errors import RunAborted
from .models import Candle, RunReport, StrategyRef
from .retry import RetryPolicy
from .scanner import Scanner
from .signal_gate import SignalGate
from .strategies import SCANNER_APLUS, Strategy, build_strategy
from .timefilter import now_ms as _now_ms

log = logging.getLogger("engine")


def scanner_config_with(base: ScannerConfig, params: dict) -> ScannerConfig:
    """Apply strategy params that name ScannerConfig fields; others are ignored."""
    names = {f.name for f in dataclasses.fields(ScannerConfig)}
    known = {k: v for k, v in (params or {}).items() if k in names}
    unknown = sorted(set(params or {}) - names)
    if unknown:
        log.warning("scanner_params_ignored keys=%s", unknown)
    return dataclasses.replace(base, **known)


class SignalEngine:
    """Runs every enabled strategy once and routes results through the dedup gate."""

    def __init__(
        self,
        cfg: Config,
        provider,
        store,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self.provider = provider
        self.store = store
        self.sleep = sleep
        self.gate = SignalGate(store, cfg.engine.dedup_window_minutes)
        self.retry = RetryPolicy.from_delay_ms(cfg.scanner.request_delay_ms, cfg.scanner.max_retries, sleep=sleep)

        enabled = [e for e in cfg.strategies if e.enabled]
        self.scanner_entry: Optional[StrategyEntry] = next((e for e in enabled if e.name == SCANNER_APLUS), None)
        scanner_cfg = scanner_config_with(cfg.scanner, self.scanner_entry.params) if self.scanner_entry else cfg.scanner
        self.scanner = Scanner(
            provider,
            scanner_cfg,
            regime_cfg=cfg.regime,
            breakout_cfg=cfg.breakout,
            risk_cfg=cfg.risk,
            retry=self.retry,
            sleep=sleep,
        )

        self.strategies: List[Tuple[StrategyRef, Strategy]] = []
        for e in enabled:
            if e.name == SCANNER_APLUS:
                continue
            strat = build_strategy(e, risk_cfg=cfg.risk, regime_cfg=cfg.regime, breakout_cfg=cfg.breakout)
            self.strategies.append((StrategyRef(id=e.name, display_name=e.display_name or e.name), strat))

    async def _fetch(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        return await self.retry.call(
            lambda: self.provider.fetch_klines(symbol, timeframe, limit),
            label=f"{symbol}:{timeframe}",
        )

    async def run_scanner(self, now_ms: int) -> RunReport:
        if self.scanner_entry is None:
            return RunReport()
        ref = StrategyRef(id=self.scanner_entry.name, display_name=self.scanner_entry.display_name or self.scanner_entry.name)
        report = await self.scanner.run(now_ms)
        for alert in report.entries:
            try:
                sig = self.gate.submit_alert(alert, ref, now_ms)
            except Exception as e:
                report.errors += 1
                log.warning("persist_failed symbol=%s strategy=%s err=%s", alert.symbol, ref.id, e)
                continue
            if sig is None:
                report.duplicates += 1
            else:
                report.created += 1
        return report

    async def _run_strategy(self, ref: StrategyRef, strat: Strategy, now_ms: int, report: RunReport) -> None:
        first = True
        for symbol in self.cfg.engine.symbols:
            for tf in self.cfg.engine.timeframes:
                if not strat.supports(tf):
                    continue
                if not first:
                    await self.sleep(self.cfg.engine.request_delay_ms / 1000.0)
                first = False
                try:
                    result = await strat.evaluate(symbol, tf, self._fetch, now_ms)
                    report.evaluated += 1
                    if result is None:
                        continue
                    sig = self.gate.submit(symbol=symbol, timeframe=tf, strategy=ref, result=result, now_ms=now_ms)
                except Exception as e:
                    report.errors += 1
                    log.warning("strategy_failed strategy=%s symbol=%s tf=%s err=%s", ref.id, symbol, tf, e)
                    continue
                if sig is None:
                    report.duplicates += 1
                else:
                    report.created += 1

    async def run_all(self, now_ms: Optional[int] = None) -> RunReport:
        """Scanner first, then every strategy.

        A ranking failure in the scanner does not stop the strategies; it is
        raised as RunAborted with the combined report once they have run.
        """
        ts = _now_ms() if now_ms is None else now_ms
        report = RunReport()
        aborted: Optional[RunAborted] = None

        if self.scanner_entry is not None:
            try:
                scan = await self.run_scanner(ts)
                report.merge(scan)
                report.entries.extend(scan.entries)
                report.pre_setups.extend(scan.pre_setups)
            except RunAborted as e:
                report.errors += 1
                if e.report is not None:
                    report.merge(e.report)
                log.warning("scanner_aborted err=%s", e)
                aborted = e

        for ref, strat in self.strategies:
            await self._run_strategy(ref, strat, ts, report)

        log.info(
            "run_all_done evaluated=%d created=%d duplicates=%d errors=%d",
            report.evaluated,
            report.created,
            report.duplicates,
            report.errors,
        )
        if aborted is not None:
            raise RunAborted(str(aborted), report) from aborted
        return report
