from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from .models import BatchResult, EntryAlert, PreSetupAlert, RunReport, Signal


def _fmt_ms(ts_ms: int, tz=timezone.utc) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).astimezone(tz)
    return dt.strftime("%Y-%m-%d %H:%M")


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:g}"


def format_entry(alert: EntryAlert, *, include_reasons: bool = True) -> str:
    lines = [
        f"ENTRY {alert.side} {alert.symbol} | {alert.timeframe} | {alert.setup} | Score: {alert.score:.1f}/10",
        f"Time (UTC): {_fmt_ms(alert.timestamp_ms)}",
        f"Entry: {_fmt_price(alert.entry)} | SL: {_fmt_price(alert.stop)} | "
        f"TP1: {_fmt_price(alert.target1)} | TP2: {_fmt_price(alert.target2)}",
        f"ATR%: {alert.atr_percent:.2f}",
    ]
    if include_reasons and alert.reasons:
        lines.append("Score breakdown:")
        lines.extend(f"  {r}" for r in alert.reasons)
    return "\n".join(lines)


def format_pre_setup(alert: PreSetupAlert) -> str:
    reasons = " | ".join(alert.reasons)
    return (
        f"PRE_SETUP {alert.side} {alert.symbol} | {alert.timeframe} | {alert.setup} | "
        f"Price: {_fmt_price(alert.price)} | ATR%: {alert.atr_percent:.2f} | {reasons}"
    )


def format_signal(sig: Signal) -> str:
    line = (
        f"{sig.strategy_name} {sig.direction} {sig.symbol} {sig.timeframe} @ {_fmt_price(sig.entry_price)} "
        f"SL {_fmt_price(sig.stop_loss)} TP1 {_fmt_price(sig.target1)} strength={sig.strength} "
        f"status={sig.status} at {_fmt_ms(sig.generated_at_ms)}"
    )
    if sig.status24h:
        line += (
            f" | 24h: price={_fmt_price(sig.price24h)} result={_fmt_price(sig.result24h)} "
            f"high={_fmt_price(sig.high24h)} low={_fmt_price(sig.low24h)}"
        )
    return line


def format_history(signals: List[Signal]) -> str:
    if not signals:
        return "No stored signals"
    return "\n".join(format_signal(s) for s in signals)


def format_scan(report: RunReport) -> str:
    lines: List[str] = [
        f"Scanned {report.evaluated} symbols | entries={len(report.entries)} "
        f"pre_setups={len(report.pre_setups)} skipped={report.skipped} errors={report.errors}",
    ]
    for a in report.entries:
        lines.append("")
        lines.append(format_entry(a))
    if report.pre_setups:
        lines.append("")
        lines.extend(format_pre_setup(p) for p in report.pre_setups)
    return "\n".join(lines)


def format_run_report(report: RunReport) -> str:
    return (
        f"evaluated={report.evaluated} created={report.created} duplicates={report.duplicates} "
        f"errors={report.errors} entries={len(report.entries)} pre_setups={len(report.pre_setups)}"
    )


def format_batch(name: str, res: BatchResult) -> str:
    return f"{name}: updated={res.updated} errors={res.errors} iterations={res.iterations}"
