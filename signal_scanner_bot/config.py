from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import os
import yaml


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


@dataclass
class AppConfig:
    name: str = "Signal Scanner"
    log_level: str = "INFO"


@dataclass
class ProviderConfig:
    market: str = "futures"  # futures|spot
    rest_timeout_s: int = 20
    ws_heartbeat_s: int = 20


@dataclass
class ScannerConfig:
    # Liquidity universe
    top_symbols_limit: int = 50
    min_quote_volume: float = 0.0

    # Anti-trade volatility band (ATR% of the entry timeframe)
    min_atr_percent: float = 0.3
    max_atr_percent: float = 2.5

    min_entry_score: float = 7.0
    top_n_alerts: int = 3
    max_pre_setups: int = 10
    pre_setup_score: float = 5.0
    min_risk_reward: float = 2.0

    enable_breakout_retest: bool = False
    breakout_period: int = 48

    cooldown_minutes: int = 60

    # Rate-limit control
    request_delay_ms: int = 500
    max_retries: int = 3

    higher_timeframe: str = "1h"
    entry_timeframe: str = "15m"
    candle_limit: int = 300


@dataclass
class RegimeConfig:
    trend_threshold: float = 0.003  # |EMA20-EMA50| / close
    range_threshold: float = 0.05  # Bollinger bandwidth


@dataclass
class BreakoutConfig:
    retest_window_bars: int = 6
    retest_atr_mult: float = 0.3
    volume_mult: float = 1.5


@dataclass
class RiskConfig:
    structure_lookback: int = 10
    stop_atr_mult: float = 1.2
    target_r_multiples: List[float] = field(default_factory=lambda: [1.0, 2.0, 3.0])


@dataclass
class StrategyEntry:
    name: str
    display_name: str = ""
    enabled: bool = True
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EngineConfig:
    symbols: List[str] = field(default_factory=lambda: ["BTCUSDT", "ETHUSDT", "BNBUSDT", "SOLUSDT", "ADAUSDT"])
    timeframes: List[str] = field(default_factory=lambda: ["1h", "4h"])
    request_delay_ms: int = 500
    dedup_window_minutes: int = 120


@dataclass
class OutcomesConfig:
    window_hours: int = 24
    candle_interval: str = "1h"
    lookback_margin_hours: int = 1
    batch_size: int = 500
    max_iterations: int = 10
    item_delay_ms: int = 200
    chunk_delay_ms: int = 1000


@dataclass
class StoreConfig:
    path: str = ""  # empty -> in-memory


@dataclass
class RunnerConfig:
    clock_symbol: str = "BTCUSDT"
    clock_timeframe: str = "15m"
    reconcile_every_minutes: int = 60


def _default_strategies() -> List[StrategyEntry]:
    return [
        StrategyEntry(name="SCANNER_APLUS", display_name="Scanner A+"),
        StrategyEntry(name="MULTI_TIMEFRAME", display_name="Multi-Timeframe 4H/1H"),
    ]


@dataclass
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    regime: RegimeConfig = field(default_factory=RegimeConfig)
    breakout: BreakoutConfig = field(default_factory=BreakoutConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    strategies: List[StrategyEntry] = field(default_factory=_default_strategies)
    engine: EngineConfig = field(default_factory=EngineConfig)
    outcomes: OutcomesConfig = field(default_factory=OutcomesConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)


def _apply_env(cfg: Config) -> Config:
    # env overrides (useful on servers)
    cfg.app.log_level = _env_override(cfg.app.log_level, "SCANNER_LOG_LEVEL")
    cfg.store.path = _env_override(cfg.store.path, "SCANNER_STORE_PATH")
    cfg.provider.market = _env_override(cfg.provider.market, "SCANNER_MARKET")
    cfg.scanner.min_entry_score = _env_override(cfg.scanner.min_entry_score, "SCANNER_MIN_ENTRY_SCORE")
    cfg.scanner.top_symbols_limit = _env_override(cfg.scanner.top_symbols_limit, "SCANNER_TOP_SYMBOLS_LIMIT")
    cfg.scanner.request_delay_ms = _env_override(cfg.scanner.request_delay_ms, "SCANNER_REQUEST_DELAY_MS")
    cfg.scanner.max_retries = _env_override(cfg.scanner.max_retries, "SCANNER_MAX_RETRIES")
    return cfg


def default_config() -> Config:
    return _apply_env(Config())


def config_from_dict(raw: Dict[str, Any]) -> Config:
    strategies_raw: Optional[List[Dict[str, Any]]] = raw.get("strategies")
    if strategies_raw is None:
        strategies = _default_strategies()
    else:
        strategies = [StrategyEntry(**s) for s in strategies_raw]
    for s in strategies:
        if not s.display_name:
            s.display_name = s.name
        if s.params is None:
            s.params = {}

    cfg = Config(
        app=AppConfig(**raw.get("app", {})),
        provider=ProviderConfig(**raw.get("provider", {})),
        scanner=ScannerConfig(**raw.get("scanner", {})),
        regime=RegimeConfig(**raw.get("regime", {})),
        breakout=BreakoutConfig(**raw.get("breakout", {})),
        risk=RiskConfig(**raw.get("risk", {})),
        strategies=strategies,
        engine=EngineConfig(**raw.get("engine", {})),
        outcomes=OutcomesConfig(**raw.get("outcomes", {})),
        store=StoreConfig(**raw.get("store", {})),
        runner=RunnerConfig(**raw.get("runner", {})),
    )
    return _apply_env(cfg)


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return config_from_dict(raw)
