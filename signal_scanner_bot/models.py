from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

LONG = "LONG"
SHORT = "SHORT"

BUY = "BUY"
SELL = "SELL"

TREND_PULLBACK = "TREND_PULLBACK"
BREAKOUT_RETEST = "BREAKOUT_RETEST"

PRE_SETUP = "PRE_SETUP"
ENTRY = "ENTRY"

RANGE = "RANGE"
TREND = "TREND"

BULL = "BULL"
BEAR = "BEAR"
NEUTRAL = "NEUTRAL"

# Signal.status
STATUS_NEW = "NEW"
STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_HIT_TARGET = "HIT_TARGET"
STATUS_HIT_STOP = "HIT_STOP"
STATUS_EXPIRED = "EXPIRED"
OPEN_STATUSES = (STATUS_NEW, STATUS_IN_PROGRESS)

# Signal.status24h
CLOSED = "CLOSED"


def side_to_direction(side: str) -> str:
    return BUY if side == LONG else SELL


@dataclass(frozen=True)
class Candle:
    open_time_ms: int
    close_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def timestamp(self) -> int:
        return self.open_time_ms


@dataclass(frozen=True)
class RegimeState:
    regime: str  # RANGE or TREND
    bias: str  # BULL, BEAR or NEUTRAL

    @property
    def tradable(self) -> bool:
        """TREND without a directional bias is an explicit no-entry outcome."""
        return not (self.regime == TREND and self.bias == NEUTRAL)

    def allows(self, side: str) -> bool:
        if side == LONG:
            return self.bias == BULL
        return self.bias == BEAR


@dataclass
class PendingBreakout:
    side: str
    level: float
    detected_at_index: int
    expires_at_index: int


@dataclass(frozen=True)
class PreSetupAlert:
    """Regime and zone qualify but nothing triggered yet. Carries no stop/targets."""

    symbol: str
    side: str
    setup: str
    timeframe: str
    score: float
    price: float
    atr_percent: float
    reasons: Tuple[str, ...]
    timestamp_ms: int

    alert_type = PRE_SETUP


@dataclass(frozen=True)
class EntryAlert:
    symbol: str
    side: str
    setup: str
    timeframe: str
    score: float
    entry: float
    stop: float
    target1: float
    target2: float
    atr_percent: float
    reasons: Tuple[str, ...]
    timestamp_ms: int

    alert_type = ENTRY


@dataclass(frozen=True)
class StrategyRef:
    id: str
    display_name: str


@dataclass(frozen=True)
class StrategyResult:
    direction: str  # BUY or SELL
    entry_price: float
    stop_loss: float
    target1: float
    strength: int
    extra_info: dict
    target2: Optional[float] = None
    target3: Optional[float] = None


@dataclass
class Signal:
    id: str
    symbol: str
    direction: str
    timeframe: str
    strategy_id: str
    strategy_name: str
    entry_price: float
    stop_loss: float
    target1: float
    target2: Optional[float]
    target3: Optional[float]
    strength: int
    status: str
    generated_at_ms: int
    extra_info: dict = field(default_factory=dict)
    price24h: Optional[float] = None
    result24h: Optional[float] = None
    status24h: Optional[str] = None
    high24h: Optional[float] = None
    low24h: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, raw: Dict[str, object]) -> "Signal":
        return cls(**raw)


@dataclass
class RunReport:
    evaluated: int = 0
    created: int = 0
    duplicates: int = 0
    errors: int = 0
    skipped: int = 0
    entries: List[EntryAlert] = field(default_factory=list)
    pre_setups: List[PreSetupAlert] = field(default_factory=list)

    def merge(self, other: "RunReport") -> None:
        self.evaluated += other.evaluated
        self.created += other.created
        self.duplicates += other.duplicates
        self.errors += other.errors
        self.skipped += other.skipped


@dataclass
class BatchResult:
    updated: int = 0
    errors: int = 0
    iterations: int = 0
