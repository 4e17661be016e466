from __future__ import annotations

import copy
import dataclasses
import json
import logging
import os
from typing import Any, Dict, List, Optional

from .models import CLOSED, OPEN_STATUSES, Signal

log = logging.getLogger("store")

OUTCOME_FIELDS = ("price24h", "result24h", "status24h", "high24h", "low24h", "status")


def _copy(sig: Signal) -> Signal:
    return dataclasses.replace(sig, extra_info=copy.deepcopy(sig.extra_info))


class MemorySignalStore:
    """Signal records keyed by id.

    Reads hand out copies, so a caller never mutates stored state without
    going through ``create_signal`` / ``update_signal_outcome``.
    """

    def __init__(self) -> None:
        self._signals: Dict[str, Signal] = {}

    def __len__(self) -> int:
        return len(self._signals)

    def get(self, signal_id: str) -> Optional[Signal]:
        sig = self._signals.get(signal_id)
        return _copy(sig) if sig is not None else None

    def all(self) -> List[Signal]:
        return [_copy(s) for s in self._signals.values()]

    def find_open_signal(
        self,
        symbol: str,
        strategy_id: str,
        timeframe: str,
        direction: str,
        since_ms: int,
    ) -> Optional[Signal]:
        for s in self._signals.values():
            if (
                s.symbol == symbol
                and s.strategy_id == strategy_id
                and s.timeframe == timeframe
                and s.direction == direction
                and s.status in OPEN_STATUSES
                and s.generated_at_ms >= since_ms
            ):
                return _copy(s)
        return None

    def create_signal(self, signal: Signal) -> Signal:
        """Upsert by id: writing the same signal twice keeps one record."""
        existing = self._signals.get(signal.id)
        if existing is not None:
            log.info("signal_exists id=%s symbol=%s", signal.id[:12], signal.symbol)
            return _copy(existing)
        self._signals[signal.id] = _copy(signal)
        self._persist()
        return _copy(signal)

    def find_signals_needing_reconciliation(self, cutoff_ms: int) -> List[Signal]:
        rows = [s for s in self._signals.values() if s.generated_at_ms <= cutoff_ms and s.status24h is None]
        rows.sort(key=lambda s: s.generated_at_ms)
        return [_copy(s) for s in rows]

    def update_signal_outcome(self, signal_id: str, fields: Dict[str, Any]) -> Signal:
        sig = self._signals.get(signal_id)
        if sig is None:
            raise KeyError(f"unknown signal id: {signal_id}")
        unknown = set(fields) - set(OUTCOME_FIELDS)
        if unknown:
            raise ValueError(f"not outcome fields: {sorted(unknown)}")
        updated = dataclasses.replace(sig, **fields)
        self._signals[signal_id] = updated
        self._persist()
        return _copy(updated)

    def find_signals_missing_high_low(self, limit: int) -> List[Signal]:
        rows = [
            s for s in self._signals.values()
            if s.status24h == CLOSED and (s.high24h is None or s.low24h is None)
        ]
        rows.sort(key=lambda s: s.generated_at_ms, reverse=True)
        return [_copy(s) for s in rows[: max(0, int(limit))]]

    def count_missing_high_low(self) -> int:
        return sum(
            1 for s in self._signals.values()
            if s.status24h == CLOSED and (s.high24h is None or s.low24h is None)
        )

    def _persist(self) -> None:
        pass


class JsonSignalStore(MemorySignalStore):
    """MemorySignalStore written through to one JSON file on every change."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f) or []
            for row in raw:
                sig = Signal.from_dict(row)
                self._signals[sig.id] = sig
            log.info("store_loaded path=%s signals=%d", path, len(self._signals))

    def _persist(self) -> None:
        tmp = self.path + ".tmp"
        d = os.path.dirname(self.path)
        if d:
            os.makedirs(d, exist_ok=True)
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([s.to_dict() for s in self._signals.values()], f, ensure_ascii=True, indent=1)
        os.replace(tmp, self.path)


def open_store(path: str) -> MemorySignalStore:
    if path:
        return JsonSignalStore(path)
    return MemorySignalStore()
