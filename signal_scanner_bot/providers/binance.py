from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp
import websockets

from ..errors import RateLimited, TransientFetchError
from ..models import Candle

log = logging.getLogger("binance")


def _rest_base(market: str) -> str:
    return "https://fapi.binance.com" if market == "futures" else "https://api.binance.com"


def _rest_path(market: str, endpoint: str) -> str:
    # endpoint: klines | ticker/price | ticker/24hr
    return f"/fapi/v1/{endpoint}" if market == "futures" else f"/api/v3/{endpoint}"


def _ws_url(market: str) -> str:
    return "wss://fstream.binance.com/ws" if market == "futures" else "wss://stream.binance.com:9443/ws"


def _stream_name(symbol: str, tf: str) -> str:
    return f"{symbol.lower()}@kline_{tf}"


def parse_kline_row(row: List[Any]) -> Candle:
    # [0]=open time, [6]=close time
    return Candle(
        open_time_ms=int(row[0]),
        close_time_ms=int(row[6]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


def rank_by_quote_volume(tickers: List[Dict[str, Any]], limit: int, min_quote_volume: float = 0.0) -> List[str]:
    """USDT pairs ordered by 24h quote volume, largest first."""
    rows = []
    for t in tickers:
        symbol = str(t.get("symbol", ""))
        if not symbol.endswith("USDT"):
            continue
        qv = float(t.get("quoteVolume") or 0.0)
        if qv < min_quote_volume:
            continue
        rows.append((qv, symbol))
    rows.sort(key=lambda r: r[0], reverse=True)
    return [s for _, s in rows[: max(0, int(limit))]]


@dataclass(frozen=True)
class KlineEvent:
    symbol: str
    timeframe: str
    candle: Candle


class BinanceProvider:
    """Binance REST/WS market data.

    REST calls do not retry on their own. They raise ``RateLimited`` on
    418/429 and ``TransientFetchError`` on anything else that went wrong, and
    the caller's ``RetryPolicy`` decides what to do.
    """

    def __init__(
        self,
        market: str = "futures",
        *,
        rest_timeout_s: int = 20,
        ws_heartbeat_s: int = 20,
        rest_conn_limit: int = 40,
        rest_conn_limit_per_host: int = 10,
    ):
        self.market = market
        self.rest_timeout_s = rest_timeout_s
        self.ws_heartbeat_s = ws_heartbeat_s
        self.rest_conn_limit = rest_conn_limit
        self.rest_conn_limit_per_host = rest_conn_limit_per_host

        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.rest_timeout_s,
            connect=min(10, self.rest_timeout_s),
            sock_connect=min(10, self.rest_timeout_s),
            sock_read=max(10, int(self.rest_timeout_s * 0.75)),
        )

    def _connector(self) -> aiohttp.TCPConnector:
        return aiohttp.TCPConnector(
            limit=self.rest_conn_limit,
            limit_per_host=self.rest_conn_limit_per_host,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout(), connector=self._connector())
        return self._session

    async def _get_json(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = _rest_base(self.market) + _rest_path(self.market, endpoint)
        sess = await self._get_session()
        try:
            async with sess.get(url, params=params) as resp:
                # Rate-limit / ban signals
                if resp.status in (418, 429):
                    txt = await resp.text()
                    retry_after = resp.headers.get("Retry-After")
                    log.warning("rest_rate_limited status=%s endpoint=%s body=%s", resp.status, endpoint, txt[:200])
                    raise RateLimited(
                        resp.status,
                        txt[:200],
                        float(retry_after) if (retry_after and retry_after.isdigit()) else None,
                    )

                if resp.status != 200:
                    txt = await resp.text()
                    raise TransientFetchError(f"Binance {endpoint} failed: {resp.status} {txt[:500]}")

                # Some proxies return a wrong content-type; be tolerant.
                return await resp.json(content_type=None)
        except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as e:
            raise TransientFetchError(f"Binance {endpoint} request error: {e!r}") from e

    async def fetch_klines(
        self,
        symbol: str,
        timeframe: str,
        limit: int,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> List[Candle]:
        params: Dict[str, Any] = {"symbol": symbol.upper(), "interval": timeframe, "limit": int(limit)}
        if start_ms is not None:
            params["startTime"] = int(start_ms)
        if end_ms is not None:
            params["endTime"] = int(end_ms)

        data = await self._get_json("klines", params)
        try:
            return [parse_kline_row(row) for row in data]
        except (TypeError, ValueError, IndexError) as e:
            raise TransientFetchError(f"Binance klines parse error symbol={symbol} tf={timeframe}: {e}") from e

    async def fetch_current_price(self, symbol: str) -> float:
        data = await self._get_json("ticker/price", {"symbol": symbol.upper()})
        try:
            return float(data["price"])
        except (KeyError, TypeError, ValueError) as e:
            raise TransientFetchError(f"Binance price parse error symbol={symbol}: {e}") from e

    async def fetch_top_symbols_by_volume(self, limit: int, min_quote_volume: float = 0.0) -> List[str]:
        data = await self._get_json("ticker/24hr")
        if not isinstance(data, list):
            raise TransientFetchError("Binance ticker/24hr returned a non-list payload")
        try:
            return rank_by_quote_volume(data, limit, min_quote_volume)
        except (TypeError, ValueError) as e:
            raise TransientFetchError(f"Binance ticker/24hr parse error: {e}") from e

    async def stream_klines(self, symbols: List[str], timeframes: List[str]) -> AsyncIterator[KlineEvent]:
        """Yields CLOSED klines for all (symbol, tf). Auto-reconnects."""
        streams = [_stream_name(sym, tf) for sym in symbols for tf in timeframes]
        ws_url = _ws_url(self.market)

        sub_msg = {"method": "SUBSCRIBE", "params": streams, "id": 1}

        backoff = 1
        while True:
            try:
                async with websockets.connect(
                    ws_url,
                    ping_interval=self.ws_heartbeat_s,
                    ping_timeout=self.ws_heartbeat_s,
                    close_timeout=5,
                    max_queue=5000,
                ) as ws:
                    backoff = 1
                    await ws.send(json.dumps(sub_msg))
                    log.info("ws_subscribed streams=%d market=%s", len(streams), self.market)

                    async for msg in ws:
                        try:
                            j = json.loads(msg)
                        except ValueError:
                            continue
                        if "result" in j and j.get("id") == 1:
                            continue  # subscribe ack

                        data = j.get("data") or j
                        if not isinstance(data, dict) or data.get("e") != "kline":
                            continue

                        k = data.get("k", {})
                        if not k.get("x", False):
                            continue  # only closed candles

                        c = Candle(
                            open_time_ms=int(k.get("t")),
                            close_time_ms=int(k.get("T")),
                            open=float(k.get("o")),
                            high=float(k.get("h")),
                            low=float(k.get("l")),
                            close=float(k.get("c")),
                            volume=float(k.get("v")),
                        )
                        yield KlineEvent(symbol=k.get("s", "").upper(), timeframe=k.get("i", ""), candle=c)

            except (OSError, websockets.WebSocketException, asyncio.TimeoutError) as e:
                log.warning("ws_error err=%s reconnect_in=%ss", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60)
