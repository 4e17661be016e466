import asyncio

import pytest

from signal_scanner_bot.errors import RateLimited, TransientFetchError
from signal_scanner_bot.providers.binance import (
    BinanceProvider,
    _rest_path,
    parse_kline_row,
    rank_by_quote_volume,
)


class _Resp:
    def __init__(self, status, payload=None, text="", headers=None):
        self.status = status
        self._payload = payload
        self._text = text
        self.headers = headers or {}

    async def text(self):
        return self._text

    async def json(self, content_type=None):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _Session:
    closed = False

    def __init__(self, resp):
        self.resp = resp
        self.requests = []

    def get(self, url, params=None):
        self.requests.append((url, params))
        return self.resp


def _provider(resp, market="futures"):
    p = BinanceProvider(market=market)
    p._session = _Session(resp)
    return p


def test_parse_kline_row():
    row = [1700000000000, "100.0", "101.5", "99.5", "101.0", "12.5", 1700000899999, "1250", 10, "6", "600", "0"]
    c = parse_kline_row(row)
    assert c.open_time_ms == 1700000000000
    assert c.close_time_ms == 1700000899999
    assert (c.open, c.high, c.low, c.close, c.volume) == (100.0, 101.5, 99.5, 101.0, 12.5)


def test_rank_by_quote_volume():
    tickers = [
        {"symbol": "BTCUSDT", "quoteVolume": "900"},
        {"symbol": "ETHBTC", "quoteVolume": "5000"},
        {"symbol": "SOLUSDT", "quoteVolume": "1200"},
        {"symbol": "DOGEUSDT", "quoteVolume": "10"},
        {"symbol": "XRPUSDT", "quoteVolume": None},
    ]
    assert rank_by_quote_volume(tickers, 10) == ["SOLUSDT", "BTCUSDT", "DOGEUSDT", "XRPUSDT"]
    assert rank_by_quote_volume(tickers, 1) == ["SOLUSDT"]
    assert rank_by_quote_volume(tickers, 10, min_quote_volume=100) == ["SOLUSDT", "BTCUSDT"]


def test_rest_paths():
    assert _rest_path("futures", "klines") == "/fapi/v1/klines"
    assert _rest_path("spot", "ticker/24hr") == "/api/v3/ticker/24hr"


def test_fetch_klines_sends_window_params():
    p = _provider(_Resp(200, [[0, "1", "2", "0.5", "1.5", "3", 899999]]))
    candles = asyncio.run(p.fetch_klines("btcusdt", "1h", 28, start_ms=10, end_ms=20))
    assert len(candles) == 1 and candles[0].close == 1.5
    url, params = p._session.requests[0]
    assert url == "https://fapi.binance.com/fapi/v1/klines"
    assert params == {"symbol": "BTCUSDT", "interval": "1h", "limit": 28, "startTime": 10, "endTime": 20}


def test_rate_limit_maps_to_rate_limited():
    p = _provider(_Resp(429, text="slow down", headers={"Retry-After": "7"}))
    with pytest.raises(RateLimited) as exc:
        asyncio.run(p.fetch_current_price("BTCUSDT"))
    assert exc.value.status == 429
    assert exc.value.retry_after == 7.0


@pytest.mark.parametrize(
    "resp",
    [
        _Resp(500, text="oops"),
        _Resp(200, ValueError("not json")),
        _Resp(200, {"nope": 1}),
    ],
)
def test_other_failures_are_transient(resp):
    p = _provider(resp, market="spot")
    with pytest.raises(TransientFetchError):
        asyncio.run(p.fetch_current_price("BTCUSDT"))


def test_top_symbols_needs_a_list():
    p = _provider(_Resp(200, {"code": -1}))
    with pytest.raises(TransientFetchError):
        asyncio.run(p.fetch_top_symbols_by_volume(10))
