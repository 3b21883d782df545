import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from ingest.candle_builder import CandleAggregator, bucket_start, timeframe_ms
from ingest.market_data import MarketDataService, bucket_prices, klines_to_candles
from ingest.price_feed import NoReasonablePrice, PriceResolver
from ingest.price_providers import PriceProvider, PriceQuote, now_ms

FIFTEEN_MIN = timeframe_ms('15m')


class DummyProvider(PriceProvider):
    def __init__(self, name, price):
        super().__init__(client=None)
        self.name = name
        self.price = price

    async def fetch(self):
        if isinstance(self.price, Exception):
            raise self.price
        return PriceQuote(self.price, now_ms(), 0.0, self.name)

    async def close(self):
        pass


class DummyClient:
    def __init__(self, payload):
        self.payload = payload
        self.requests = []

    async def get(self, path, params=None, timeout_s=None):
        self.requests.append((path, params))
        return self.payload

    async def close(self):
        pass


def kline_rows(count):
    current = bucket_start(now_ms(), '15m')
    rows = []
    # includes the still-forming kline as the last row
    for i in range(count, -1, -1):
        ts = current - i * FIFTEEN_MIN
        price = 150.0 + (count - i) * 0.1
        rows.append([ts, str(price), str(price + 0.5), str(price - 0.5), str(price + 0.2), '1234.5', ts + FIFTEEN_MIN - 1])
    return rows


def make_service(provider_price=150.0, fallback=None, binance_payload=None, coingecko_payload=None):
    resolver = PriceResolver([DummyProvider('coingecko', provider_price)])
    return MarketDataService(
        resolver,
        CandleAggregator(['15m', '1h', '4h']),
        fallback_provider=fallback,
        binance_client=DummyClient(binance_payload) if binance_payload is not None else None,
        coingecko_client=DummyClient(coingecko_payload) if coingecko_payload is not None else None,
    )


def test_klines_to_candles_parses_strings():
    candles = klines_to_candles([[0, '1.5', '2.0', '1.0', '1.75', '10', 899999]])
    assert candles[0].open == 1.5
    assert candles[0].close == 1.75
    assert candles[0].volume == 10.0


def test_bucket_prices_keeps_closed_buckets_only():
    base = 0
    prices = [
        (base, 10.0), (base + 60_000, 12.0), (base + 120_000, 9.0), (base + 840_000, 11.0),
        (base + FIFTEEN_MIN, 20.0), (base + FIFTEEN_MIN + 60_000, float('nan')),
        (base + 2 * FIFTEEN_MIN + 1, 30.0),
    ]
    candles = bucket_prices(prices, '15m', until_ms=2 * FIFTEEN_MIN + 5)
    assert [c.timestamp for c in candles] == [0, FIFTEEN_MIN]
    first = candles[0]
    assert (first.open, first.high, first.low, first.close) == (10.0, 12.0, 9.0, 11.0)
    assert candles[1].close == 20.0


def test_fast_bootstrap_from_binance_drops_forming_kline():
    service = make_service(binance_payload=kline_rows(200))
    assert asyncio.run(service.bootstrap_fast_timeframe(70, minimum=50))
    candles = service.get_candles('15m')
    assert len(candles) == 70
    assert candles[-1].timestamp < bucket_start(now_ms(), '15m')
    assert service.has_enough_data('15m', 70)
    assert service.binance_client.requests[0][1]['limit'] == 120


def test_bootstrap_rejects_short_history():
    service = make_service(binance_payload=kline_rows(10))
    assert not asyncio.run(service.bootstrap_fast_timeframe(70, minimum=50))
    assert service.get_candles('15m') == []


def test_slow_bootstrap_from_coingecko_prices():
    now = now_ms()
    step = 30 * 60 * 1000
    prices = [[now - i * step, 150.0 + i * 0.01] for i in range(24 * 2 * 20, 0, -1)]
    service = make_service(coingecko_payload={'prices': prices})
    assert asyncio.run(service.bootstrap_slow_timeframe(20, minimum=20))
    assert len(service.get_candles('4h')) == 20


def test_update_feeds_aggregator():
    service = make_service()
    quote = asyncio.run(service.update())
    assert quote.price == 150.0
    assert quote.source == 'coingecko'
    assert service.get_current_candle('15m').close == 150.0
    assert service.get_last_update_time() == quote.timestamp


def test_update_uses_fallback_ticker_when_resolver_exhausted():
    service = make_service(provider_price=RuntimeError("down"), fallback=DummyProvider('binance', 140.0))
    quote = asyncio.run(service.update())
    assert quote.price == 140.0
    assert quote.source == 'binance'


def test_update_returns_none_without_any_price():
    service = make_service(provider_price=RuntimeError("down"))
    assert asyncio.run(service.update()) is None
    assert service.get_current_candle('15m') is None


def test_current_price_falls_back_to_preloaded_candles():
    service = make_service(provider_price=RuntimeError("down"), binance_payload=kline_rows(200))
    asyncio.run(service.bootstrap_fast_timeframe(70, minimum=50))
    quote = asyncio.run(service.get_current_price(force=True))
    assert quote.source == 'preload'
    assert quote.price == service.get_candles('15m')[-1].close


def test_current_price_raises_with_nothing_to_serve():
    service = make_service(provider_price=RuntimeError("down"))
    with pytest.raises(NoReasonablePrice):
        asyncio.run(service.get_current_price())
