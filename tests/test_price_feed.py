import asyncio
import struct
import sys
import time

sys.path.insert(0, '.')

import pytest

from ingest.price_feed import NoReasonablePrice, PriceResolver
from ingest.price_providers import (
    PYTH_CONF_OFFSET,
    PYTH_EXPO_OFFSET,
    PYTH_MIN_ACCOUNT_SIZE,
    PYTH_PRICE_OFFSET,
    PYTH_PUBLISH_TIME_OFFSET,
    PriceProvider,
    PriceQuote,
    decode_pyth_price,
    now_ms,
)


class DummyProvider(PriceProvider):
    def __init__(self, name, prices, is_oracle=False):
        super().__init__(client=None)
        self.name = name
        self.is_oracle = is_oracle
        self.prices = list(prices)
        self.calls = 0

    async def fetch(self):
        self.calls += 1
        value = self.prices.pop(0) if len(self.prices) > 1 else self.prices[0]
        if isinstance(value, Exception):
            raise value
        if value is None:
            return None
        return PriceQuote(value, now_ms(), 0.0, self.name)

    async def close(self):
        pass


def test_first_reasonable_provider_wins():
    first = DummyProvider('coingecko', [None])
    second = DummyProvider('jupiter', [150.0])
    resolver = PriceResolver([first, second])
    quote = asyncio.run(resolver.get_price())
    assert quote.price == 150.0
    assert quote.source == 'jupiter'


def test_unreasonable_price_skipped():
    resolver = PriceResolver(
        [DummyProvider('coingecko', [float('nan')]), DummyProvider('jupiter', [2_000_000.0]), DummyProvider('binance', [140.0])]
    )
    assert asyncio.run(resolver.get_price()).price == 140.0


def test_cache_served_within_ttl():
    provider = DummyProvider('coingecko', [150.0, 151.0])
    resolver = PriceResolver([provider], cache_ttl_ms=60_000)

    async def _run():
        first = await resolver.get_price()
        second = await resolver.get_price()
        forced = await resolver.get_price(force=True)
        return first, second, forced

    first, second, forced = asyncio.run(_run())
    assert first.price == second.price == 150.0
    assert forced.price == 151.0
    assert provider.calls == 2


def test_provider_error_falls_back_to_cache():
    provider = DummyProvider('coingecko', [150.0, RuntimeError("boom")])
    backup = DummyProvider('jupiter', [999.0])
    resolver = PriceResolver([provider, backup], cache_ttl_ms=0)

    async def _run():
        await resolver.get_price()
        return await resolver.get_price()

    quote = asyncio.run(_run())
    assert quote.price == 150.0
    assert backup.calls == 0


def test_forced_fetch_serves_cache_when_every_provider_fails():
    provider = DummyProvider('coingecko', [150.0, RuntimeError("down")])
    backup = DummyProvider('jupiter', [RuntimeError("down")])
    resolver = PriceResolver([provider, backup], cache_ttl_ms=60_000)

    async def _run():
        await resolver.get_price()
        return await resolver.get_price(force=True)

    quote = asyncio.run(_run())
    assert quote.price == 150.0
    assert quote.source == 'coingecko'
    # force skips the cache shortcut, so every provider is tried first
    assert provider.calls == 2
    assert backup.calls == 1


def test_exhausted_without_cache_raises():
    resolver = PriceResolver([DummyProvider('coingecko', [RuntimeError("down")]), DummyProvider('jupiter', [None])])
    with pytest.raises(NoReasonablePrice):
        asyncio.run(resolver.get_price(force=True))


def test_oracle_price_is_clamped():
    resolver = PriceResolver([DummyProvider('pyth', [0.5], is_oracle=True)], oracle_min_usd=1.0, oracle_max_usd=500.0)
    quote = asyncio.run(resolver.get_price())
    assert quote.price == 1.0
    assert quote.source == 'pyth'


def test_health_reports_divergence():
    oracle = DummyProvider('pyth', [100.0], is_oracle=True)
    reference = DummyProvider('jupiter', [102.0])
    resolver = PriceResolver([reference], max_divergence=0.01, health_oracle=oracle, health_reference=reference)
    health = asyncio.run(resolver.check_health())
    assert not health.healthy
    assert health.divergence == pytest.approx(0.02)


def test_health_without_oracle_has_no_divergence():
    resolver = PriceResolver([DummyProvider('jupiter', [100.0])])
    health = asyncio.run(resolver.check_health())
    assert health.healthy is False
    assert health.divergence is None


def _pyth_account(raw_price, expo, publish_time, conf=0):
    data = bytearray(PYTH_MIN_ACCOUNT_SIZE)
    struct.pack_into('<q', data, PYTH_PRICE_OFFSET, raw_price)
    struct.pack_into('<q', data, PYTH_CONF_OFFSET, conf)
    struct.pack_into('<i', data, PYTH_EXPO_OFFSET, expo)
    struct.pack_into('<q', data, PYTH_PUBLISH_TIME_OFFSET, publish_time)
    return bytes(data)


def test_decode_pyth_price():
    now = time.time()
    quote = decode_pyth_price(_pyth_account(15_025_000_000, -8, int(now) - 5, conf=1_000_000), 60, now_s=now)
    assert quote.price == pytest.approx(150.25)
    assert quote.confidence == pytest.approx(0.01)
    assert quote.source == 'pyth'


def test_decode_pyth_rejects_stale_and_malformed():
    now = time.time()
    assert decode_pyth_price(_pyth_account(15_025_000_000, -8, int(now) - 120), 60, now_s=now) is None
    assert decode_pyth_price(_pyth_account(15_025_000_000, 7, int(now)), 60, now_s=now) is None
    assert decode_pyth_price(b'\x00' * 10, 60, now_s=now) is None
