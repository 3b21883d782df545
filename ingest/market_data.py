import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ingest.candle_builder import Candle, CandleAggregator, Tick, bucket_start, timeframe_ms
from ingest.price_feed import NoReasonablePrice, PriceHealth, PriceResolver
from ingest.price_providers import PriceProvider, PriceQuote, now_ms
from ingest.rest_client import RESTClient


logger = logging.getLogger(__name__)

BINANCE_KLINE_LIMIT = 1000


def klines_to_candles(rows: Iterable[Sequence[Any]]) -> List[Candle]:
    """Convert Binance kline rows ``[open_time, o, h, l, c, v, ...]`` to candles."""
    candles = []
    for row in rows:
        candles.append(Candle(
            timestamp=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        ))
    return candles


def bucket_prices(prices: Iterable[Sequence[float]], timeframe: str, until_ms: int) -> List[Candle]:
    """Bucket ``[ts, price]`` samples into closed candles ending at or before ``until_ms``."""
    span = timeframe_ms(timeframe)
    last_closed_end = (int(until_ms) // span) * span
    buckets: Dict[int, List[float]] = {}
    for ts, price in prices:
        if price is None or not math.isfinite(price) or price <= 0:
            continue
        start = bucket_start(ts, timeframe)
        if start + span > last_closed_end:
            continue
        buckets.setdefault(start, []).append(float(price))

    candles = []
    for start in sorted(buckets):
        values = buckets[start]
        candles.append(Candle(
            timestamp=start,
            open=values[0],
            high=max(values),
            low=min(values),
            close=values[-1],
            volume=0.0,
        ))
    return candles


class MarketDataService:
    """Own the price resolver and candle aggregator and bootstrap history at startup."""

    def __init__(
        self,
        price_feed: PriceResolver,
        candles: CandleAggregator,
        fallback_provider: Optional[PriceProvider] = None,
        binance_client: Optional[RESTClient] = None,
        coingecko_client: Optional[RESTClient] = None,
        binance_symbol: str = 'SOLUSDT',
        coingecko_id: str = 'solana',
        check_interval_ms: int = 5000,
        last_tick_max_age_s: float = 60.0,
        fast_timeframe: str = '15m',
        slow_timeframe: str = '4h',
        history_timeout_s: float = 15.0,
    ):
        self.price_feed = price_feed
        self.candles = candles
        self.fallback_provider = fallback_provider
        self.binance_client = binance_client
        self.coingecko_client = coingecko_client
        self.binance_symbol = binance_symbol
        self.coingecko_id = coingecko_id
        self.check_interval_ms = int(check_interval_ms)
        self.last_tick_max_age_ms = int(last_tick_max_age_s * 1000)
        self.fast_timeframe = fast_timeframe
        self.slow_timeframe = slow_timeframe
        self.history_timeout_s = history_timeout_s
        self.last_update: int = 0
        self.last_tick_quote: Optional[PriceQuote] = None

    async def initialize(
        self,
        slow_count: int,
        fast_count: int,
        preload_days: int = 7,
        slow_min: int = 20,
        fast_min: int = 50,
        preload_sample_minutes: int = 15,
    ) -> None:
        try:
            await self.bootstrap_slow_timeframe(slow_count, slow_min)
        except Exception as exc:
            logger.warning("%s bootstrap failed at init: %s", self.slow_timeframe, exc)
        try:
            await self.bootstrap_fast_timeframe(fast_count, fast_min)
        except Exception as exc:
            logger.warning("%s bootstrap failed at init: %s", self.fast_timeframe, exc)
        try:
            await self.preload_historical_prices(preload_days, preload_sample_minutes)
        except Exception as exc:
            logger.warning("Historical preload failed at init: %s", exc)
        await self.update()

    async def _fetch_binance_candles(self, interval: str, count: int) -> List[Candle]:
        if self.binance_client is None:
            return []
        limit = min(max(count, 1), BINANCE_KLINE_LIMIT)
        rows = await self.binance_client.get(
            '/api/v3/klines',
            params={'symbol': self.binance_symbol, 'interval': interval, 'limit': limit},
            timeout_s=self.history_timeout_s,
        )
        if not isinstance(rows, list):
            raise ValueError("Invalid Binance klines response")
        candles = klines_to_candles(rows)
        # The newest kline is still forming
        closed_before = bucket_start(now_ms(), interval)
        return [c for c in candles if c.timestamp < closed_before]

    async def _fetch_coingecko_prices(self, days: int) -> List[Tuple[int, float]]:
        if self.coingecko_client is None:
            return []
        payload = await self.coingecko_client.get(
            f'/coins/{self.coingecko_id}/market_chart',
            params={'vs_currency': 'usd', 'days': days},
            timeout_s=self.history_timeout_s,
        )
        prices = payload.get('prices') if isinstance(payload, dict) else None
        if not isinstance(prices, list):
            raise ValueError("Invalid CoinGecko market_chart response")
        return [(int(ts), float(price)) for ts, price in prices]

    async def _fetch_coingecko_candles(self, timeframe: str, count: int) -> List[Candle]:
        days = math.ceil(count * timeframe_ms(timeframe) / 86_400_000) + 1
        prices = await self._fetch_coingecko_prices(days)
        return bucket_prices(prices, timeframe, now_ms())[-count:]

    def _inject(self, timeframe: str, candles: List[Candle], count: int, minimum: int, source: str) -> bool:
        selected = candles[-count:]
        if len(selected) < min(minimum, count):
            logger.warning(
                "%s bootstrap from %s returned %s candles (need %s)",
                timeframe,
                source,
                len(selected),
                min(minimum, count),
            )
            return False
        self.candles.inject_historical_candles(timeframe, selected)
        logger.info("Injected %s %s candles from %s", len(selected), timeframe, source)
        return True

    async def bootstrap_slow_timeframe(self, count: int, minimum: int = 20) -> bool:
        tf = self.slow_timeframe
        if count <= 0:
            return False
        try:
            candles = await self._fetch_coingecko_candles(tf, count)
            if self._inject(tf, candles, count, minimum, 'coingecko'):
                return True
        except Exception as exc:
            logger.warning("%s bootstrap from CoinGecko failed: %s", tf, exc)
        try:
            candles = await self._fetch_binance_candles(tf, max(count, minimum))
            return self._inject(tf, candles, count, minimum, 'binance')
        except Exception as exc:
            logger.warning("%s bootstrap from Binance failed: %s", tf, exc)
        return False

    async def bootstrap_fast_timeframe(self, count: int, minimum: int = 50) -> bool:
        tf = self.fast_timeframe
        if count <= 0:
            return False
        try:
            candles = await self._fetch_binance_candles(tf, max(count, 120))
            if self._inject(tf, candles, count, minimum, 'binance'):
                return True
        except Exception as exc:
            logger.warning("%s bootstrap from Binance failed: %s", tf, exc)
        try:
            candles = await self._fetch_coingecko_candles(tf, count)
            return self._inject(tf, candles, count, minimum, 'coingecko')
        except Exception as exc:
            logger.warning("%s bootstrap from CoinGecko failed: %s", tf, exc)
        return False

    async def preload_historical_prices(self, days: int = 7, sample_minutes: int = 15) -> int:
        """Replay sampled historical prices as ticks so untouched timeframes have history."""
        prices = await self._fetch_coingecko_prices(days)
        step = sample_minutes * 60 * 1000
        sampled = 0
        last_ts = None
        for ts, price in prices:
            if price <= 0:
                continue
            if last_ts is None or ts - last_ts >= step:
                self.candles.add_tick(Tick(price=price, timestamp=ts, volume=0.0))
                last_ts = ts
                sampled += 1
        logger.info("Preloaded %s historical ticks", sampled)
        return sampled

    async def update(self) -> Optional[PriceQuote]:
        """Fetch one forced price and feed it to the aggregator as a tick.

        Falls back to the secondary ticker, then to the last tick while it is
        still young. Returns None when no price is available this cycle.
        """
        now = now_ms()
        quote: Optional[PriceQuote] = None
        try:
            quote = await self.price_feed.get_price(force=True)
        except NoReasonablePrice as exc:
            logger.warning("Price resolver exhausted: %s", exc)
            quote = await self._fallback_quote()

        if quote is None and self.last_tick_quote is not None and (now - self.last_update) < self.last_tick_max_age_ms:
            quote = self.last_tick_quote
        if quote is None:
            logger.warning("No price available this cycle")
            return None

        self.candles.add_tick(Tick(price=quote.price, timestamp=now, volume=0.0))
        self.last_update = now
        self.last_tick_quote = PriceQuote(quote.price, now, quote.confidence, quote.source)
        logger.info("Cycle price source=%s price=%.4f", quote.source, quote.price)
        return self.last_tick_quote

    async def _fallback_quote(self) -> Optional[PriceQuote]:
        if self.fallback_provider is None:
            return None
        try:
            quote = await self.fallback_provider.fetch()
        except Exception as exc:
            logger.warning("Fallback %s price failed: %s", self.fallback_provider.name, exc)
            return None
        if quote is None or not self.price_feed.is_price_reasonable(quote.price):
            return None
        return quote

    async def get_current_price(self, force: bool = False) -> PriceQuote:
        now = now_ms()
        freshness_ms = max(30_000, self.check_interval_ms * 2)
        if not force and self.last_tick_quote is not None and (now - self.last_update) < freshness_ms:
            return self.last_tick_quote
        try:
            return await self.price_feed.get_price(force=force)
        except NoReasonablePrice:
            if self.last_tick_quote is not None:
                return self.last_tick_quote
            recent = self.candles.get_current_candle(self.fast_timeframe)
            if recent is None:
                history = self.candles.get_candles(self.fast_timeframe, 1)
                recent = history[-1] if history else None
            if recent is not None and math.isfinite(recent.close):
                return PriceQuote(recent.close, recent.timestamp, 0.0, 'preload')
            raise

    def get_candles(self, timeframe: str, count: Optional[int] = None) -> List[Candle]:
        return self.candles.get_candles(timeframe, count)

    def get_current_candle(self, timeframe: str) -> Optional[Candle]:
        return self.candles.get_current_candle(timeframe)

    def has_enough_data(self, timeframe: str, required: int) -> bool:
        return self.candles.get_candle_count(timeframe) >= required

    async def check_health(self) -> PriceHealth:
        return await self.price_feed.check_health()

    def get_last_update_time(self) -> int:
        return self.last_update

    async def close(self) -> None:
        await self.price_feed.close()
        for client in (self.binance_client, self.coingecko_client):
            if client is not None:
                await client.close()
        if self.fallback_provider is not None:
            await self.fallback_provider.close()


def build_market_data(cfg, providers: Optional[Dict[str, PriceProvider]] = None) -> MarketDataService:
    from ingest.price_feed import build_price_resolver
    from ingest.price_providers import build_providers

    providers = providers if providers is not None else build_providers(cfg)
    md_cfg = cfg.market_data
    feed_cfg = cfg.price_feed
    trading_cfg = cfg.trading
    history_timeout_s = float(md_cfg.get('history_timeout_s', 15))

    candles = CandleAggregator(
        md_cfg.get('timeframes', ['15m', '1h', '4h']),
        max_candles=int(md_cfg.get('max_candles', 1000)),
    )
    return MarketDataService(
        build_price_resolver(cfg, providers),
        candles,
        fallback_provider=providers.get('binance'),
        binance_client=RESTClient(feed_cfg.get('binance_url', 'https://api.binance.com'), history_timeout_s),
        coingecko_client=RESTClient(
            feed_cfg.get('coingecko_url', 'https://api.coingecko.com/api/v3'),
            history_timeout_s,
        ),
        binance_symbol=trading_cfg.get('binance_symbol', 'SOLUSDT'),
        coingecko_id=trading_cfg.get('coingecko_id', 'solana'),
        check_interval_ms=int(cfg.timing.get('check_interval_ms', 5000)),
        last_tick_max_age_s=float(md_cfg.get('last_tick_max_age_s', 60)),
        fast_timeframe=cfg.entry.get('timeframe', '15m'),
        slow_timeframe=cfg.regime.get('timeframe', '4h'),
        history_timeout_s=history_timeout_s,
    )
