import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ingest.price_providers import PriceProvider, PriceQuote, now_ms, ordered_providers


logger = logging.getLogger(__name__)


class NoReasonablePrice(RuntimeError):
    """Raised when every provider is exhausted and no cached quote exists."""


@dataclass
class PriceHealth:
    healthy: bool
    oracle_price: Optional[float] = None
    reference_price: Optional[float] = None
    divergence: Optional[float] = None

    def as_dict(self) -> Dict:
        return {
            'healthy': self.healthy,
            'oracle_price': self.oracle_price,
            'reference_price': self.reference_price,
            'divergence': self.divergence,
        }


class PriceResolver:
    """Resolve a current price from ordered providers with caching and sanity bounds."""

    def __init__(
        self,
        providers: Sequence[PriceProvider],
        cache_ttl_ms: int = 30000,
        min_price: float = 0.001,
        max_price: float = 1_000_000.0,
        oracle_min_usd: Optional[float] = None,
        oracle_max_usd: Optional[float] = None,
        max_divergence: float = 0.01,
        health_oracle: Optional[PriceProvider] = None,
        health_reference: Optional[PriceProvider] = None,
    ):
        self.providers: List[PriceProvider] = list(providers)
        self.cache_ttl_ms = int(cache_ttl_ms)
        self.min_price = float(min_price)
        self.max_price = float(max_price)
        self.oracle_min_usd = oracle_min_usd
        self.oracle_max_usd = oracle_max_usd
        self.max_divergence = float(max_divergence)
        self.health_oracle = health_oracle
        self.health_reference = health_reference
        self._cached: Optional[PriceQuote] = None
        self._cached_at: int = 0

    @property
    def cached_quote(self) -> Optional[PriceQuote]:
        return self._cached

    def is_price_reasonable(self, price: float) -> bool:
        if price is None or not math.isfinite(price) or price <= 0:
            return False
        return self.min_price <= price <= self.max_price

    async def get_price(self, force: bool = False) -> PriceQuote:
        now = now_ms()
        if not force and self._cached is not None and (now - self._cached_at) < self.cache_ttl_ms:
            return self._cached

        for provider in self.providers:
            try:
                quote = await provider.fetch()
            except Exception as exc:
                logger.warning("%s price fetch failed: %s", provider.name, exc)
                if self._cached is not None and not force:
                    return self._cached
                continue

            if quote is None:
                logger.debug("%s returned no usable price", provider.name)
                continue
            if not self.is_price_reasonable(quote.price):
                logger.warning("%s returned unreasonable price: %s", provider.name, quote.price)
                continue
            if provider.is_oracle:
                quote = self._clamp_oracle(quote)

            self._cached = quote
            self._cached_at = now_ms()
            return quote

        if self._cached is not None:
            logger.warning(
                "All price providers exhausted; serving cached %s quote from %s",
                self._cached.source,
                self._cached_at,
            )
            return self._cached
        raise NoReasonablePrice(
            "Failed to fetch a reasonable price from " + ", ".join(p.name for p in self.providers)
        )

    def _clamp_oracle(self, quote: PriceQuote) -> PriceQuote:
        price = quote.price
        if self.oracle_min_usd is not None and price < self.oracle_min_usd:
            logger.warning("Oracle price %.6f below band; clamping to %.6f", price, self.oracle_min_usd)
            return quote.with_price(float(self.oracle_min_usd))
        if self.oracle_max_usd is not None and price > self.oracle_max_usd:
            logger.warning("Oracle price %.6f above band; clamping to %.6f", price, self.oracle_max_usd)
            return quote.with_price(float(self.oracle_max_usd))
        return quote

    async def check_health(self) -> PriceHealth:
        if self.health_oracle is None or self.health_reference is None:
            return PriceHealth(healthy=False)

        oracle_result, reference_result = await asyncio.gather(
            self.health_oracle.fetch(),
            self.health_reference.fetch(),
            return_exceptions=True,
        )
        oracle = oracle_result if isinstance(oracle_result, PriceQuote) else None
        reference = reference_result if isinstance(reference_result, PriceQuote) else None
        for name, result in (('oracle', oracle_result), ('reference', reference_result)):
            if isinstance(result, Exception):
                logger.warning("Health check %s fetch failed: %s", name, result)

        if oracle is None or reference is None or oracle.price <= 0:
            return PriceHealth(
                healthy=False,
                oracle_price=oracle.price if oracle else None,
                reference_price=reference.price if reference else None,
            )

        divergence = abs(oracle.price - reference.price) / oracle.price
        return PriceHealth(
            healthy=divergence < self.max_divergence,
            oracle_price=oracle.price,
            reference_price=reference.price,
            divergence=divergence,
        )

    async def close(self) -> None:
        seen = set()
        for provider in self.providers + [p for p in (self.health_oracle, self.health_reference) if p]:
            if id(provider) in seen:
                continue
            seen.add(id(provider))
            await provider.close()


def build_price_resolver(cfg, providers: Dict[str, PriceProvider]) -> PriceResolver:
    feed_cfg = cfg.price_feed
    oracle_cfg = cfg.oracle
    names = list(feed_cfg.get('providers', ['coingecko', 'jupiter', 'pyth']))
    return PriceResolver(
        ordered_providers(providers, names),
        cache_ttl_ms=int(feed_cfg.get('cache_ttl_ms', 30000)),
        min_price=float(feed_cfg.get('min_price', 0.001)),
        max_price=float(feed_cfg.get('max_price', 1_000_000)),
        oracle_min_usd=oracle_cfg.get('min_usd'),
        oracle_max_usd=oracle_cfg.get('max_usd'),
        max_divergence=float(oracle_cfg.get('max_divergence', 0.01)),
        health_oracle=providers.get('pyth'),
        health_reference=providers.get('jupiter'),
    )
