import base64
import logging
import math
import struct
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from ingest.rest_client import RESTClient


logger = logging.getLogger(__name__)

# Pyth v2 price account layout (little endian)
PYTH_PRICE_OFFSET = 208
PYTH_CONF_OFFSET = 216
PYTH_EXPO_OFFSET = 224
PYTH_PUBLISH_TIME_OFFSET = 228
PYTH_MIN_ACCOUNT_SIZE = PYTH_PUBLISH_TIME_OFFSET + 8
PYTH_EXPO_RANGE = (-18, 0)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PriceQuote:
    price: float
    timestamp: int
    confidence: float = 0.0
    source: str = 'unknown'

    def with_price(self, price: float) -> 'PriceQuote':
        return replace(self, price=price)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'price': self.price,
            'timestamp': self.timestamp,
            'confidence': self.confidence,
            'source': self.source,
        }


class RPCError(RuntimeError):
    pass


class PriceProvider(ABC):
    """One external price source. ``fetch`` returns None when the source has no usable data."""

    name = 'provider'
    is_oracle = False

    def __init__(self, client: RESTClient):
        self.client = client

    @abstractmethod
    async def fetch(self) -> Optional[PriceQuote]:
        raise NotImplementedError

    async def close(self) -> None:
        await self.client.close()


def _as_price(value: Any, source: str) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid {source} price payload: {value!r}") from exc
    if not math.isfinite(price):
        raise ValueError(f"Non-finite {source} price: {value!r}")
    return price


class CoinGeckoProvider(PriceProvider):
    name = 'coingecko'

    def __init__(self, client: RESTClient, coin_id: str = 'solana', vs_currency: str = 'usd'):
        super().__init__(client)
        self.coin_id = coin_id
        self.vs_currency = vs_currency

    async def fetch(self) -> Optional[PriceQuote]:
        payload = await self.client.get(
            '/simple/price',
            params={'ids': self.coin_id, 'vs_currencies': self.vs_currency},
        )
        if not isinstance(payload, dict):
            raise ValueError("Invalid CoinGecko response")
        value = (payload.get(self.coin_id) or {}).get(self.vs_currency)
        if value is None:
            raise ValueError("CoinGecko response missing price")
        return PriceQuote(_as_price(value, self.name), now_ms(), 0.0, self.name)


class JupiterProvider(PriceProvider):
    name = 'jupiter'

    def __init__(self, client: RESTClient, mint: str):
        super().__init__(client)
        self.mint = mint

    async def fetch(self) -> Optional[PriceQuote]:
        payload = await self.client.get('/price', params={'ids': self.mint})
        data = payload.get('data') if isinstance(payload, dict) else None
        entry = (data or {}).get(self.mint)
        if not entry:
            raise ValueError("No price data from Jupiter")
        return PriceQuote(_as_price(entry.get('price'), self.name), now_ms(), 0.0, self.name)


class BinanceTickerProvider(PriceProvider):
    name = 'binance'

    def __init__(self, client: RESTClient, symbol: str = 'SOLUSDT'):
        super().__init__(client)
        self.symbol = symbol

    async def fetch(self) -> Optional[PriceQuote]:
        payload = await self.client.get('/api/v3/ticker/price', params={'symbol': self.symbol})
        if not isinstance(payload, dict) or 'price' not in payload:
            raise ValueError("Invalid Binance ticker response")
        return PriceQuote(_as_price(payload['price'], self.name), now_ms(), 0.0, self.name)


def decode_pyth_price(data: bytes, max_staleness_s: float, now_s: Optional[float] = None) -> Optional[PriceQuote]:
    """Decode a Pyth price account. Returns None for stale or malformed data."""
    if len(data) < PYTH_MIN_ACCOUNT_SIZE:
        logger.warning("Pyth account too small: %s bytes", len(data))
        return None

    raw_price = struct.unpack_from('<q', data, PYTH_PRICE_OFFSET)[0]
    raw_conf = struct.unpack_from('<q', data, PYTH_CONF_OFFSET)[0]
    expo = struct.unpack_from('<i', data, PYTH_EXPO_OFFSET)[0]
    publish_time = struct.unpack_from('<q', data, PYTH_PUBLISH_TIME_OFFSET)[0]

    if not PYTH_EXPO_RANGE[0] <= expo <= PYTH_EXPO_RANGE[1]:
        logger.warning("Pyth exponent looks malformed: %s", expo)
        return None

    current = time.time() if now_s is None else now_s
    age = current - publish_time
    if age > max_staleness_s:
        logger.warning("Pyth price stale: %.0fs old", age)
        return None

    scale = 10.0 ** expo
    return PriceQuote(
        price=raw_price * scale,
        timestamp=int(publish_time * 1000),
        confidence=abs(raw_conf) * scale,
        source='pyth',
    )


class PythProvider(PriceProvider):
    name = 'pyth'
    is_oracle = True

    def __init__(self, client: RESTClient, price_account: str, max_staleness_s: float = 60.0):
        super().__init__(client)
        self.price_account = price_account
        self.max_staleness_s = max_staleness_s

    async def fetch(self) -> Optional[PriceQuote]:
        request = {
            'jsonrpc': '2.0',
            'id': 1,
            'method': 'getAccountInfo',
            'params': [self.price_account, {'encoding': 'base64'}],
        }
        payload = await self.client.post('', json_body=request)
        if not isinstance(payload, dict):
            raise RPCError("Invalid RPC response for Pyth account")
        if payload.get('error'):
            raise RPCError(f"RPC getAccountInfo failed: {payload['error']}")
        value = (payload.get('result') or {}).get('value')
        if not value:
            return None
        encoded = value.get('data') or []
        if not encoded:
            return None
        data = base64.b64decode(encoded[0])
        return decode_pyth_price(data, self.max_staleness_s)


def build_providers(cfg) -> Dict[str, PriceProvider]:
    """Instantiate every available provider keyed by name."""
    feed_cfg = cfg.price_feed
    trading_cfg = cfg.trading
    oracle_cfg = cfg.oracle
    timeout_s = float(feed_cfg.get('timeout_s', 5))

    providers: Dict[str, PriceProvider] = {
        'coingecko': CoinGeckoProvider(
            RESTClient(feed_cfg.get('coingecko_url', 'https://api.coingecko.com/api/v3'), timeout_s),
            coin_id=trading_cfg.get('coingecko_id', 'solana'),
        ),
        'jupiter': JupiterProvider(
            RESTClient(feed_cfg.get('jupiter_url', 'https://price.jup.ag/v6'), timeout_s),
            mint=trading_cfg['base_mint'],
        ),
        'binance': BinanceTickerProvider(
            RESTClient(feed_cfg.get('binance_url', 'https://api.binance.com'), timeout_s),
            symbol=trading_cfg.get('binance_symbol', 'SOLUSDT'),
        ),
    }

    account = oracle_cfg.get('pyth_price_account')
    rpc_url = oracle_cfg.get('rpc_url')
    if account and rpc_url and not str(account).startswith('${'):
        providers['pyth'] = PythProvider(
            RESTClient(rpc_url, timeout_s),
            price_account=account,
            max_staleness_s=float(oracle_cfg.get('max_price_staleness_s', 60)),
        )
    else:
        logger.warning("Pyth price account not configured; oracle provider disabled")
    return providers


def ordered_providers(providers: Dict[str, PriceProvider], names: List[str]) -> List[PriceProvider]:
    ordered = []
    for name in names:
        provider = providers.get(name)
        if provider is None:
            logger.warning("Price provider '%s' unavailable; skipping", name)
            continue
        ordered.append(provider)
    return ordered
