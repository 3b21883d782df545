import logging
from dataclasses import dataclass, asdict
from typing import Dict, Iterable, List, Optional, Sequence


logger = logging.getLogger(__name__)

TIMEFRAME_MINUTES: Dict[str, int] = {
    '1m': 1,
    '5m': 5,
    '15m': 15,
    '1h': 60,
    '4h': 240,
    '1d': 1440,
}

DEFAULT_TIMEFRAMES = ('15m', '1h', '4h')


def timeframe_ms(timeframe: str) -> int:
    try:
        return TIMEFRAME_MINUTES[timeframe] * 60 * 1000
    except KeyError as exc:
        raise ValueError(f"Unsupported timeframe '{timeframe}'") from exc


def bucket_start(timestamp_ms: int, timeframe: str) -> int:
    span = timeframe_ms(timeframe)
    return (int(timestamp_ms) // span) * span


@dataclass(frozen=True)
class Tick:
    price: float
    timestamp: int
    volume: float = 0.0


@dataclass
class Candle:
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def is_consistent(self) -> bool:
        return self.low <= min(self.open, self.close) and max(self.open, self.close) <= self.high

    def copy(self) -> 'Candle':
        return Candle(self.timestamp, self.open, self.high, self.low, self.close, self.volume)

    def to_dict(self) -> Dict:
        return asdict(self)


class CandleAggregator:
    """Aggregate price ticks into OHLCV candles for several timeframes at once."""

    def __init__(self, timeframes: Iterable[str] = DEFAULT_TIMEFRAMES, max_candles: int = 1000):
        self.timeframes = tuple(timeframes)
        for tf in self.timeframes:
            timeframe_ms(tf)
        self.max_candles = int(max_candles)
        self._history: Dict[str, List[Candle]] = {tf: [] for tf in self.timeframes}
        self._current: Dict[str, Optional[Candle]] = {tf: None for tf in self.timeframes}

    def add_tick(self, tick: Tick) -> None:
        if tick.price <= 0:
            raise ValueError(f"Tick price must be positive, got {tick.price}")
        for tf in self.timeframes:
            self._update_candle(tf, tick)

    def _update_candle(self, timeframe: str, tick: Tick) -> None:
        start = bucket_start(tick.timestamp, timeframe)
        current = self._current[timeframe]
        volume = tick.volume or 0.0

        if current is None:
            history = self._history[timeframe]
            if history and start <= history[-1].timestamp:
                logger.debug("Dropping late %s tick at %s", timeframe, tick.timestamp)
                return
        elif start < current.timestamp:
            logger.debug("Dropping late %s tick at %s", timeframe, tick.timestamp)
            return
        elif start != current.timestamp:
            self._seal(timeframe, current)
            current = None

        if current is None:
            self._current[timeframe] = Candle(
                timestamp=start,
                open=tick.price,
                high=tick.price,
                low=tick.price,
                close=tick.price,
                volume=volume,
            )
            return

        current.high = max(current.high, tick.price)
        current.low = min(current.low, tick.price)
        current.close = tick.price
        current.volume += volume

    def _seal(self, timeframe: str, candle: Candle) -> None:
        history = self._history[timeframe]
        history.append(candle)
        if len(history) > self.max_candles:
            del history[:len(history) - self.max_candles]
        self._current[timeframe] = None

    def force_close_candle(self, timeframe: str) -> None:
        current = self._current.get(timeframe)
        if current is not None:
            self._seal(timeframe, current)

    def inject_historical_candles(self, timeframe: str, candles: Sequence[Candle]) -> int:
        """Seed closed history for ``timeframe``.

        The batch must be strictly increasing, bucket-aligned, internally
        consistent, and entirely older than the in-progress candle. Any
        violation raises ``ValueError`` and leaves history untouched.
        Accepted candles are merged into existing history by timestamp.
        """
        if timeframe not in self._history:
            raise ValueError(f"Timeframe '{timeframe}' is not tracked")
        if not candles:
            return 0

        span = timeframe_ms(timeframe)
        previous_ts: Optional[int] = None
        for candle in candles:
            ts = int(candle.timestamp)
            if ts % span != 0:
                raise ValueError(f"Candle at {ts} is not aligned to {timeframe}")
            if previous_ts is not None and ts <= previous_ts:
                raise ValueError(
                    f"Historical {timeframe} candles must be strictly increasing ({ts} after {previous_ts})"
                )
            if not candle.is_consistent():
                raise ValueError(f"Inconsistent OHLC for {timeframe} candle at {ts}")
            previous_ts = ts

        current = self._current[timeframe]
        if current is not None and previous_ts >= current.timestamp:
            raise ValueError(
                f"Historical {timeframe} candles must precede the open candle at {current.timestamp}"
            )

        merged = {c.timestamp: c for c in self._history[timeframe]}
        for candle in candles:
            merged[int(candle.timestamp)] = candle.copy()
        ordered = [merged[ts] for ts in sorted(merged)]
        self._history[timeframe] = ordered[-self.max_candles:]
        logger.debug("Injected %s %s candles (history=%s)", len(candles), timeframe, len(self._history[timeframe]))
        return len(candles)

    def get_candles(self, timeframe: str, count: Optional[int] = None) -> List[Candle]:
        history = self._history.get(timeframe, [])
        if count:
            return list(history[-count:])
        return list(history)

    def get_current_candle(self, timeframe: str) -> Optional[Candle]:
        return self._current.get(timeframe)

    def get_candle_count(self, timeframe: str) -> int:
        return len(self._history.get(timeframe, []))
