import numpy as np
import talib
from typing import Optional, Sequence, Tuple

from ingest.candle_builder import Candle


def _closes(candles: Sequence[Candle]) -> np.ndarray:
    return np.array([c.close for c in candles], dtype=float)


def _hlc(candles: Sequence[Candle]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    high = np.array([c.high for c in candles], dtype=float)
    low = np.array([c.low for c in candles], dtype=float)
    return high, low, _closes(candles)


def _last(values: np.ndarray, offset: int = 1) -> Optional[float]:
    if len(values) < offset:
        return None
    value = values[-offset]
    return float(value) if not np.isnan(value) else None


def ema_series(candles: Sequence[Candle], period: int) -> np.ndarray:
    if len(candles) < period:
        return np.full(len(candles), np.nan)
    return talib.EMA(_closes(candles), timeperiod=period)


def latest_ema(candles: Sequence[Candle], period: int) -> Optional[float]:
    return _last(ema_series(candles, period))


def rsi_series(candles: Sequence[Candle], period: int = 14) -> np.ndarray:
    if len(candles) <= period:
        return np.full(len(candles), np.nan)
    return talib.RSI(_closes(candles), timeperiod=period)


def latest_rsi(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    return _last(rsi_series(candles, period))


def is_rsi_rising(candles: Sequence[Candle], period: int = 14) -> Optional[bool]:
    """True when the latest RSI is above the previous one; None when either is undefined."""
    values = rsi_series(candles, period)
    current = _last(values, 1)
    previous = _last(values, 2)
    if current is None or previous is None:
        return None
    return current > previous


def latest_adx(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    # ADX needs roughly two periods before its first value
    if len(candles) < period * 2:
        return None
    high, low, close = _hlc(candles)
    return _last(talib.ADX(high, low, close, timeperiod=period))


def latest_atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    if len(candles) <= period:
        return None
    high, low, close = _hlc(candles)
    return _last(talib.ATR(high, low, close, timeperiod=period))


def donchian_channel(
    candles: Sequence[Candle],
    period: int = 20,
    exclude_last: bool = True,
) -> Optional[Tuple[float, float]]:
    """Highest high and lowest low over ``period`` candles.

    With ``exclude_last`` the window ends one candle before the latest, so the
    latest close can be compared against the prior range.
    """
    window = list(candles[:-1]) if exclude_last else list(candles)
    if len(window) < period:
        return None
    window = window[-period:]
    high, low, _ = _hlc(window)
    return float(np.max(high)), float(np.min(low))
