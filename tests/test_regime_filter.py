import sys

sys.path.insert(0, '.')

import pytest

from ingest.candle_builder import Candle
from strategy.regime_filter import Regime, RegimeFilter

FOUR_HOURS = 4 * 60 * 60 * 1000


def trend(count, start=100.0, step=1.0):
    candles = []
    for i in range(count):
        close = start + step * i
        candles.append(Candle(i * FOUR_HOURS, close, close + 0.5, close - 0.5, close, 100.0))
    return candles


def small_filter():
    return RegimeFilter(ema_fast=5, ema_slow=20, adx_period=14, adx_threshold=20)


def test_uptrend_is_bull():
    analysis = small_filter().analyze(trend(80))
    assert analysis.regime is Regime.BULL
    assert 0.5 <= analysis.confidence <= 1.0
    assert analysis.indicators['ema_fast'] > analysis.indicators['ema_slow']
    assert RegimeFilter.can_trade(analysis.regime)


def test_downtrend_is_bear():
    analysis = small_filter().analyze(trend(80, start=200.0, step=-1.0))
    assert analysis.regime is Regime.BEAR
    assert 0.0 < analysis.confidence <= 1.0
    assert not RegimeFilter.can_trade(analysis.regime)


def test_live_price_overrides_last_close():
    candles = trend(80)
    analysis = small_filter().analyze(candles, live_price=candles[-1].close * 0.8)
    assert analysis.regime is Regime.BEAR
    assert analysis.indicators['price'] == pytest.approx(candles[-1].close * 0.8)


def test_insufficient_history_is_sideways_with_zero_confidence():
    analysis = small_filter().analyze(trend(10))
    assert analysis.regime is Regime.SIDEWAYS
    assert analysis.confidence == 0.0
    assert "Insufficient" in analysis.reasons[0]


def test_empty_candles_rejected():
    with pytest.raises(ValueError):
        small_filter().analyze([])


def test_required_candles_covers_slow_ema():
    assert RegimeFilter().required_candles == 250
    assert small_filter().required_candles == 70
