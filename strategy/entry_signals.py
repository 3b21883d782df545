import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from analytics.indicators import donchian_channel, is_rsi_rising, latest_rsi
from ingest.candle_builder import Candle


logger = logging.getLogger(__name__)


@dataclass
class Liquidity:
    spread: float
    depth_usd: float
    estimated_impact: float

    def as_dict(self) -> Dict[str, float]:
        return {
            'spread': self.spread,
            'depth_usd': self.depth_usd,
            'estimated_impact': self.estimated_impact,
        }


@dataclass
class EntrySignal:
    should_enter: bool
    confidence: float
    entry_price: Optional[float]
    indicators: Dict[str, Any] = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'should_enter': self.should_enter,
            'confidence': self.confidence,
            'entry_price': self.entry_price,
            'indicators': dict(self.indicators),
            'reasons': list(self.reasons),
        }


class EntrySignals:
    """Breakout, momentum and liquidity checks on the fast timeframe."""

    def __init__(
        self,
        donchian_period: int = 20,
        rsi_period: int = 14,
        rsi_low: float = 50.0,
        rsi_high: float = 75.0,
        max_spread: float = 0.003,
        min_liquidity_depth: float = 5000.0,
        max_price_impact: float = 0.01,
        assumed_spread: float = 0.0015,
        assumed_depth_usd: float = 10000.0,
        impact_factor: float = 0.01,
    ):
        self.donchian_period = int(donchian_period)
        self.rsi_period = int(rsi_period)
        self.rsi_low = float(rsi_low)
        self.rsi_high = float(rsi_high)
        self.max_spread = float(max_spread)
        self.min_liquidity_depth = float(min_liquidity_depth)
        self.max_price_impact = float(max_price_impact)
        self.assumed_spread = float(assumed_spread)
        self.assumed_depth_usd = float(assumed_depth_usd)
        self.impact_factor = float(impact_factor)

    @classmethod
    def from_config(cls, cfg) -> 'EntrySignals':
        entry_cfg = cfg.entry
        liq_cfg = cfg.liquidity
        return cls(
            donchian_period=int(entry_cfg.get('donchian_period', 20)),
            rsi_period=int(entry_cfg.get('rsi_period', 14)),
            rsi_low=float(entry_cfg.get('rsi_low', 50)),
            rsi_high=float(entry_cfg.get('rsi_high', 75)),
            max_spread=float(liq_cfg.get('max_spread', 0.003)),
            min_liquidity_depth=float(liq_cfg.get('min_liquidity_depth', 5000)),
            max_price_impact=float(liq_cfg.get('max_price_impact', 0.01)),
            assumed_spread=float(liq_cfg.get('assumed_spread', 0.0015)),
            assumed_depth_usd=float(liq_cfg.get('assumed_depth_usd', 10000)),
            impact_factor=float(liq_cfg.get('impact_factor', 0.01)),
        )

    @property
    def required_candles(self) -> int:
        return self.donchian_period + 50

    def check_liquidity(self, price: float, size_usd: float) -> Liquidity:
        """Estimate pool conditions for a trade of ``size_usd``.

        No order book is consulted; spread and depth are the configured
        assumptions and impact scales linearly with size.
        """
        depth = self.assumed_depth_usd
        impact = (size_usd / depth) * self.impact_factor if depth > 0 else 1.0
        return Liquidity(spread=self.assumed_spread, depth_usd=depth, estimated_impact=impact)

    def check_entry(self, candles: Sequence[Candle], liquidity: Liquidity) -> EntrySignal:
        if not candles:
            return EntrySignal(False, 0.0, None, {}, ["No candles available"])

        close = candles[-1].close
        confidence = 1.0
        passed = True
        reasons: List[str] = []
        indicators: Dict[str, Any] = {'close': close}

        channel = donchian_channel(candles, self.donchian_period)
        if channel is None:
            passed = False
            confidence = 0.0
            reasons.append("Donchian channel unavailable")
        else:
            upper, lower = channel
            indicators['donchian_high'] = upper
            indicators['donchian_low'] = lower
            if close > upper:
                strength = (close - upper) / upper
                confidence *= min(1.0, 0.7 + strength * 100)
                reasons.append(f"Breakout above {upper:.4f} (strength {strength:.4%})")
            else:
                passed = False
                confidence *= 0.5
                reasons.append(f"No breakout: close {close:.4f} <= channel high {upper:.4f}")

        rsi = latest_rsi(candles, self.rsi_period)
        rising = is_rsi_rising(candles, self.rsi_period)
        indicators['rsi'] = rsi
        indicators['rsi_rising'] = rising
        if rsi is None:
            passed = False
            confidence = 0.0
            reasons.append("RSI unavailable")
        else:
            if rsi < self.rsi_low or rsi > self.rsi_high:
                passed = False
                confidence *= 0.3
                reasons.append(f"RSI {rsi:.2f} outside {self.rsi_low:.0f}-{self.rsi_high:.0f}")
            else:
                reasons.append(f"RSI {rsi:.2f} within band")
            if not rising:
                passed = False
                confidence *= 0.5
                reasons.append("RSI not rising")

        indicators['liquidity'] = liquidity.as_dict()
        if liquidity.spread > self.max_spread:
            passed = False
            confidence *= 0.2
            reasons.append(f"Spread {liquidity.spread:.4%} above {self.max_spread:.4%}")
        if liquidity.depth_usd < self.min_liquidity_depth:
            passed = False
            confidence *= 0.2
            reasons.append(f"Depth ${liquidity.depth_usd:,.0f} below ${self.min_liquidity_depth:,.0f}")
        if liquidity.estimated_impact > self.max_price_impact:
            passed = False
            confidence *= 0.2
            reasons.append(f"Impact {liquidity.estimated_impact:.4%} above {self.max_price_impact:.4%}")

        confidence = max(0.0, min(1.0, confidence))
        return EntrySignal(passed, confidence, close, indicators, reasons)
