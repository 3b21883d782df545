import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from analytics.indicators import latest_adx, latest_ema
from ingest.candle_builder import Candle


logger = logging.getLogger(__name__)


class Regime(Enum):
    BULL = "BULL"
    BEAR = "BEAR"
    SIDEWAYS = "SIDEWAYS"


@dataclass
class RegimeAnalysis:
    regime: Regime
    confidence: float
    indicators: Dict[str, Optional[float]] = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'regime': self.regime.value,
            'confidence': self.confidence,
            'indicators': dict(self.indicators),
            'reasons': list(self.reasons),
        }


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class RegimeFilter:
    """Classify the slow-timeframe trend and gate new entries on it."""

    def __init__(
        self,
        ema_fast: int = 50,
        ema_slow: int = 200,
        adx_period: int = 14,
        adx_threshold: float = 20.0,
    ):
        self.ema_fast = int(ema_fast)
        self.ema_slow = int(ema_slow)
        self.adx_period = int(adx_period)
        self.adx_threshold = float(adx_threshold)

    @classmethod
    def from_config(cls, cfg) -> 'RegimeFilter':
        regime_cfg = cfg.regime
        return cls(
            ema_fast=int(regime_cfg.get('ema_fast', 50)),
            ema_slow=int(regime_cfg.get('ema_slow', 200)),
            adx_period=int(regime_cfg.get('adx_period', 14)),
            adx_threshold=float(regime_cfg.get('adx_threshold', 20)),
        )

    @property
    def required_candles(self) -> int:
        return self.ema_slow + 50

    def analyze(self, candles: Sequence[Candle], live_price: Optional[float] = None) -> RegimeAnalysis:
        if not candles:
            raise ValueError("Cannot analyze regime without candles")

        price = live_price if live_price is not None and math.isfinite(live_price) else candles[-1].close
        ema_fast = latest_ema(candles, self.ema_fast)
        ema_slow = latest_ema(candles, self.ema_slow)
        adx = latest_adx(candles, self.adx_period)
        indicators = {'price': price, 'ema_fast': ema_fast, 'ema_slow': ema_slow, 'adx': adx}

        if ema_fast is None or ema_slow is None or adx is None:
            return RegimeAnalysis(
                Regime.SIDEWAYS,
                0.0,
                indicators,
                [f"Insufficient data for indicators ({len(candles)} candles)"],
            )

        reasons = []
        if price > ema_fast > ema_slow and adx > self.adx_threshold:
            gap = (ema_fast - ema_slow) / ema_slow
            confidence = gap * 0.5 + min(adx / 40.0, 1.0) * 0.5
            regime = Regime.BULL
            reasons.append(f"Price {price:.4f} > EMA{self.ema_fast} {ema_fast:.4f} > EMA{self.ema_slow} {ema_slow:.4f}")
            reasons.append(f"ADX {adx:.2f} > {self.adx_threshold:.2f}")
        elif price < ema_fast:
            confidence = min((ema_fast - price) / ema_fast, 1.0)
            regime = Regime.BEAR
            reasons.append(f"Price {price:.4f} < EMA{self.ema_fast} {ema_fast:.4f}")
        elif adx < self.adx_threshold:
            confidence = 1.0 - adx / self.adx_threshold
            regime = Regime.SIDEWAYS
            reasons.append(f"ADX {adx:.2f} < {self.adx_threshold:.2f} (no trend)")
        else:
            confidence = 0.5
            regime = Regime.SIDEWAYS
            reasons.append("Mixed signals")

        analysis = RegimeAnalysis(regime, _clamp(confidence), indicators, reasons)
        logger.debug("Regime %s confidence=%.3f", regime.value, analysis.confidence)
        return analysis

    @staticmethod
    def can_trade(regime: Regime) -> bool:
        return regime is Regime.BULL
