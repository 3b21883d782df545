import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

# float slack when comparing a capped size against the cap
PERCENT_TOLERANCE = 1e-9


class InvalidStop(ValueError):
    pass


@dataclass
class PositionSize:
    size_usd: float
    size_asset: float
    potential_loss: float
    percent_of_equity: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            'size_usd': self.size_usd,
            'size_asset': self.size_asset,
            'potential_loss': self.potential_loss,
            'percent_of_equity': self.percent_of_equity,
        }


@dataclass
class SizeValidation:
    valid: bool
    reason: Optional[str] = None


class PositionSizer:
    def __init__(
        self,
        risk_per_trade: float = 0.01,
        max_position_size: float = 0.4,
        min_position_usd: float = 10.0,
        risk_tolerance: float = 1.1,
    ):
        self.risk_per_trade = float(risk_per_trade)
        self.max_position_size = float(max_position_size)
        self.min_position_usd = float(min_position_usd)
        self.risk_tolerance = float(risk_tolerance)

    @classmethod
    def from_config(cls, cfg) -> 'PositionSizer':
        risk_cfg = cfg.risk
        return cls(
            risk_per_trade=float(risk_cfg.get('risk_per_trade', 0.01)),
            max_position_size=float(risk_cfg.get('max_position_size', 0.4)),
            min_position_usd=float(risk_cfg.get('min_position_usd', 10)),
            risk_tolerance=float(risk_cfg.get('risk_tolerance', 1.1)),
        )

    def calculate(
        self,
        equity: float,
        entry_price: float,
        stop_price: float,
        risk_percent: Optional[float] = None,
        max_position_percent: Optional[float] = None,
    ) -> PositionSize:
        """Size a long so that hitting the stop loses ``equity * risk_percent``.

        The notional is capped at ``equity * max_position_percent``, which can
        only shrink the loss at the stop.
        """
        risk_percent = self.risk_per_trade if risk_percent is None else risk_percent
        max_position_percent = self.max_position_size if max_position_percent is None else max_position_percent

        if equity <= 0:
            raise InvalidStop(f"Equity must be positive, got {equity}")
        if entry_price <= 0:
            raise InvalidStop(f"Entry price must be positive, got {entry_price}")
        stop_distance = abs(entry_price - stop_price)
        if stop_distance == 0:
            raise InvalidStop("Stop price equals entry price")

        risk_amount = equity * risk_percent
        raw_size_usd = (risk_amount / stop_distance) * entry_price
        cap_usd = equity * max_position_percent
        if raw_size_usd > cap_usd:
            size_usd, percent_of_equity = cap_usd, max_position_percent
        else:
            size_usd, percent_of_equity = raw_size_usd, raw_size_usd / equity
        size_asset = size_usd / entry_price

        size = PositionSize(
            size_usd=size_usd,
            size_asset=size_asset,
            potential_loss=size_asset * stop_distance,
            percent_of_equity=percent_of_equity,
        )
        logger.debug(
            "Sized position usd=%.2f asset=%.6f loss=%.2f pct=%.4f",
            size.size_usd,
            size.size_asset,
            size.potential_loss,
            size.percent_of_equity,
        )
        return size

    def validate_size(self, size: PositionSize, equity: float) -> SizeValidation:
        if size.size_usd < self.min_position_usd:
            return SizeValidation(False, f"Position ${size.size_usd:.2f} below minimum ${self.min_position_usd:.2f}")
        if size.percent_of_equity > self.max_position_size * (1 + PERCENT_TOLERANCE):
            return SizeValidation(
                False,
                f"Position {size.percent_of_equity:.2%} of equity exceeds {self.max_position_size:.2%}",
            )
        max_loss = equity * self.risk_per_trade * self.risk_tolerance
        if size.potential_loss > max_loss:
            return SizeValidation(False, f"Potential loss ${size.potential_loss:.2f} exceeds ${max_loss:.2f}")
        return SizeValidation(True)
