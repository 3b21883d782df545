import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from analytics.indicators import latest_atr, latest_ema
from ingest.candle_builder import Candle


logger = logging.getLogger(__name__)

HOUR_MS = 3_600_000


@dataclass
class Position:
    entry_price: float
    amount: float
    stop_price: float
    entry_time: int
    partial_taken: bool = False
    trailing_stop_active: bool = False
    initial_stop_price: Optional[float] = None
    position_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if self.initial_stop_price is None:
            self.initial_stop_price = self.stop_price

    @property
    def risk_per_unit(self) -> float:
        return self.entry_price - self.initial_stop_price

    def r_multiple(self, price: float) -> float:
        risk = self.risk_per_unit
        if risk == 0:
            return 0.0
        return (price - self.entry_price) / risk

    def as_dict(self) -> Dict[str, Any]:
        return {
            'position_id': self.position_id,
            'entry_price': self.entry_price,
            'amount': self.amount,
            'stop_price': self.stop_price,
            'initial_stop_price': self.initial_stop_price,
            'entry_time': self.entry_time,
            'partial_taken': self.partial_taken,
            'trailing_stop_active': self.trailing_stop_active,
        }


@dataclass
class ExitSignal:
    should_exit: bool
    exit_type: str
    percentage: float
    exit_price: float
    r_multiple: float
    new_stop: Optional[float] = None
    reasons: List[str] = field(default_factory=list)

    @property
    def is_full_exit(self) -> bool:
        return self.should_exit and self.exit_type != 'partial_tp'

    def as_dict(self) -> Dict[str, Any]:
        return {
            'should_exit': self.should_exit,
            'exit_type': self.exit_type,
            'percentage': self.percentage,
            'exit_price': self.exit_price,
            'new_stop': self.new_stop,
            'r_multiple': self.r_multiple,
            'reasons': list(self.reasons),
        }


class ExitManager:
    """Stop, partial take-profit, trailing and time exits for a single long position."""

    def __init__(
        self,
        stop_loss_atr_multiplier: float = 2.5,
        atr_period: int = 14,
        fallback_stop_pct: float = 0.02,
        partial_tp_r_multiple: float = 1.5,
        partial_tp_percent: float = 0.5,
        trailing_ema_period: int = 20,
        time_exit_hours: float = 12.0,
        time_exit_min_r: float = 1.0,
    ):
        self.stop_loss_atr_multiplier = float(stop_loss_atr_multiplier)
        self.atr_period = int(atr_period)
        self.fallback_stop_pct = float(fallback_stop_pct)
        self.partial_tp_r_multiple = float(partial_tp_r_multiple)
        self.partial_tp_percent = float(partial_tp_percent)
        self.trailing_ema_period = int(trailing_ema_period)
        self.time_exit_hours = float(time_exit_hours)
        self.time_exit_min_r = float(time_exit_min_r)

    @classmethod
    def from_config(cls, cfg) -> 'ExitManager':
        exit_cfg = cfg.exit
        return cls(
            stop_loss_atr_multiplier=float(exit_cfg.get('stop_loss_atr_multiplier', 2.5)),
            atr_period=int(exit_cfg.get('atr_period', 14)),
            fallback_stop_pct=float(exit_cfg.get('fallback_stop_pct', 0.02)),
            partial_tp_r_multiple=float(exit_cfg.get('partial_tp_r_multiple', 1.5)),
            partial_tp_percent=float(exit_cfg.get('partial_tp_percent', 0.5)),
            trailing_ema_period=int(exit_cfg.get('trailing_ema_period', 20)),
            time_exit_hours=float(exit_cfg.get('time_exit_hours', 12)),
            time_exit_min_r=float(exit_cfg.get('time_exit_min_r', 1.0)),
        )

    def check_exit(
        self,
        position: Position,
        candles: Sequence[Candle],
        current_price: float,
        now_ms: Optional[int] = None,
    ) -> ExitSignal:
        now = int(time.time() * 1000) if now_ms is None else int(now_ms)
        r = position.r_multiple(current_price)

        if current_price <= position.stop_price:
            return ExitSignal(
                True, 'stop', 1.0, current_price, r,
                reasons=[f"Price {current_price:.4f} hit stop {position.stop_price:.4f}"],
            )

        if not position.partial_taken and r >= self.partial_tp_r_multiple:
            return ExitSignal(
                True, 'partial_tp', self.partial_tp_percent, current_price, r,
                new_stop=position.entry_price,
                reasons=[
                    f"Reached {r:.2f}R (target {self.partial_tp_r_multiple:.2f}R)",
                    f"Stop to breakeven at {position.entry_price:.4f}",
                ],
            )

        if position.partial_taken or position.trailing_stop_active:
            ema = latest_ema(candles, self.trailing_ema_period) if candles else None
            if ema is not None and current_price < ema:
                return ExitSignal(
                    True, 'trailing', 1.0, current_price, r,
                    reasons=[f"Price {current_price:.4f} below EMA{self.trailing_ema_period} {ema:.4f}"],
                )

        held_hours = (now - position.entry_time) / HOUR_MS
        if held_hours >= self.time_exit_hours and r < self.time_exit_min_r:
            return ExitSignal(
                True, 'time', 1.0, current_price, r,
                reasons=[f"Held {held_hours:.1f}h at {r:.2f}R (< {self.time_exit_min_r:.2f}R)"],
            )

        return ExitSignal(False, 'none', 0.0, current_price, r, reasons=["No exit conditions met"])

    def update_position(self, position: Position, signal: ExitSignal) -> Position:
        if signal.exit_type != 'partial_tp':
            return replace(position)
        new_stop = signal.new_stop if signal.new_stop is not None else position.stop_price
        return replace(
            position,
            amount=position.amount * (1.0 - signal.percentage),
            stop_price=new_stop,
            partial_taken=True,
            trailing_stop_active=True,
        )

    def calculate_initial_stop(self, candles: Sequence[Candle], entry_price: float) -> float:
        atr = latest_atr(candles, self.atr_period) if candles else None
        if atr is not None:
            stop = entry_price - atr * self.stop_loss_atr_multiplier
            if 0 < stop < entry_price:
                return stop
            logger.warning("ATR stop %.4f not below entry %.4f; using fallback", stop, entry_price)
        return entry_price * (1.0 - self.fallback_stop_pct)
