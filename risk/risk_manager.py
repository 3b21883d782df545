import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


logger = logging.getLogger(__name__)


@dataclass
class RiskStatus:
    can_trade: bool
    reason: Optional[str]
    current_drawdown: float
    high_water_mark: float
    current_equity: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            'can_trade': self.can_trade,
            'reason': self.reason,
            'current_drawdown': self.current_drawdown,
            'high_water_mark': self.high_water_mark,
            'current_equity': self.current_equity,
        }


class RiskManager:
    """Track equity against its high-water mark and latch when drawdown breaches the limit.

    The latch engages during the startup grace window as well, but
    ``can_trade`` only enforces it once the window has passed.
    """

    def __init__(
        self,
        initial_equity: float,
        max_drawdown_percent: float = 0.2,
        enable_kill_switch: bool = True,
        startup_grace_s: float = 60.0,
        warn_ratio: float = 0.8,
        started_at: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_drawdown_percent = float(max_drawdown_percent)
        self.enable_kill_switch = enable_kill_switch
        self.startup_grace_s = float(startup_grace_s)
        self.warn_ratio = float(warn_ratio)
        self.clock = clock
        self.started_at = clock() if started_at is None else started_at
        self.current_equity = float(initial_equity)
        self.high_water_mark = float(initial_equity)
        self.kill_switch_triggered = False

    @classmethod
    def from_config(cls, cfg, initial_equity: float) -> 'RiskManager':
        risk_cfg = cfg.risk
        return cls(
            initial_equity,
            max_drawdown_percent=float(risk_cfg.get('max_drawdown_percent', 0.2)),
            enable_kill_switch=bool(risk_cfg.get('enable_kill_switch', True)),
            startup_grace_s=float(risk_cfg.get('startup_grace_s', 60)),
            warn_ratio=float(risk_cfg.get('drawdown_warn_ratio', 0.8)),
        )

    def update_equity(self, equity: float) -> None:
        self.current_equity = float(equity)
        if self.current_equity > self.high_water_mark:
            self.high_water_mark = self.current_equity

    def current_drawdown(self) -> float:
        if self.high_water_mark <= 0:
            return 0.0
        return max(0.0, (self.high_water_mark - self.current_equity) / self.high_water_mark)

    def in_grace_period(self) -> bool:
        return (self.clock() - self.started_at) < self.startup_grace_s

    def check_drawdown(self) -> float:
        drawdown = self.current_drawdown()
        if (
            self.enable_kill_switch
            and not self.kill_switch_triggered
            and drawdown >= self.max_drawdown_percent
        ):
            self.kill_switch_triggered = True
            logger.error(
                "Max drawdown reached: %.2f%% (limit %.2f%%, HWM %.2f, equity %.2f)",
                drawdown * 100,
                self.max_drawdown_percent * 100,
                self.high_water_mark,
                self.current_equity,
            )
        return drawdown

    def can_trade(self) -> RiskStatus:
        drawdown = self.check_drawdown()

        def status(allowed: bool, reason: Optional[str]) -> RiskStatus:
            return RiskStatus(allowed, reason, drawdown, self.high_water_mark, self.current_equity)

        if self.in_grace_period():
            return status(True, 'Startup grace period')
        if self.kill_switch_triggered:
            return status(False, f"Kill switch triggered: drawdown {drawdown:.2%}")
        if drawdown >= self.max_drawdown_percent * self.warn_ratio:
            logger.warning(
                "Drawdown %.2f%% approaching limit %.2f%%",
                drawdown * 100,
                self.max_drawdown_percent * 100,
            )
        return status(True, None)

    def is_kill_switch_triggered(self) -> bool:
        return self.kill_switch_triggered

    def reset(self) -> None:
        self.kill_switch_triggered = False
        self.high_water_mark = self.current_equity
        logger.info("Risk manager reset; HWM rebased to %.2f", self.high_water_mark)

    def get_state(self) -> Dict[str, Any]:
        return {
            'current_equity': self.current_equity,
            'high_water_mark': self.high_water_mark,
            'current_drawdown': self.current_drawdown(),
            'kill_switch_triggered': self.kill_switch_triggered,
            'started_at': self.started_at,
        }
