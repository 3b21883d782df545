import numpy as np
from dataclasses import dataclass, asdict
from typing import Dict, Iterable, Mapping, Optional


@dataclass
class PerformanceSummary:
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    average_r: float = 0.0
    expectancy: float = 0.0
    profit_factor: Optional[float] = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    average_hold_hours: float = 0.0

    def to_dict(self) -> Dict:
        return asdict(self)


def calculate_performance(closed_positions: Iterable[Mapping]) -> PerformanceSummary:
    """Summarize closed positions (dicts with ``pnl``, ``r_multiple`` and ``hold_time_ms``)."""
    records = list(closed_positions)
    if not records:
        return PerformanceSummary()

    pnl = np.array([float(r.get('pnl', 0.0)) for r in records])
    r_values = np.array([float(r.get('r_multiple', 0.0)) for r in records])
    holds = np.array([float(r.get('hold_time_ms', 0.0)) for r in records])

    wins = pnl[pnl > 0]
    losses = pnl[pnl < 0]
    gross_loss = abs(losses.sum())
    if gross_loss > 0:
        profit_factor = float(wins.sum() / gross_loss)
    else:
        profit_factor = None

    # Sharpe on per-trade R, annualized on a daily convention
    sharpe = 0.0
    if r_values.size > 1:
        std = r_values.std(ddof=1)
        if std > 0:
            sharpe = float(r_values.mean() / std * np.sqrt(252))

    cumulative = np.cumsum(pnl)
    peaks = np.maximum.accumulate(np.concatenate(([0.0], cumulative)))[1:]
    max_drawdown = float((peaks - cumulative).max()) if cumulative.size else 0.0

    return PerformanceSummary(
        total_trades=len(records),
        wins=int(wins.size),
        losses=int(losses.size),
        win_rate=float(wins.size / len(records)),
        total_pnl=float(pnl.sum()),
        average_r=float(r_values.mean()),
        expectancy=float(pnl.mean()),
        profit_factor=profit_factor,
        sharpe_ratio=sharpe,
        max_drawdown=max_drawdown,
        average_hold_hours=float(holds.mean() / 3_600_000),
    )
