import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None

REGIME_CODES = {'BEAR': -1, 'SIDEWAYS': 0, 'BULL': 1}


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = config.monitoring.get('metrics_port_file')
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.current_price = Gauge('current_price', 'Latest resolved price')
        self.price_source = Gauge('price_source_active', 'Provider that served the latest price', ['source'])
        self.price_fetch_failures = Counter('price_fetch_failures_total', 'Cycles with no usable price')
        self.oracle_divergence = Gauge('oracle_divergence', 'Relative divergence between oracle and reference price')

        self.equity = Gauge('account_equity', 'Current account equity in quote units')
        self.high_water_mark = Gauge('equity_high_water_mark', 'Highest equity observed')
        self.drawdown = Gauge('equity_drawdown', 'Current drawdown from the high-water mark')
        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')

        self.regime = Gauge('market_regime', 'Market regime (-1 bear, 0 sideways, 1 bull)')
        self.regime_confidence = Gauge('market_regime_confidence', 'Regime confidence 0..1')
        self.entry_confidence = Gauge('entry_confidence', 'Latest entry candidate confidence 0..1')
        self.market_score = Gauge('market_score', 'Heartbeat market score 1..10')

        self.position_open = Gauge('position_open', 'Whether a position is open')
        self.position_amount = Gauge('position_amount', 'Open position size in base units')

        self.cycles = Counter('control_cycles_total', 'Control loop cycles', ['outcome'])
        self.cycle_latency = Histogram('control_cycle_seconds', 'Duration of one control loop cycle')
        self.decisions = Counter('decisions_total', 'Audit decisions recorded', ['type', 'decision'])

        self.trades = Counter('trades_executed_total', 'Trades executed', ['side'])
        self.trade_failures = Counter('trade_failures_total', 'Failed executions', ['side'])
        self.slippage_bps = Histogram(
            'execution_slippage_bps',
            'Execution slippage in basis points',
            buckets=(1, 2, 5, 10, 25, 50, 100),
        )
        self.positions_closed = Counter('positions_closed_total', 'Closed positions', ['outcome', 'exit_type'])
        self.persistence_failures = Counter('persistence_write_failures_total', 'Database writes dropped after an error')

        self.kill_switch_triggers = Counter('kill_switch_triggers_total', 'Total kill switch triggers', ['reason'])
        self.kill_switch_active = Gauge('kill_switch_active', 'Kill switch latch state')

    def update_price(self, price: float, source: Optional[str] = None):
        self.current_price.set(price)
        if source:
            self.price_source.labels(source=source).set(price)

    def record_price_failure(self):
        self.price_fetch_failures.inc()

    def update_divergence(self, divergence: Optional[float]):
        if divergence is not None:
            self.oracle_divergence.set(divergence)

    def update_equity(self, equity: float, high_water_mark: Optional[float] = None, drawdown: Optional[float] = None):
        self.equity.set(equity)
        if high_water_mark is not None:
            self.high_water_mark.set(high_water_mark)
        if drawdown is not None:
            self.drawdown.set(drawdown)

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def update_regime(self, regime: str, confidence: float):
        self.regime.set(REGIME_CODES.get(regime, 0))
        self.regime_confidence.set(confidence)

    def update_entry_confidence(self, confidence: float):
        self.entry_confidence.set(confidence)

    def update_market_score(self, score: int):
        self.market_score.set(score)

    def update_position(self, amount: Optional[float]):
        self.position_open.set(1 if amount else 0)
        self.position_amount.set(amount or 0.0)

    def record_cycle(self, outcome: str, seconds: Optional[float] = None):
        self.cycles.labels(outcome=outcome).inc()
        if seconds is not None:
            self.cycle_latency.observe(seconds)

    def record_decision(self, entry_type: str, decision: str):
        self.decisions.labels(type=entry_type, decision=decision).inc()

    def record_trade(self, side: str, slippage: Optional[float] = None):
        self.trades.labels(side=side).inc()
        if slippage is not None:
            self.slippage_bps.observe(abs(float(slippage)) * 10_000)

    def record_trade_failure(self, side: str):
        self.trade_failures.labels(side=side).inc()

    def record_position_closed(self, outcome: str, exit_type: str):
        self.positions_closed.labels(outcome=outcome, exit_type=exit_type).inc()

    def record_persistence_failure(self):
        self.persistence_failures.inc()

    def record_kill_switch(self, reason: str):
        self.kill_switch_triggers.labels(reason=reason).inc()
        self.kill_switch_active.set(1)

    def clear_kill_switch(self):
        self.kill_switch_active.set(0)


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning("Metrics port %s in use; trying next", candidate)
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    raise RuntimeError(
        f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
    ) from last_error


metrics = MetricsCollector()
