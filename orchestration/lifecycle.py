import logging
from dataclasses import dataclass
from pathlib import Path

from config.validation import validate_config
from ingest.market_data import MarketDataService, build_market_data
from ingest.persister import DataPersister
from ingest.price_feed import NoReasonablePrice
from monitoring.audit_logger import AuditLogger
from orchestration.control_loop import TradingBot
from orchestration.persistence import PersistenceCoordinator
from risk.kill_switch import KillSwitch
from risk.position_sizer import PositionSizer
from risk.risk_manager import RiskManager
from strategy.entry_signals import EntrySignals
from strategy.execution import Executor, build_executor
from strategy.exit_manager import ExitManager
from strategy.regime_filter import RegimeFilter


logger = logging.getLogger(__name__)


@dataclass
class Components:
    market_data: MarketDataService
    executor: Executor
    persister: DataPersister
    persistence: PersistenceCoordinator
    kill_switch: KillSwitch
    risk_manager: RiskManager
    bot: TradingBot


async def derive_initial_equity(cfg, executor: Executor, market_data: MarketDataService) -> float:
    """Value the executor's starting balance so the high-water mark starts at reality."""
    balance = await executor.get_balance()
    if balance.base <= 0:
        return balance.quote
    try:
        price = (await market_data.get_current_price(force=True)).price
    except NoReasonablePrice as exc:
        fallback = float(cfg.trading.get('initial_capital', 1000))
        logger.warning("Could not value starting balance (%s); using initial capital %.2f", exc, fallback)
        return fallback
    return balance.equity(price)


async def build_components(cfg, initialize_market_data: bool = True) -> Components:
    validate_config(cfg)
    logger.info("Building trading components for %s (mode=%s)", cfg.trading.get('pair'), cfg.get('run_mode'))

    market_data = build_market_data(cfg)
    regime_filter = RegimeFilter.from_config(cfg)
    entry_signals = EntrySignals.from_config(cfg)
    if initialize_market_data:
        md_cfg = cfg.market_data
        await market_data.initialize(
            slow_count=regime_filter.required_candles + int(cfg.regime.get('history_buffer', 50)),
            fast_count=entry_signals.required_candles + int(cfg.entry.get('history_buffer', 50)),
            preload_days=int(md_cfg.get('preload_days', 7)),
            slow_min=int(md_cfg.get('slow_bootstrap_min', 20)),
            fast_min=int(md_cfg.get('fast_bootstrap_min', 50)),
            preload_sample_minutes=int(md_cfg.get('preload_sample_minutes', 15)),
        )

    executor = build_executor(cfg, market_data.price_feed)
    await executor.initialize()
    initial_equity = await derive_initial_equity(cfg, executor, market_data)
    risk_manager = RiskManager.from_config(cfg, initial_equity)
    logger.info("Risk manager initialized with equity %.2f", initial_equity)

    monitoring_cfg = cfg.monitoring
    persister = DataPersister(cfg.database)
    audit = AuditLogger(
        monitoring_cfg.get('audit_log', 'logs/audit.jsonl'),
        enabled=bool(monitoring_cfg.get('enable_audit_log', True)),
    )
    persistence = PersistenceCoordinator(
        persister,
        audit,
        closed_memory=int(monitoring_cfg.get('closed_positions_memory', 500)),
    )
    kill_switch = KillSwitch(Path(cfg.safety.get('kill_switch_file', './STOP_AND_FLATTEN')))

    timing = cfg.timing
    bot = TradingBot(
        market_data,
        regime_filter,
        entry_signals,
        ExitManager.from_config(cfg),
        PositionSizer.from_config(cfg),
        risk_manager,
        kill_switch,
        executor,
        persistence,
        check_interval_ms=int(timing.get('check_interval_ms', 5000)),
        heartbeat_interval_ms=int(timing.get('heartbeat_interval_ms', 150000)),
        max_consecutive_failures=int(timing.get('max_consecutive_failures', 3)),
        max_slippage=float(cfg.risk.get('max_slippage', 0.005)),
        regime_timeframe=cfg.regime.get('timeframe', '4h'),
        entry_timeframe=cfg.entry.get('timeframe', '15m'),
        preliminary_stop_pct=float(cfg.entry.get('preliminary_stop_pct', 0.03)),
        enable_oracle_health_check=bool(cfg.safety.get('enable_oracle_health_check', True)),
        oracle_health_interval_s=float(timing.get('oracle_health_interval_s', 60)),
    )
    return Components(market_data, executor, persister, persistence, kill_switch, risk_manager, bot)
