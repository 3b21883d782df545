"""Startup validation of the loaded configuration."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger(__name__)

SUPPORTED_RUN_MODES = ('paper',)
KNOWN_TIMEFRAMES = ('1m', '5m', '15m', '1h', '4h', '1d')


class ConfigError(ValueError):
    pass


def _section(cfg: Any, name: str) -> Mapping:
    section = cfg.get(name) if hasattr(cfg, 'get') else None
    if section is None:
        raise ConfigError(f"Missing configuration section '{name}'")
    return section


def _check_range(value: float, low: float, high: float, name: str) -> None:
    if value <= low or value > high:
        raise ConfigError(f"{name} must be within ({low}, {high}], got {value}")


def validate_config(cfg: Any, create_dirs: bool = True) -> None:
    run_mode = str(cfg.get('run_mode', 'paper')).lower()
    if run_mode not in SUPPORTED_RUN_MODES:
        raise ConfigError(f"Unsupported run_mode '{run_mode}' (supported: {', '.join(SUPPORTED_RUN_MODES)})")

    trading = _section(cfg, 'trading')
    if float(trading.get('initial_capital', 0)) <= 0:
        raise ConfigError("trading.initial_capital must be positive")
    if float(trading.get('starting_base', 0) or 0) < 0:
        raise ConfigError("trading.starting_base cannot be negative")

    risk = _section(cfg, 'risk')
    _check_range(float(risk['risk_per_trade']), 0.0, 0.05, 'risk.risk_per_trade')
    _check_range(float(risk['max_position_size']), 0.0, 1.0, 'risk.max_position_size')
    _check_range(float(risk['max_drawdown_percent']), 0.0, 1.0, 'risk.max_drawdown_percent')

    regime = _section(cfg, 'regime')
    if int(regime['ema_fast']) >= int(regime['ema_slow']):
        raise ConfigError("regime.ema_fast must be shorter than regime.ema_slow")

    entry = _section(cfg, 'entry')
    if float(entry['rsi_low']) >= float(entry['rsi_high']):
        raise ConfigError("entry.rsi_low must be less than entry.rsi_high")

    exit_cfg = _section(cfg, 'exit')
    _check_range(float(exit_cfg['partial_tp_percent']), 0.0, 1.0, 'exit.partial_tp_percent')

    timeframes = list(_section(cfg, 'market_data').get('timeframes', []))
    for tf in timeframes:
        if tf not in KNOWN_TIMEFRAMES:
            raise ConfigError(f"Unknown timeframe '{tf}'")
    for name, section in (('regime', regime), ('entry', entry)):
        tf = section.get('timeframe')
        if tf not in timeframes:
            raise ConfigError(f"{name}.timeframe '{tf}' is not tracked by market_data.timeframes")

    if create_dirs:
        log_dir = _section(cfg, 'logging').get('directory', './logs')
        Path(log_dir).mkdir(parents=True, exist_ok=True)

    logger.info(
        "Configuration validated (mode=%s, pair=%s, risk/trade=%.2f%%)",
        run_mode,
        trading.get('pair'),
        float(risk['risk_per_trade']) * 100,
    )
