import sys

sys.path.insert(0, '.')

import pytest

from config import Config, ConfigError, config, validate_config


def test_bundled_config_is_valid():
    assert config.trading['pair'] == 'SOL/USDC'
    assert config.regime.timeframe == '4h'
    validate_config(config, create_dirs=False)


def test_env_placeholders_resolve(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "run_mode: ${TR_TEST_MODE:paper}\n"
        "trading:\n"
        "  starting_base: ${TR_TEST_BASE:0}\n"
        "  webhook: ${TR_TEST_UNSET}\n"
    )
    monkeypatch.setenv('TR_TEST_BASE', '2.5')
    monkeypatch.delenv('TR_TEST_MODE', raising=False)
    monkeypatch.delenv('TR_TEST_UNSET', raising=False)

    cfg = Config(str(path))
    assert cfg.run_mode == 'paper'
    assert cfg.trading['starting_base'] == '2.5'
    assert cfg.trading.get('webhook') == '${TR_TEST_UNSET}'


def test_missing_config_file_raises(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'missing.yaml'))


def _override(tmp_path, replacements):
    source = Config().config_path.read_text()
    for old, new in replacements:
        assert old in source
        source = source.replace(old, new)
    path = tmp_path / 'config.yaml'
    path.write_text(source)
    return Config(str(path))


@pytest.mark.parametrize('replacements', [
    [('run_mode: ${RUN_MODE:paper}', 'run_mode: live')],
    [('risk_per_trade: 0.01', 'risk_per_trade: 0.5')],
    [('ema_fast: 50', 'ema_fast: 300')],
    [('rsi_low: 50', 'rsi_low: 80')],
    [('timeframe: 15m', 'timeframe: 5m')],
])
def test_invalid_settings_rejected(tmp_path, replacements):
    cfg = _override(tmp_path, replacements)
    with pytest.raises(ConfigError):
        validate_config(cfg, create_dirs=False)
