import sys

sys.path.insert(0, '.')

import pytest

from risk.position_sizer import InvalidStop, PositionSize, PositionSizer


def test_size_risks_fixed_fraction():
    size = PositionSizer(risk_per_trade=0.01, max_position_size=0.40).calculate(10000.0, 105.0, 102.0)
    assert size.size_usd == pytest.approx(3500.0)
    assert size.size_asset == pytest.approx(100.0 / 3.0)
    assert size.potential_loss == pytest.approx(100.0)
    assert size.percent_of_equity == pytest.approx(0.35)


def test_size_is_capped_by_max_position():
    size = PositionSizer(risk_per_trade=0.01, max_position_size=0.40).calculate(10000.0, 100.0, 99.0)
    # uncapped risk sizing would be $10,000
    assert size.size_usd == pytest.approx(4000.0)
    assert size.percent_of_equity == pytest.approx(0.40)
    assert size.potential_loss == pytest.approx(40.0)


def test_size_from_risk_when_under_cap():
    size = PositionSizer().calculate(10000.0, 100.0, 80.0)
    assert size.size_usd == pytest.approx(500.0)
    assert size.potential_loss == pytest.approx(100.0)
    assert size.percent_of_equity == pytest.approx(0.05)


def test_overrides_apply_per_call():
    size = PositionSizer().calculate(10000.0, 100.0, 80.0, risk_percent=0.02, max_position_percent=0.05)
    assert size.size_usd == pytest.approx(500.0)


@pytest.mark.parametrize('equity,entry,stop', [(10000.0, 100.0, 100.0), (0.0, 100.0, 95.0), (1000.0, 0.0, 1.0)])
def test_invalid_inputs_raise(equity, entry, stop):
    with pytest.raises(InvalidStop):
        PositionSizer().calculate(equity, entry, stop)


def test_validate_size():
    sizer = PositionSizer(risk_per_trade=0.01, max_position_size=0.4, min_position_usd=10.0, risk_tolerance=1.1)
    ok = sizer.validate_size(sizer.calculate(10000.0, 100.0, 80.0), 10000.0)
    assert ok.valid

    too_small = sizer.validate_size(PositionSize(5.0, 0.05, 0.5, 0.0005), 10000.0)
    assert not too_small.valid
    assert 'below minimum' in too_small.reason

    too_large = sizer.validate_size(PositionSize(5000.0, 50.0, 50.0, 0.5), 10000.0)
    assert not too_large.valid

    too_risky = sizer.validate_size(PositionSize(1000.0, 10.0, 150.0, 0.1), 10000.0)
    assert not too_risky.valid
    assert 'Potential loss' in too_risky.reason


def test_capped_size_passes_validation_despite_float_rounding():
    sizer = PositionSizer(risk_per_trade=0.01, max_position_size=0.4)
    equity = 1571.5857142857144
    size = sizer.calculate(equity, 100.0, 99.0)

    assert size.percent_of_equity == 0.4
    assert size.size_usd == pytest.approx(equity * 0.4)
    assert sizer.validate_size(size, equity).valid


@pytest.mark.parametrize('equity', [1000.0, 1571.5857142857144, 3333.3333333333335, 987654.321])
def test_capped_sizes_always_validate(equity):
    sizer = PositionSizer(risk_per_trade=0.01, max_position_size=0.4)
    size = sizer.calculate(equity, 100.0, 99.5)
    assert size.percent_of_equity == 0.4
    assert sizer.validate_size(size, equity).valid
