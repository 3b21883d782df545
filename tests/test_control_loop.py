import asyncio
import json
import sys

sys.path.insert(0, '.')

import aiohttp
import pytest

from api.alerts import AlertWebhook
from ingest.price_feed import NoReasonablePrice, PriceHealth
from ingest.price_providers import PriceQuote, now_ms
from monitoring.audit_logger import AuditLogger
from orchestration.control_loop import TradingBot, classify_failure, market_score
from orchestration.persistence import PersistenceCoordinator
from risk.kill_switch import KillSwitch, KillSwitchType
from risk.position_sizer import PositionSizer
from risk.risk_manager import RiskManager
from strategy.entry_signals import EntrySignal, Liquidity
from strategy.exit_manager import ExitManager
from strategy.regime_filter import Regime, RegimeAnalysis, RegimeFilter
from strategy.simulators.paper import PaperExecutor


class DummyPersister:
    def __init__(self):
        self.rows = {'equity': [], 'trades': [], 'positions': [], 'decisions': [], 'events': []}
        self.stopped = False

    async def insert_equity(self, row):
        self.rows['equity'].append(row)

    async def insert_trade(self, row):
        self.rows['trades'].append(row)

    async def upsert_position(self, row):
        self.rows['positions'].append(row)

    async def insert_decision(self, row):
        self.rows['decisions'].append(row)

    async def insert_event(self, row):
        self.rows['events'].append(row)

    async def stop(self):
        self.stopped = True


class StubMarketData:
    """Serves a settable price to both the control loop and the paper executor."""

    def __init__(self, price=100.0):
        self.price = price
        self.error = None
        self.closed = False

    def _quote(self):
        if self.price is None:
            raise NoReasonablePrice("no price")
        return PriceQuote(self.price, now_ms(), 0.0, 'stub')

    async def update(self):
        if self.error is not None:
            raise self.error
        if self.price is None:
            return None
        return self._quote()

    async def get_price(self, force=False):
        return self._quote()

    async def get_current_price(self, force=False):
        return self._quote()

    def get_candles(self, timeframe, count=None):
        return []

    def has_enough_data(self, timeframe, required):
        return True

    async def check_health(self):
        return PriceHealth(healthy=True)

    async def close(self):
        self.closed = True


class StubRegimeFilter:
    required_candles = 0
    can_trade = staticmethod(RegimeFilter.can_trade)

    def __init__(self, regime=Regime.BULL):
        self.regime = regime

    def analyze(self, candles, live_price=None):
        return RegimeAnalysis(self.regime, 0.8, {'price': live_price}, [f"stub {self.regime.value}"])


class StubEntrySignals:
    required_candles = 0

    def __init__(self, should_enter=True):
        self.should_enter = should_enter
        self.calls = 0

    def check_liquidity(self, price, size_usd):
        return Liquidity(0.0015, 10000.0, size_usd / 10000.0 * 0.01)

    def check_entry(self, candles, liquidity):
        self.calls += 1
        return EntrySignal(self.should_enter, 0.9, 100.0, {}, ['stub breakout'])


def make_bot(tmp_path, initial_equity=1000.0, regime=Regime.BULL, should_enter=True):
    market = StubMarketData()
    executor = PaperExecutor(
        market,
        initial_quote=1000.0,
        fee_pct=0.002,
        slippage_base=0.001,
        slippage_scaling=0.0001,
        slippage_jitter=0.0,
        enable_delays=False,
    )
    persister = DummyPersister()
    persistence = PersistenceCoordinator(persister, AuditLogger(tmp_path / 'audit.jsonl'), alerts=AlertWebhook(url=''))
    bot = TradingBot(
        market,
        StubRegimeFilter(regime),
        StubEntrySignals(should_enter),
        ExitManager(),
        PositionSizer(),
        RiskManager(initial_equity, started_at=0.0),
        KillSwitch(tmp_path / 'STOP_AND_FLATTEN'),
        executor,
        persistence,
        enable_oracle_health_check=False,
    )
    bot.running = True
    return bot, market, executor, persister


def audit_types(tmp_path):
    lines = (tmp_path / 'audit.jsonl').read_text().strip().splitlines()
    return [json.loads(line)['type'] for line in lines]


def test_bull_regime_with_signal_opens_position(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path)
    asyncio.run(bot.cycle_once())

    assert bot.position is not None
    assert bot.position.stop_price == pytest.approx(98.0)
    balance = asyncio.run(executor.get_balance())
    assert balance.quote == pytest.approx(600.0)
    assert balance.base == pytest.approx(bot.position.amount)
    assert audit_types(tmp_path) == ['regime_check', 'entry_evaluation', 'trade_executed']
    assert persister.rows['trades'][0]['side'] == 'buy'
    assert persister.rows['positions'][0]['status'] == 'open'
    assert bot.consecutive_failures == 0


def test_non_bull_regime_skips_entry(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path, regime=Regime.SIDEWAYS)
    asyncio.run(bot.cycle_once())
    assert bot.position is None
    assert bot.entry_signals.calls == 0
    assert audit_types(tmp_path) == ['regime_check']


def test_open_position_is_managed_regardless_of_regime(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path)
    asyncio.run(bot.cycle_once())
    opened = bot.position
    bot.regime_filter.regime = Regime.BEAR

    # beyond 1.5R: half comes off and the stop moves to breakeven
    market.price = 104.0
    asyncio.run(bot.cycle_once())
    assert bot.position is not None
    assert bot.position.amount == pytest.approx(opened.amount / 2)
    assert bot.position.partial_taken
    assert bot.position.stop_price == pytest.approx(opened.entry_price)

    # back through breakeven closes the rest
    market.price = 100.0
    asyncio.run(bot.cycle_once())
    assert bot.position is None
    balance = asyncio.run(executor.get_balance())
    assert balance.base == pytest.approx(0.0, abs=1e-9)

    closed = bot.persistence.closed_positions[-1]
    assert closed['exit_type'] == 'stop'
    sells = [t for t in persister.rows['trades'] if t['side'] == 'sell']
    assert len(sells) == 2
    cost_basis = opened.amount * opened.entry_price
    assert closed['pnl'] == pytest.approx(sum(t['amount'] for t in sells) - cost_basis)
    assert closed['r_multiple'] > 0
    assert 'position_closed' in audit_types(tmp_path)


async def _database_down(row):
    raise OSError("database unavailable")


def test_failed_trade_write_still_closes_position(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path)
    asyncio.run(bot.cycle_once())
    assert bot.position is not None
    persister.insert_trade = _database_down

    market.price = 90.0
    asyncio.run(bot.cycle_once())

    assert bot.position is None
    assert bot.consecutive_failures == 0
    assert not bot.kill_switch.is_triggered()
    assert asyncio.run(executor.get_balance()).base == pytest.approx(0.0, abs=1e-9)
    assert bot.persistence.closed_positions[-1]['exit_type'] == 'stop'

    # the next cycle is flat and evaluates entries again instead of selling a phantom position
    bot.entry_signals.should_enter = False
    asyncio.run(bot.cycle_once())
    assert bot.position is None
    assert bot.entry_signals.calls == 2


def test_failed_trade_write_still_reduces_partial(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path)
    asyncio.run(bot.cycle_once())
    opened = bot.position
    persister.insert_trade = _database_down

    market.price = 104.0
    asyncio.run(bot.cycle_once())

    assert bot.position is not None
    assert bot.position.amount == pytest.approx(opened.amount / 2)
    assert bot.position.partial_taken
    assert bot.position.stop_price == pytest.approx(opened.entry_price)
    balance = asyncio.run(executor.get_balance())
    assert balance.base == pytest.approx(bot.position.amount)


def test_position_settled_before_an_unexpected_record_error(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path)
    asyncio.run(bot.cycle_once())

    async def _broken_record(*args, **kwargs):
        raise RuntimeError("audit disk full")

    bot.persistence.record_trade = _broken_record
    market.price = 90.0
    asyncio.run(bot.cycle_once())

    assert bot.consecutive_failures == 1
    assert bot.position is None
    assert asyncio.run(executor.get_balance()).base == pytest.approx(0.0, abs=1e-9)


def test_drawdown_breach_triggers_kill_switch(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path, initial_equity=2000.0)
    asyncio.run(bot.cycle_once())

    assert bot.kill_switch.is_triggered()
    assert bot.kill_switch.get_trigger_event().type is KillSwitchType.DRAWDOWN
    assert not bot.running
    assert bot.position is None
    event_types = [e['type'] for e in persister.rows['events']]
    assert 'drawdown_breach' in event_types
    assert 'kill_switch.drawdown' in event_types
    payload = json.loads((tmp_path / 'STOP_AND_FLATTEN').read_text())
    assert payload['type'] == 'drawdown'


def test_sentinel_file_flattens_and_stops(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path)
    asyncio.run(bot.cycle_once())
    assert bot.position is not None

    (tmp_path / 'STOP_AND_FLATTEN').write_text('halt')
    asyncio.run(bot.cycle_once())

    assert bot.position is None
    assert not bot.running
    assert asyncio.run(executor.get_balance()).base == pytest.approx(0.0, abs=1e-9)
    assert bot.persistence.closed_positions[-1]['exit_type'] == 'kill_switch'
    assert audit_types(tmp_path).count('kill_switch_triggered') == 1


def test_failed_flatten_keeps_position(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path)
    asyncio.run(bot.cycle_once())
    market.price = None

    event = asyncio.run(bot.trigger_kill_switch(KillSwitchType.MANUAL, {'source': 'test'}))
    assert event.type is KillSwitchType.MANUAL
    assert bot.position is not None
    assert not bot.running


def test_repeated_failures_trip_kill_switch(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path)
    market.error = RuntimeError("boom")

    asyncio.run(bot.cycle_once())
    asyncio.run(bot.cycle_once())
    assert bot.consecutive_failures == 2
    assert not bot.kill_switch.is_triggered()

    asyncio.run(bot.cycle_once())
    assert bot.kill_switch.get_trigger_event().type is KillSwitchType.SYSTEM_ERROR
    assert not bot.running


def test_missing_price_counts_as_rpc_failure(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path)
    market.price = None
    for _ in range(3):
        asyncio.run(bot.cycle_once())
    assert bot.kill_switch.get_trigger_event().type is KillSwitchType.RPC_FAILURE


def test_success_resets_failure_count(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path, should_enter=False)
    market.error = RuntimeError("boom")
    asyncio.run(bot.cycle_once())
    asyncio.run(bot.cycle_once())
    market.error = None
    asyncio.run(bot.cycle_once())
    assert bot.consecutive_failures == 0
    assert not bot.kill_switch.is_triggered()


def test_reset_kill_switch_clears_latches(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path, initial_equity=2000.0)
    asyncio.run(bot.cycle_once())
    assert bot.kill_switch.is_triggered()

    bot.reset_kill_switch()
    assert not bot.kill_switch.is_triggered()
    assert not bot.risk_manager.is_kill_switch_triggered()
    assert not (tmp_path / 'STOP_AND_FLATTEN').exists()
    status = bot.get_status()
    assert status['kill_switch'] is None
    assert status['risk']['high_water_mark'] == pytest.approx(1000.0)


def test_heartbeat_reports_market_score(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path, should_enter=False)
    beat = asyncio.run(bot.heartbeat())
    assert 1 <= beat['score'] <= 10
    assert beat['equity'] == pytest.approx(1000.0)
    assert bot.last_heartbeat is beat


def test_shutdown_closes_resources(tmp_path):
    bot, market, executor, persister = make_bot(tmp_path)
    asyncio.run(bot.cycle_once())
    asyncio.run(bot.shutdown())
    assert bot.position is None
    assert market.closed
    assert persister.stopped


def test_classify_failure():
    assert classify_failure(aiohttp.ClientError("reset")) is KillSwitchType.RPC_FAILURE
    assert classify_failure(asyncio.TimeoutError()) is KillSwitchType.RPC_FAILURE
    assert classify_failure(NoReasonablePrice("none")) is KillSwitchType.RPC_FAILURE
    assert classify_failure(ValueError("RPC node unhealthy")) is KillSwitchType.RPC_FAILURE
    assert classify_failure(KeyError("missing")) is KillSwitchType.SYSTEM_ERROR


def test_market_score_bounds():
    bull = RegimeAnalysis(Regime.BULL, 1.0)
    bear = RegimeAnalysis(Regime.BEAR, 1.0)
    entry = EntrySignal(True, 1.0, 100.0)
    assert market_score(None, None) == 5
    assert market_score(bull, entry) == 10
    assert market_score(bear, None) == 2


def test_system_reset_after_kill_requires_restart(tmp_path):
    from main import TradingSystem
    from orchestration.lifecycle import Components

    bot, market, executor, persister = make_bot(tmp_path, initial_equity=2000.0)
    asyncio.run(bot.cycle_once())
    assert bot.kill_switch.is_triggered()
    assert not bot.running

    system = TradingSystem()
    system.components = Components(
        market, executor, persister, bot.persistence, bot.kill_switch, bot.risk_manager, bot
    )
    system.running = True

    result = system.reset_kill_switch()
    assert result == {'reset': True, 'restart_required': True}
    assert not bot.kill_switch.is_triggered()
    assert not bot.risk_manager.is_kill_switch_triggered()


def test_system_reset_while_running_needs_no_restart(tmp_path):
    from main import TradingSystem
    from orchestration.lifecycle import Components

    bot, market, executor, persister = make_bot(tmp_path, should_enter=False)
    system = TradingSystem()
    system.components = Components(
        market, executor, persister, bot.persistence, bot.kill_switch, bot.risk_manager, bot
    )
    system.running = True

    assert system.reset_kill_switch()['restart_required'] is False
