import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Dict, Optional, Tuple

import aiohttp

from api.metrics import metrics
from ingest.price_feed import NoReasonablePrice
from ingest.price_providers import RPCError
from ingest.rest_client import APIError
from monitoring.async_utils import sleep_while
from orchestration.persistence import PersistenceCoordinator
from risk.kill_switch import KillSwitch, KillSwitchEvent, KillSwitchType
from risk.position_sizer import InvalidStop, PositionSizer
from risk.risk_manager import RiskManager
from strategy.entry_signals import EntrySignal, EntrySignals
from strategy.execution import Executor
from strategy.execution_types import Balance
from strategy.exit_manager import ExitManager, ExitSignal, Position
from strategy.regime_filter import Regime, RegimeAnalysis, RegimeFilter


logger = logging.getLogger(__name__)

CONNECTIVITY_ERRORS = (aiohttp.ClientError, APIError, asyncio.TimeoutError, RPCError, NoReasonablePrice)


def classify_failure(error: BaseException) -> KillSwitchType:
    if isinstance(error, CONNECTIVITY_ERRORS) or 'RPC' in str(error):
        return KillSwitchType.RPC_FAILURE
    return KillSwitchType.SYSTEM_ERROR


def market_score(regime: Optional[RegimeAnalysis], entry: Optional[EntrySignal]) -> int:
    """Operator-facing 1..10 score; 5 is neutral."""
    score = 5
    if regime is not None:
        if regime.regime is Regime.BULL:
            score += round(regime.confidence * 3)
        elif regime.regime is Regime.BEAR:
            score -= round(regime.confidence * 3)
    if entry is not None and entry.should_enter:
        score += round(entry.confidence * 2)
    return max(1, min(10, score))


class TradingBot:
    """Fixed-interval control loop driving regime, entry and exit decisions for one position."""

    def __init__(
        self,
        market_data,
        regime_filter: RegimeFilter,
        entry_signals: EntrySignals,
        exit_manager: ExitManager,
        position_sizer: PositionSizer,
        risk_manager: RiskManager,
        kill_switch: KillSwitch,
        executor: Executor,
        persistence: PersistenceCoordinator,
        check_interval_ms: int = 5000,
        heartbeat_interval_ms: int = 150000,
        max_consecutive_failures: int = 3,
        max_slippage: float = 0.005,
        regime_timeframe: str = '4h',
        entry_timeframe: str = '15m',
        preliminary_stop_pct: float = 0.03,
        enable_oracle_health_check: bool = True,
        oracle_health_interval_s: float = 60.0,
    ):
        self.market_data = market_data
        self.regime_filter = regime_filter
        self.entry_signals = entry_signals
        self.exit_manager = exit_manager
        self.position_sizer = position_sizer
        self.risk_manager = risk_manager
        self.kill_switch = kill_switch
        self.executor = executor
        self.persistence = persistence

        self.check_interval_s = check_interval_ms / 1000.0
        self.heartbeat_interval_s = heartbeat_interval_ms / 1000.0
        self.max_consecutive_failures = int(max_consecutive_failures)
        self.max_slippage = float(max_slippage)
        self.regime_timeframe = regime_timeframe
        self.entry_timeframe = entry_timeframe
        self.preliminary_stop_pct = float(preliminary_stop_pct)
        self.enable_oracle_health_check = enable_oracle_health_check
        self.oracle_health_interval_s = float(oracle_health_interval_s)

        self.position: Optional[Position] = None
        self.running = False
        self.consecutive_failures = 0
        self.last_cycle_at: Optional[float] = None
        self.last_heartbeat: Optional[Dict[str, Any]] = None
        self._last_oracle_check = 0.0
        self._kill_switch_recorded = False
        self._position_realized_pnl = 0.0
        self._position_initial_amount = 0.0

    async def run(self) -> None:
        self.running = True
        logger.info("Control loop started (interval %.1fs)", self.check_interval_s)
        while self.running:
            await self.cycle_once()
            if self.running:
                await sleep_while(lambda: self.running, self.check_interval_s)
        logger.info("Control loop stopped")

    async def cycle_once(self) -> None:
        started = time.monotonic()
        try:
            await self.run_cycle()
        except Exception as exc:
            metrics.record_cycle('error', time.monotonic() - started)
            await self.handle_error(exc)
            return
        self.consecutive_failures = 0
        self.last_cycle_at = time.time()
        metrics.record_cycle('ok', time.monotonic() - started)

    async def run_cycle(self) -> None:
        if self.kill_switch.is_triggered():
            await self.handle_kill_switch(self.kill_switch.get_trigger_event())
            return

        quote = await self.market_data.update()
        if quote is None:
            metrics.record_price_failure()
            raise NoReasonablePrice("No price available this cycle")
        price = quote.price
        metrics.update_price(price, quote.source)

        if await self.check_oracle_health():
            return

        balance = await self.executor.get_balance()
        self.risk_manager.update_equity(balance.equity(price))
        status = self.risk_manager.can_trade()
        await self.persistence.record_equity(balance, price, status)

        if not status.can_trade:
            logger.warning("Trading halted: %s", status.reason)
            if self.risk_manager.is_kill_switch_triggered():
                await self.persistence.record_drawdown_breach(status)
                await self.trigger_kill_switch(
                    KillSwitchType.DRAWDOWN,
                    {
                        'drawdown': status.current_drawdown,
                        'high_water_mark': status.high_water_mark,
                        'equity': status.current_equity,
                    },
                )
            return

        if self.position is not None:
            await self.check_exit(price)
            return

        if not self.market_data.has_enough_data(self.regime_timeframe, self.regime_filter.required_candles):
            logger.debug("Insufficient %s history for regime filter", self.regime_timeframe)
            return

        regime = self.regime_filter.analyze(self.market_data.get_candles(self.regime_timeframe), price)
        tradable = self.regime_filter.can_trade(regime.regime)
        await self.persistence.record_decision(
            'regime_check',
            'other' if tradable else 'no_trade',
            regime.reasons,
            regime.as_dict(),
        )
        metrics.update_regime(regime.regime.value, regime.confidence)
        if not tradable:
            logger.info("Regime is %s; skipping entry", regime.regime.value)
            return

        await self.check_entry(price, balance)

    async def check_oracle_health(self) -> bool:
        """Run the periodic oracle divergence check. Returns True when it tripped the kill switch."""
        if not self.enable_oracle_health_check:
            return False
        now = time.monotonic()
        if self._last_oracle_check and now - self._last_oracle_check < self.oracle_health_interval_s:
            return False
        self._last_oracle_check = now

        health = await self.market_data.check_health()
        metrics.update_divergence(health.divergence)
        if health.divergence is None:
            logger.debug("Oracle health unavailable; skipping divergence check")
            return False
        if health.healthy:
            return False
        await self.trigger_kill_switch(KillSwitchType.ORACLE_DIVERGENCE, health.as_dict())
        return True

    def _preliminary_size_usd(self, equity: float, price: float) -> float:
        preliminary = self.position_sizer.calculate(equity, price, price * (1.0 - self.preliminary_stop_pct))
        return preliminary.size_usd

    async def evaluate_entry(self, price: float, equity: float) -> Optional[EntrySignal]:
        if not self.market_data.has_enough_data(self.entry_timeframe, self.entry_signals.required_candles):
            logger.debug("Insufficient %s history for entry signals", self.entry_timeframe)
            return None
        candles = self.market_data.get_candles(self.entry_timeframe)
        liquidity = self.entry_signals.check_liquidity(price, self._preliminary_size_usd(equity, price))
        return self.entry_signals.check_entry(candles, liquidity)

    async def check_entry(self, price: float, balance: Balance) -> None:
        equity = balance.equity(price)
        signal = await self.evaluate_entry(price, equity)
        if signal is None:
            return

        metrics.update_entry_confidence(signal.confidence)
        await self.persistence.record_decision(
            'entry_evaluation',
            'trade' if signal.should_enter else 'no_trade',
            signal.reasons,
            signal.as_dict(),
        )
        if not signal.should_enter:
            return

        candles = self.market_data.get_candles(self.entry_timeframe)
        entry_price = signal.entry_price
        stop_price = self.exit_manager.calculate_initial_stop(candles, entry_price)
        try:
            size = self.position_sizer.calculate(equity, entry_price, stop_price)
        except InvalidStop as exc:
            logger.warning("Entry rejected: %s", exc)
            return
        validation = self.position_sizer.validate_size(size, equity)
        if not validation.valid:
            logger.warning("Entry rejected: %s", validation.reason)
            return

        await self.execute_entry(entry_price, stop_price, size.size_usd)

    async def execute_entry(self, entry_price: float, stop_price: float, size_usd: float) -> bool:
        logger.info("Executing entry: price=%.4f stop=%.4f size=$%.2f", entry_price, stop_price, size_usd)
        result = await self.executor.buy(size_usd, self.max_slippage)
        if not result.success:
            await self.persistence.record_trade_failure('buy', result)
            return False

        position = Position(
            entry_price=result.price,
            amount=result.amount,
            stop_price=stop_price,
            entry_time=result.timestamp or int(time.time() * 1000),
        )
        self.position = position
        self._position_realized_pnl = 0.0
        self._position_initial_amount = position.amount

        await self.persistence.record_position_open(position)
        await self.persistence.record_trade('buy', result, position.position_id)
        await self.persistence.record_decision(
            'trade_executed',
            'trade',
            [f"BUY {result.amount:.6f} at {result.price:.4f}"],
            {'side': 'buy', **result.as_dict(), 'position_id': position.position_id},
        )
        logger.info("Entry executed: %.6f at %.4f (tx %s)", result.amount, result.price, result.tx_id)
        return True

    async def check_exit(self, price: float) -> None:
        position = self.position
        candles = self.market_data.get_candles(self.entry_timeframe)
        signal = self.exit_manager.check_exit(position, candles, price)
        await self.persistence.record_decision(
            'exit_evaluation',
            'exit' if signal.should_exit else 'no_trade',
            signal.reasons,
            signal.as_dict(),
        )
        if not signal.should_exit:
            return

        await self.execute_exit(signal.exit_type, signal.percentage, signal)

    async def execute_exit(self, exit_type: str, percentage: float, signal: Optional[ExitSignal] = None) -> bool:
        """Sell all or part of the open position.

        Once the sell fills, the in-memory position is settled before anything
        is written, so a failed record never leaves a sold position open.
        """
        position = self.position
        if position is None:
            return False
        full_exit = percentage >= 1.0 or exit_type != 'partial_tp'
        amount = position.amount if full_exit else position.amount * percentage
        logger.info("Executing %s exit: %.6f (%.0f%%)", exit_type, amount, percentage * 100)

        result = await self.executor.sell(amount, self.max_slippage)
        if not result.success:
            await self.persistence.record_trade_failure('sell', result)
            return False

        pnl = result.amount - amount * position.entry_price
        risk = amount * position.risk_per_unit
        r_multiple = pnl / risk if risk else 0.0
        self._position_realized_pnl += pnl
        if full_exit:
            self.position = None
        elif signal is not None:
            self.position = self.exit_manager.update_position(position, signal)
        else:
            self.position = replace(position, amount=position.amount - amount)
        logger.info("Exit executed: pnl=%.2f (%.2fR) tx %s", pnl, r_multiple, result.tx_id)

        await self.persistence.record_trade('sell', result, position.position_id, exit_type)
        if full_exit:
            initial_risk = self._position_initial_amount * position.risk_per_unit
            total_pnl = self._position_realized_pnl
            total_r = total_pnl / initial_risk if initial_risk else 0.0
            await self.persistence.record_position_closed(
                position,
                result.price,
                total_pnl,
                total_r,
                exit_type,
                result.timestamp or int(time.time() * 1000),
            )
        else:
            logger.info(
                "Partial exit taken; %.6f remaining, stop moved to %.4f",
                self.position.amount,
                self.position.stop_price,
            )
            await self.persistence.record_position_update(self.position)
        return True

    async def flatten(self, reason: str = 'kill_switch') -> bool:
        if self.position is None:
            return True
        logger.warning("Flattening open position (%s)", reason)
        closed = await self.execute_exit(reason, 1.0)
        if not closed:
            logger.error("Flatten failed; position remains open")
        return closed

    async def trigger_kill_switch(self, kind: KillSwitchType, data: Optional[Dict[str, Any]] = None) -> KillSwitchEvent:
        event = self.kill_switch.trigger(kind, data)
        await self.handle_kill_switch(event)
        return event

    async def handle_kill_switch(self, event: Optional[KillSwitchEvent]) -> None:
        if event is not None and not self._kill_switch_recorded:
            logger.critical("Kill switch active (%s); halting trading", event.type.value)
            await self.persistence.record_kill_switch(event)
            self._kill_switch_recorded = True
        await self.flatten('kill_switch')
        self.stop()

    def reset_kill_switch(self) -> None:
        self.kill_switch.reset()
        self.risk_manager.reset()
        self._kill_switch_recorded = False
        self.consecutive_failures = 0
        metrics.clear_kill_switch()

    async def handle_error(self, error: Exception) -> None:
        self.consecutive_failures += 1
        logger.error(
            "Cycle error (%s/%s): %s",
            self.consecutive_failures,
            self.max_consecutive_failures,
            error,
        )
        if self.consecutive_failures >= self.max_consecutive_failures:
            kind = classify_failure(error)
            await self.trigger_kill_switch(
                kind,
                {'error': str(error), 'consecutive_failures': self.consecutive_failures},
            )

    async def heartbeat_loop(self) -> None:
        while self.running:
            await sleep_while(lambda: self.running, self.heartbeat_interval_s)
            if not self.running:
                break
            try:
                await self.heartbeat()
            except Exception as exc:
                logger.debug("Heartbeat failed: %s", exc)

    async def heartbeat(self) -> Dict[str, Any]:
        balance = await self.executor.get_balance()
        price = (await self.market_data.get_current_price(force=True)).price
        equity = balance.equity(price)
        reasons = []

        regime = None
        if self.market_data.has_enough_data(self.regime_timeframe, self.regime_filter.required_candles):
            regime = self.regime_filter.analyze(self.market_data.get_candles(self.regime_timeframe), price)
            reasons.append(f"{regime.regime.value} ({regime.confidence:.0%} conf)")
        else:
            reasons.append(f"Insufficient {self.regime_timeframe} data")

        entry = await self.evaluate_entry(price, equity)
        if entry is None:
            reasons.append(f"Insufficient {self.entry_timeframe} data")
        elif entry.should_enter:
            reasons.append(f"Entry candidate: {entry.confidence:.0%}")
        elif entry.reasons:
            reasons.append(entry.reasons[0])

        score = market_score(regime, entry)
        metrics.update_market_score(score)
        if regime is not None:
            metrics.update_regime(regime.regime.value, regime.confidence)
        if entry is not None:
            metrics.update_entry_confidence(entry.confidence)

        if self.position is not None:
            status = (
                f"Position open: entry {self.position.entry_price:.2f}, "
                f"amount {self.position.amount:.4f}, equity {equity:.2f}"
            )
        else:
            status = f"Market score {score}/10: {'; '.join(reasons[:2])}; equity {equity:.2f}"
        logger.info("Heartbeat: %s", status)
        self.last_heartbeat = {'score': score, 'price': price, 'equity': equity, 'reasons': reasons}
        return self.last_heartbeat

    def stop(self) -> None:
        self.running = False

    async def shutdown(self) -> None:
        logger.info("Shutting down control loop")
        self.stop()
        await self.flatten('shutdown')
        await self.executor.close()
        await self.market_data.close()
        await self.persistence.close()
        logger.info("Shutdown complete")

    def get_position(self) -> Optional[Dict[str, Any]]:
        return self.position.as_dict() if self.position is not None else None

    async def get_balance(self) -> Tuple[Balance, Optional[float]]:
        balance = await self.executor.get_balance()
        try:
            price = (await self.market_data.get_current_price()).price
        except NoReasonablePrice:
            price = None
        return balance, price

    def get_status(self) -> Dict[str, Any]:
        event = self.kill_switch.get_trigger_event()
        return {
            'running': self.running,
            'has_position': self.position is not None,
            'position': self.get_position(),
            'risk': self.risk_manager.get_state(),
            'kill_switch': event.to_dict() if event is not None else None,
            'consecutive_failures': self.consecutive_failures,
            'last_cycle_at': self.last_cycle_at,
            'last_heartbeat': self.last_heartbeat,
        }
