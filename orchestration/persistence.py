import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

import asyncpg

from analytics.performance import PerformanceSummary, calculate_performance
from api.alerts import AlertWebhook, alert_webhook
from api.metrics import MetricsCollector, metrics
from monitoring.audit_logger import AuditLogger

if TYPE_CHECKING:
    from ingest.persister import DataPersister
    from risk.kill_switch import KillSwitchEvent
    from risk.risk_manager import RiskStatus
    from strategy.execution_types import Balance, ExecutionResult
    from strategy.exit_manager import Position


logger = logging.getLogger(__name__)


class PersistenceCoordinator:
    """Fan decisions, fills, equity and halts out to the database, audit log, metrics and alerts."""

    def __init__(
        self,
        persister: 'DataPersister',
        audit: AuditLogger,
        alerts: Optional[AlertWebhook] = None,
        collector: Optional[MetricsCollector] = None,
        closed_memory: int = 500,
    ):
        self.persister = persister
        self.audit = audit
        self.alerts = alerts or alert_webhook
        self.metrics = collector or metrics
        self.closed_positions: deque = deque(maxlen=closed_memory)

    async def _store(self, write: Callable[[Dict[str, Any]], Awaitable[None]], row: Dict[str, Any]) -> bool:
        """Hand one row to the database writer. A failed write is logged and dropped."""
        try:
            await write(row)
        except (asyncpg.PostgresError, OSError) as exc:
            self.metrics.record_persistence_failure()
            logger.error("Persistence write failed (%s): %s", getattr(write, '__name__', 'write'), exc)
            return False
        return True

    async def record_decision(
        self,
        entry_type: str,
        decision: str,
        reasons: Optional[List[str]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry = self.audit.record(entry_type, decision, reasons, data)
        self.metrics.record_decision(entry_type, decision)
        await self._store(self.persister.insert_decision, entry)
        return entry

    async def record_equity(self, balance: 'Balance', price: float, status: 'RiskStatus') -> None:
        equity = balance.equity(price)
        self.metrics.update_equity(equity, status.high_water_mark, status.current_drawdown)
        self.metrics.update_price(price)
        await self._store(self.persister.insert_equity, {
            'timestamp': int(time.time() * 1000),
            'equity': equity,
            'quote': balance.quote,
            'base': balance.base,
            'price': price,
            'drawdown': status.current_drawdown,
            'high_water_mark': status.high_water_mark,
        })

    async def record_trade(
        self,
        side: str,
        result: 'ExecutionResult',
        position_id: Optional[str] = None,
        exit_type: Optional[str] = None,
    ) -> None:
        self.metrics.record_trade(side, result.slippage)
        await self._store(self.persister.insert_trade, {
            **result.as_dict(),
            'side': side,
            'position_id': position_id,
            'exit_type': exit_type,
        })
        await self.alerts.trade_alert(side, result.price, result.amount, result.tx_id)

    async def record_trade_failure(self, side: str, result: 'ExecutionResult') -> None:
        self.metrics.record_trade_failure(side)
        logger.error("%s execution failed: %s", side.upper(), result.error)

    async def record_position_open(self, position: 'Position') -> None:
        self.metrics.update_position(position.amount)
        await self._store(self.persister.upsert_position, {**position.as_dict(), 'status': 'open'})

    async def record_position_update(self, position: 'Position') -> None:
        self.metrics.update_position(position.amount)
        await self._store(self.persister.upsert_position, {**position.as_dict(), 'status': 'open'})

    async def record_position_closed(
        self,
        position: 'Position',
        exit_price: float,
        pnl: float,
        r_multiple: float,
        exit_type: str,
        closed_at: Optional[int] = None,
    ) -> Dict[str, Any]:
        closed_at = closed_at or int(time.time() * 1000)
        if pnl > 0:
            outcome = 'win'
        elif pnl < 0:
            outcome = 'loss'
        else:
            outcome = 'breakeven'
        record = {
            **position.as_dict(),
            'status': 'closed',
            'closed_at': closed_at,
            'exit_price': exit_price,
            'pnl': pnl,
            'r_multiple': r_multiple,
            'outcome': outcome,
            'exit_type': exit_type,
            'hold_time_ms': closed_at - position.entry_time,
        }
        self.closed_positions.append(record)
        self.metrics.record_pnl(pnl)
        self.metrics.record_position_closed(outcome, exit_type)
        self.metrics.update_position(None)
        await self._store(self.persister.upsert_position, record)
        await self.record_decision(
            'position_closed',
            'exit',
            [f"{exit_type} exit: {outcome} {pnl:.2f} ({r_multiple:.2f}R)"],
            record,
        )
        await self.alerts.position_closed_alert(pnl, r_multiple, exit_type)
        return record

    async def record_kill_switch(self, event: 'KillSwitchEvent') -> None:
        payload = event.to_dict()
        self.metrics.record_kill_switch(event.type.value)
        await self.record_decision(
            'kill_switch_triggered',
            'other',
            [f"Kill switch: {event.type.value}"],
            payload,
        )
        await self._store(self.persister.insert_event, {
            'timestamp': event.timestamp,
            'type': f"kill_switch.{event.type.value}",
            'severity': 'critical',
            'data': payload,
        })
        await self.alerts.kill_switch_alert(event.type.value, event.data)

    async def record_drawdown_breach(self, status: 'RiskStatus') -> None:
        await self._store(self.persister.insert_event, {
            'timestamp': int(time.time() * 1000),
            'type': 'drawdown_breach',
            'severity': 'critical',
            'data': status.as_dict(),
        })
        await self.alerts.drawdown_alert(status.current_drawdown)

    def performance(self) -> PerformanceSummary:
        return calculate_performance(self.closed_positions)

    async def close(self) -> None:
        await self.persister.stop()
