import asyncio
import asyncpg
import json
import logging
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone


logger = logging.getLogger(__name__)

SCHEMA = (
    '''CREATE TABLE IF NOT EXISTS equity_curve (
           ts TIMESTAMPTZ PRIMARY KEY,
           equity DOUBLE PRECISION NOT NULL,
           quote_balance DOUBLE PRECISION,
           base_balance DOUBLE PRECISION,
           price DOUBLE PRECISION,
           drawdown DOUBLE PRECISION,
           high_water_mark DOUBLE PRECISION
       )''',
    '''CREATE TABLE IF NOT EXISTS trades (
           id BIGSERIAL PRIMARY KEY,
           ts TIMESTAMPTZ NOT NULL,
           position_id TEXT,
           side TEXT NOT NULL,
           price DOUBLE PRECISION,
           amount DOUBLE PRECISION,
           fee DOUBLE PRECISION,
           slippage DOUBLE PRECISION,
           tx_id TEXT,
           exit_type TEXT
       )''',
    '''CREATE TABLE IF NOT EXISTS positions (
           position_id TEXT PRIMARY KEY,
           opened_at TIMESTAMPTZ NOT NULL,
           closed_at TIMESTAMPTZ,
           entry_price DOUBLE PRECISION NOT NULL,
           amount DOUBLE PRECISION NOT NULL,
           stop_price DOUBLE PRECISION,
           initial_stop_price DOUBLE PRECISION,
           exit_price DOUBLE PRECISION,
           pnl DOUBLE PRECISION,
           r_multiple DOUBLE PRECISION,
           outcome TEXT,
           exit_type TEXT,
           status TEXT NOT NULL
       )''',
    '''CREATE TABLE IF NOT EXISTS decisions (
           id BIGSERIAL PRIMARY KEY,
           ts TIMESTAMPTZ NOT NULL,
           type TEXT NOT NULL,
           decision TEXT NOT NULL,
           reasons JSONB,
           data JSONB
       )''',
    '''CREATE TABLE IF NOT EXISTS events (
           id BIGSERIAL PRIMARY KEY,
           ts TIMESTAMPTZ NOT NULL,
           type TEXT NOT NULL,
           severity TEXT,
           data JSONB
       )''',
)


def _ts(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class DataPersister:
    """Buffered asyncpg writer for equity, trades, positions, decisions and events."""

    def __init__(self, db_config=None, enabled: Optional[bool] = None):
        self.db_config = db_config or {}
        self.enabled = bool(self.db_config.get('enabled', False)) if enabled is None else enabled
        self.pool = None
        self.equity_buffer: List[Dict[str, Any]] = []
        self.trade_buffer: List[Dict[str, Any]] = []
        self.position_buffer: List[Dict[str, Any]] = []
        self.decision_buffer: List[Dict[str, Any]] = []
        self.event_buffer: List[Dict[str, Any]] = []

        self.batch_size = int(self.db_config.get('batch_size', 100))
        self.flush_interval = float(self.db_config.get('flush_interval_s', 5))
        self.max_buffer_size = self.batch_size * 50
        self.running = False
        self._auto_task = None

    async def initialize(self):
        if not self.enabled:
            logger.info("Database persistence disabled")
            return
        self.pool = await asyncpg.create_pool(
            host=self.db_config['host'],
            port=int(self.db_config['port']),
            database=self.db_config['database'],
            user=self.db_config['user'],
            password=self.db_config.get('password') or None,
            min_size=1,
            max_size=5,
        )
        async with self.pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)
        logger.info("Database schema ready")

    async def close(self):
        if self.pool:
            await self.flush_all()
            await self.pool.close()
            self.pool = None

    async def _buffer(self, buffer: List[Dict[str, Any]], row: Dict[str, Any], flush) -> None:
        if not self.enabled:
            return
        buffer.append(row)
        if len(buffer) > self.max_buffer_size:
            drop_n = max(int(self.max_buffer_size * 0.2), 1)
            del buffer[:drop_n]
            logger.warning("Persistence backlog full; dropped %s oldest rows", drop_n)
        if len(buffer) >= self.batch_size:
            await flush()

    async def insert_equity(self, snapshot: Dict[str, Any]):
        await self._buffer(self.equity_buffer, snapshot, self.flush_equity)

    async def insert_trade(self, trade: Dict[str, Any]):
        await self._buffer(self.trade_buffer, trade, self.flush_trades)

    async def upsert_position(self, position: Dict[str, Any]):
        await self._buffer(self.position_buffer, position, self.flush_positions)

    async def insert_decision(self, decision: Dict[str, Any]):
        await self._buffer(self.decision_buffer, decision, self.flush_decisions)

    async def insert_event(self, event: Dict[str, Any]):
        await self._buffer(self.event_buffer, event, self.flush_events)

    async def flush_equity(self):
        if not self.equity_buffer or self.pool is None:
            return

        async with self.pool.acquire() as conn:
            await conn.executemany(
                '''INSERT INTO equity_curve (ts, equity, quote_balance, base_balance, price, drawdown, high_water_mark)
                   VALUES ($1, $2, $3, $4, $5, $6, $7)
                   ON CONFLICT (ts) DO NOTHING''',
                [
                    (
                        _ts(e['timestamp']),
                        e['equity'],
                        e.get('quote'),
                        e.get('base'),
                        e.get('price'),
                        e.get('drawdown'),
                        e.get('high_water_mark'),
                    )
                    for e in self.equity_buffer
                ]
            )
        self.equity_buffer.clear()

    async def flush_trades(self):
        if not self.trade_buffer or self.pool is None:
            return

        async with self.pool.acquire() as conn:
            await conn.executemany(
                '''INSERT INTO trades (ts, position_id, side, price, amount, fee, slippage, tx_id, exit_type)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)''',
                [
                    (
                        _ts(t['timestamp']),
                        t.get('position_id'),
                        t['side'],
                        t.get('price'),
                        t.get('amount'),
                        t.get('fee'),
                        t.get('slippage'),
                        t.get('tx_id'),
                        t.get('exit_type'),
                    )
                    for t in self.trade_buffer
                ]
            )
        self.trade_buffer.clear()

    async def flush_positions(self):
        if not self.position_buffer or self.pool is None:
            return

        async with self.pool.acquire() as conn:
            await conn.executemany(
                '''INSERT INTO positions
                   (position_id, opened_at, closed_at, entry_price, amount, stop_price, initial_stop_price,
                    exit_price, pnl, r_multiple, outcome, exit_type, status)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                   ON CONFLICT (position_id) DO UPDATE SET
                   closed_at = EXCLUDED.closed_at,
                   amount = EXCLUDED.amount,
                   stop_price = EXCLUDED.stop_price,
                   exit_price = EXCLUDED.exit_price,
                   pnl = EXCLUDED.pnl,
                   r_multiple = EXCLUDED.r_multiple,
                   outcome = EXCLUDED.outcome,
                   exit_type = EXCLUDED.exit_type,
                   status = EXCLUDED.status''',
                [
                    (
                        p['position_id'],
                        _ts(p['entry_time']),
                        _ts(p.get('closed_at')),
                        p['entry_price'],
                        p['amount'],
                        p.get('stop_price'),
                        p.get('initial_stop_price'),
                        p.get('exit_price'),
                        p.get('pnl'),
                        p.get('r_multiple'),
                        p.get('outcome'),
                        p.get('exit_type'),
                        p.get('status', 'open'),
                    )
                    for p in self.position_buffer
                ]
            )
        self.position_buffer.clear()

    async def flush_decisions(self):
        if not self.decision_buffer or self.pool is None:
            return

        async with self.pool.acquire() as conn:
            await conn.executemany(
                '''INSERT INTO decisions (ts, type, decision, reasons, data)
                   VALUES ($1, $2, $3, $4, $5)''',
                [
                    (
                        _ts(d['timestamp']),
                        d['type'],
                        d['decision'],
                        json.dumps(d.get('reasons', [])),
                        json.dumps(d.get('data', {}), default=str),
                    )
                    for d in self.decision_buffer
                ]
            )
        self.decision_buffer.clear()

    async def flush_events(self):
        if not self.event_buffer or self.pool is None:
            return

        async with self.pool.acquire() as conn:
            await conn.executemany(
                '''INSERT INTO events (ts, type, severity, data)
                   VALUES ($1, $2, $3, $4)''',
                [
                    (
                        _ts(e['timestamp']),
                        e['type'],
                        e.get('severity'),
                        json.dumps(e.get('data', {}), default=str),
                    )
                    for e in self.event_buffer
                ]
            )
        self.event_buffer.clear()

    async def flush_all(self):
        await self.flush_equity()
        await self.flush_trades()
        await self.flush_positions()
        await self.flush_decisions()
        await self.flush_events()

    async def auto_flush_loop(self):
        self.running = True
        try:
            while self.running:
                try:
                    await asyncio.sleep(self.flush_interval)
                except asyncio.CancelledError:
                    break
                try:
                    await self.flush_all()
                except (asyncpg.PostgresError, OSError) as exc:
                    logger.error("Persistence flush failed: %s", exc)
        finally:
            if self.pool is not None:
                try:
                    await self.flush_all()
                except (asyncpg.PostgresError, OSError) as exc:
                    logger.error("Final persistence flush failed: %s", exc)

    async def start(self):
        await self.initialize()
        if self.enabled and self._auto_task is None:
            self._auto_task = asyncio.create_task(self.auto_flush_loop())

    async def stop(self):
        self.running = False
        if self._auto_task is not None:
            self._auto_task.cancel()
            await asyncio.gather(self._auto_task, return_exceptions=True)
            self._auto_task = None
        await self.close()
