import asyncio
import logging
import random
import time
from typing import Optional

from api.metrics import metrics
from ingest.price_feed import NoReasonablePrice
from strategy.execution import Executor
from strategy.execution_types import Balance, ExecutionResult


logger = logging.getLogger(__name__)


class PaperExecutor(Executor):
    """Simulated swaps priced off the live resolver, with fee and size-dependent slippage."""

    def __init__(
        self,
        price_feed,
        initial_quote: float = 1000.0,
        starting_base: float = 0.0,
        fee_pct: float = 0.003,
        slippage_base: float = 0.001,
        slippage_scaling: float = 0.0005,
        slippage_jitter: float = 0.0001,
        enable_delays: bool = True,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.price_feed = price_feed
        self.fee_pct = fee_pct
        self.slippage_base = slippage_base
        self.slippage_scaling = slippage_scaling
        self.slippage_jitter = slippage_jitter
        self.enable_delays = enable_delays
        self.rng = rng or random.Random()
        self._base = max(0.0, starting_base)
        # A seeded base position replaces the quote allocation
        self._quote = 0.0 if self._base > 0 else initial_quote
        self._tx_counter = 0

    async def initialize(self) -> None:
        logger.info(
            "Paper executor ready: base=%.6f quote=%.2f fee=%.4f",
            self._base,
            self._quote,
            self.fee_pct,
        )

    def calculate_slippage(self, size_usd: float) -> float:
        jitter = self.rng.uniform(-self.slippage_jitter, self.slippage_jitter) if self.slippage_jitter else 0.0
        slippage = self.slippage_base + (size_usd / 1000.0) * self.slippage_scaling + jitter
        return max(0.0, slippage)

    def _next_tx_id(self, side: str, now_ms: int) -> str:
        self._tx_counter += 1
        return f"PAPER_{side}_{now_ms}_{self._tx_counter}"

    async def _simulate_delay(self) -> None:
        if self.enable_delays:
            await asyncio.sleep(self.rng.uniform(1.0, 3.0))

    async def _current_price(self) -> float:
        quote = await self.price_feed.get_price()
        return quote.price

    async def buy(self, amount_quote: float, max_slippage: float) -> ExecutionResult:
        now = int(time.time() * 1000)
        if amount_quote <= 0:
            return ExecutionResult.failure("Buy amount must be positive", now)
        if amount_quote > self._quote:
            return ExecutionResult.failure(
                f"Insufficient quote balance: have {self._quote:.2f}, need {amount_quote:.2f}", now
            )
        try:
            price = await self._current_price()
        except NoReasonablePrice as exc:
            return ExecutionResult.failure(str(exc), now)

        slippage = self.calculate_slippage(amount_quote)
        if slippage > max_slippage:
            metrics.record_trade_failure('buy')
            return ExecutionResult.failure(
                f"Slippage {slippage:.4%} exceeds max {max_slippage:.4%}", now
            )

        await self._simulate_delay()
        fee = amount_quote * self.fee_pct
        fill_price = price * (1 + slippage)
        base_received = (amount_quote - fee) / fill_price

        self._quote -= amount_quote
        self._base += base_received
        result = ExecutionResult(
            success=True,
            price=fill_price,
            amount=base_received,
            fee=fee,
            slippage=slippage,
            tx_id=self._next_tx_id('BUY', now),
            timestamp=now,
        )
        logger.info(
            "[PAPER] BUY %.6f at %.4f for %.2f (fee %.4f, slippage %.4f%%)",
            base_received,
            fill_price,
            amount_quote,
            fee,
            slippage * 100,
        )
        return result

    async def sell(self, amount_base: float, max_slippage: float) -> ExecutionResult:
        now = int(time.time() * 1000)
        if amount_base <= 0:
            return ExecutionResult.failure("Sell amount must be positive", now)
        # Tolerate float dust left over from partial exits
        if amount_base > self._base * (1 + 1e-9):
            return ExecutionResult.failure(
                f"Insufficient base balance: have {self._base:.6f}, need {amount_base:.6f}", now
            )
        amount_base = min(amount_base, self._base)
        try:
            price = await self._current_price()
        except NoReasonablePrice as exc:
            return ExecutionResult.failure(str(exc), now)

        slippage = self.calculate_slippage(amount_base * price)
        if slippage > max_slippage:
            metrics.record_trade_failure('sell')
            return ExecutionResult.failure(
                f"Slippage {slippage:.4%} exceeds max {max_slippage:.4%}", now
            )

        await self._simulate_delay()
        fill_price = price * (1 - slippage)
        gross = amount_base * fill_price
        fee = gross * self.fee_pct
        quote_received = gross - fee

        self._base -= amount_base
        self._quote += quote_received
        result = ExecutionResult(
            success=True,
            price=fill_price,
            amount=quote_received,
            fee=fee,
            slippage=slippage,
            tx_id=self._next_tx_id('SELL', now),
            timestamp=now,
        )
        logger.info(
            "[PAPER] SELL %.6f at %.4f for %.2f (fee %.4f, slippage %.4f%%)",
            amount_base,
            fill_price,
            quote_received,
            fee,
            slippage * 100,
        )
        return result

    async def get_balance(self) -> Balance:
        return Balance(base=self._base, quote=self._quote)
