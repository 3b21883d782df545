import logging
from abc import ABC, abstractmethod

from strategy.execution_types import Balance, ExecutionResult


logger = logging.getLogger(__name__)


class Executor(ABC):
    """Swap execution against the quote/base pair. Failures are results, not exceptions."""

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def buy(self, amount_quote: float, max_slippage: float) -> ExecutionResult:
        pass

    @abstractmethod
    async def sell(self, amount_base: float, max_slippage: float) -> ExecutionResult:
        pass

    @abstractmethod
    async def get_balance(self) -> Balance:
        pass

    async def close(self) -> None:
        return None


def build_executor(cfg, price_feed) -> Executor:
    run_mode = str(cfg.get('run_mode', 'paper')).lower()
    if run_mode != 'paper':
        raise ValueError(f"Unsupported run mode '{run_mode}'; only paper execution is available")

    from strategy.simulators.paper import PaperExecutor

    paper_cfg = cfg.paper
    trading_cfg = cfg.trading
    executor = PaperExecutor(
        price_feed,
        initial_quote=float(trading_cfg.get('initial_capital', 1000)),
        starting_base=float(trading_cfg.get('starting_base', 0) or 0),
        fee_pct=float(paper_cfg.get('fee_percent', 0.003)),
        slippage_base=float(paper_cfg.get('slippage_base', 0.001)),
        slippage_scaling=float(paper_cfg.get('slippage_scaling', 0.0005)),
        slippage_jitter=float(paper_cfg.get('slippage_jitter', 0.0001)),
        enable_delays=bool(paper_cfg.get('enable_delays', True)),
    )
    logger.info("Execution mode: paper")
    return executor
