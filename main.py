import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from api.metrics import start_metrics_server
from config import config
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.lifecycle import Components, build_components
from risk.kill_switch import KillSwitchEvent, KillSwitchType


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire the control loop, heartbeat, persistence and metrics into one process."""

    def __init__(self, config_obj=None):
        self.config = config_obj or config
        self.monitoring_cfg = self.config.monitoring
        self.components: Optional[Components] = None
        self.running = False
        self._stopped = False

    @property
    def bot(self):
        return self.components.bot if self.components else None

    async def initialize(self):
        if self.components is None:
            self.components = await build_components(self.config)

    async def start(self):
        self.running = True
        await self.initialize()

        start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9090)))
        await self.components.persister.start()

        bot = self.components.bot
        bot.running = True
        tasks = [
            asyncio.create_task(bot.run(), name='control_loop'),
            asyncio.create_task(bot.heartbeat_loop(), name='heartbeat'),
        ]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def trigger_kill_switch(self, reason: str = 'manual', data: Optional[Dict[str, Any]] = None) -> KillSwitchEvent:
        if self.bot is None:
            raise RuntimeError("Trading system not initialized")
        kind = KillSwitchType(reason)
        logger.error("Kill switch requested: %s", kind.value)
        return await self.bot.trigger_kill_switch(kind, data)

    def reset_kill_switch(self) -> Dict[str, Any]:
        """Clear the kill switch and drawdown latches.

        A triggered kill switch ends the control loop and shuts the process
        down, so clearing the latches does not resume trading by itself. The
        result says whether the service must be restarted.
        """
        if self.bot is None:
            raise RuntimeError("Trading system not initialized")
        self.bot.reset_kill_switch()
        restart_required = not (self.running and self.bot.running)
        if restart_required:
            logger.warning("Kill switch reset; control loop is stopped, restart the service to resume trading")
        return {'reset': True, 'restart_required': restart_required}

    async def stop(self):
        self.running = False
        if self._stopped or self.components is None:
            return
        self._stopped = True
        await self.components.bot.shutdown()


async def main():
    system = TradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


if __name__ == "__main__":
    log_cfg = config.logging
    log_file = Path(log_cfg.get('directory', './logs')) / 'trendrider.log' if log_cfg.get('to_file') else None
    setup_logging(log_cfg.get('level', 'INFO'), log_file=log_file)
    asyncio.run(main())
