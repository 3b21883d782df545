import logging
import time
from typing import Dict, Optional

import aiohttp

from config import config


logger = logging.getLogger(__name__)


class AlertWebhook:
    def __init__(self, url: Optional[str] = None):
        url = url if url is not None else config.monitoring.get('alert_webhook')
        # Empty or unresolved placeholders disable delivery
        if url and not str(url).startswith('${'):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Dict = None):
        if not self.enabled:
            logger.warning("[Alert] %s: %s - %s", severity.upper(), alert_type, message)
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': int(time.time() * 1000),
            'metadata': metadata or {},
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=5),
                ) as response:
                    if response.status >= 300:
                        logger.error("[Alert] Webhook failed with status %s", response.status)
        except (aiohttp.ClientError, OSError) as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def kill_switch_alert(self, reason: str, data: Optional[Dict] = None):
        await self.send_alert(
            'kill_switch',
            f'Kill switch triggered: {reason}',
            'critical',
            {'reason': reason, **(data or {})},
        )

    async def drawdown_alert(self, drawdown_pct: float):
        await self.send_alert(
            'drawdown',
            f'Max drawdown exceeded: {drawdown_pct:.2%}',
            'critical',
            {'drawdown_pct': drawdown_pct},
        )

    async def trade_alert(self, side: str, price: float, amount: float, tx_id: Optional[str]):
        await self.send_alert(
            'trade',
            f'{side.upper()} {amount:.6f} at {price:.4f}',
            'info',
            {'side': side, 'price': price, 'amount': amount, 'tx_id': tx_id},
        )

    async def position_closed_alert(self, pnl: float, r_multiple: float, exit_type: str):
        await self.send_alert(
            'position_closed',
            f'Position closed via {exit_type}: PnL {pnl:.2f} ({r_multiple:.2f}R)',
            'info',
            {'pnl': pnl, 'r_multiple': r_multiple, 'exit_type': exit_type},
        )


alert_webhook = AlertWebhook()
