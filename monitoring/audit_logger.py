import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)

ENTRY_TYPES = (
    'regime_check',
    'entry_evaluation',
    'trade_executed',
    'exit_evaluation',
    'position_closed',
    'kill_switch_triggered',
)
DECISIONS = ('trade', 'no_trade', 'exit', 'other')


class AuditLogger:
    """Append-only JSONL record of every decision the bot takes."""

    def __init__(self, log_path: str = 'logs/audit.jsonl', enabled: bool = True):
        self.log_path = Path(log_path or 'logs/audit.jsonl')
        self.enabled = enabled

    def record(
        self,
        entry_type: str,
        decision: str,
        reasons: Optional[List[str]] = None,
        data: Optional[Dict[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> Dict[str, Any]:
        if entry_type not in ENTRY_TYPES:
            raise ValueError(f"Unknown audit entry type '{entry_type}'")
        if decision not in DECISIONS:
            raise ValueError(f"Unknown audit decision '{decision}'")
        payload = {
            'timestamp': timestamp if timestamp is not None else int(time.time() * 1000),
            'type': entry_type,
            'decision': decision,
            'reasons': list(reasons or []),
            'data': data or {},
        }
        if self.enabled:
            self._write_entry(payload)
        return payload

    def _write_entry(self, payload: Dict):
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except OSError as exc:
            logger.error("Failed to persist audit log: %s", exc)

    def read_entries(self, entry_type: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if not self.log_path.exists():
            return []
        entries = []
        with self.log_path.open('r', encoding='utf-8') as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except ValueError:
                    logger.warning("Skipping malformed audit line")
                    continue
                if entry_type and entry.get('type') != entry_type:
                    continue
                entries.append(entry)
        if limit:
            return entries[-limit:]
        return entries
