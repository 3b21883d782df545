import json
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union


logger = logging.getLogger(__name__)


class KillSwitchType(Enum):
    DRAWDOWN = "drawdown"
    ORACLE_DIVERGENCE = "oracle_divergence"
    MANUAL = "manual"
    RPC_FAILURE = "rpc_failure"
    SYSTEM_ERROR = "system_error"


@dataclass
class KillSwitchEvent:
    type: KillSwitchType
    timestamp: int
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, 'timestamp': self.timestamp, 'data': self.data}


class KillSwitch:
    """Latched emergency halt mirrored to a sentinel file.

    The sentinel is the source of truth: if it exists the switch is triggered,
    whoever wrote it. Only ``reset`` clears the latch.
    """

    def __init__(self, sentinel_path: Union[str, Path] = './STOP_AND_FLATTEN'):
        self.sentinel_path = Path(sentinel_path)
        self._triggered = False
        self._event: Optional[KillSwitchEvent] = None

    def trigger(self, kind: Union[KillSwitchType, str], data: Optional[Dict[str, Any]] = None) -> KillSwitchEvent:
        kind = KillSwitchType(kind)
        if self.is_triggered():
            logger.warning("Kill switch already triggered (%s); ignoring %s", self._event.type.value, kind.value)
            return self._event

        event = KillSwitchEvent(kind, int(time.time() * 1000), dict(data or {}))
        self._triggered = True
        self._event = event
        logger.critical("KILL SWITCH TRIGGERED: %s %s", kind.value, event.data)
        self._write_sentinel(event)
        return event

    def _write_sentinel(self, event: KillSwitchEvent) -> None:
        payload = event.to_dict()
        payload['pid'] = os.getpid()
        try:
            self.sentinel_path.parent.mkdir(parents=True, exist_ok=True)
            self.sentinel_path.write_text(json.dumps(payload, indent=2, default=str), encoding='utf-8')
        except OSError as exc:
            logger.error("Failed to write kill switch sentinel %s: %s", self.sentinel_path, exc)

    def is_triggered(self) -> bool:
        if self.sentinel_path.exists():
            if not self._triggered:
                self._adopt_sentinel()
            return True
        return self._triggered

    def _adopt_sentinel(self) -> None:
        details: Dict[str, Any] = {'sentinel': str(self.sentinel_path)}
        try:
            contents = self.sentinel_path.read_text(encoding='utf-8').strip()
        except OSError as exc:
            contents = ''
            logger.warning("Unable to read kill switch sentinel: %s", exc)
        if contents:
            details['contents'] = contents
        self._triggered = True
        self._event = KillSwitchEvent(KillSwitchType.MANUAL, int(time.time() * 1000), details)
        logger.critical("Kill switch sentinel found at %s; treating as manual trigger", self.sentinel_path)

    def get_trigger_event(self) -> Optional[KillSwitchEvent]:
        if self.is_triggered():
            return self._event
        return None

    def reset(self) -> None:
        try:
            self.sentinel_path.unlink()
        except FileNotFoundError:
            pass
        self._triggered = False
        self._event = None
        logger.warning("Kill switch reset; sentinel %s removed", self.sentinel_path)
