from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class ExecutionResult:
    """Outcome of one swap. ``amount`` is base received on a buy and quote received on a sell."""

    success: bool
    price: float = 0.0
    amount: float = 0.0
    fee: float = 0.0
    slippage: float = 0.0
    tx_id: Optional[str] = None
    timestamp: int = 0
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str, timestamp: int = 0) -> 'ExecutionResult':
        return cls(success=False, timestamp=timestamp, error=error)

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "price": self.price,
            "amount": self.amount,
            "fee": self.fee,
            "slippage": self.slippage,
            "tx_id": self.tx_id,
            "timestamp": self.timestamp,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class Balance:
    base: float
    quote: float

    def equity(self, price: float) -> float:
        return self.quote + self.base * price

    def as_dict(self) -> Dict[str, float]:
        return {"base": self.base, "quote": self.quote}
