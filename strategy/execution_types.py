from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass
class OrderResult:
    """Fill summary of a market order, as reported by the exchange."""

    side: OrderSide
    original_quantity: float
    executed_quantity: float
    cumulative_quote_value: float
    requested_quantity: Decimal = Decimal(0)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def filled(self) -> bool:
        return self.executed_quantity > 0

    @property
    def average_price(self) -> float:
        if self.executed_quantity <= 0:
            return 0.0
        return self.cumulative_quote_value / self.executed_quantity

    def as_dict(self) -> Dict[str, Any]:
        return {
            "side": self.side.value,
            "requested_quantity": str(self.requested_quantity),
            "original_quantity": self.original_quantity,
            "executed_quantity": self.executed_quantity,
            "cumulative_quote_value": self.cumulative_quote_value,
        }
