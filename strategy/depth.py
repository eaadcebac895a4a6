"""
Depth ladder aggregation.

Turns one depth update into the executable price of a fixed target size by
walking each side of the book from the best level outward.
"""
import json
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence, Tuple, Union


Level = Tuple[float, float]


@dataclass(frozen=True)
class DepthSnapshot:
    asks: Tuple[Level, ...] = ()
    bids: Tuple[Level, ...] = ()

    @staticmethod
    def _parse_levels(raw_levels: Iterable[Sequence[Any]]) -> Tuple[Level, ...]:
        return tuple((float(level[0]), float(level[1])) for level in raw_levels)

    @classmethod
    def from_message(cls, payload: Mapping[str, Any]) -> "DepthSnapshot":
        return cls(
            asks=cls._parse_levels(payload.get("a") or []),
            bids=cls._parse_levels(payload.get("b") or []),
        )

    @classmethod
    def from_raw(cls, raw: Union[bytes, str]) -> "DepthSnapshot":
        payload = json.loads(raw)
        if not isinstance(payload, dict) or ("a" not in payload and "b" not in payload):
            raise ValueError("not a depth update")
        return cls.from_message(payload)


@dataclass(frozen=True)
class ExecutablePrice:
    buy_price: float
    buy_amount: float
    sell_price: float
    sell_amount: float

    def can_buy(self, target: float) -> bool:
        return self.buy_amount >= target

    def can_sell(self, target: float) -> bool:
        return self.sell_amount >= target


def walk_ladder(levels: Iterable[Level], target: float) -> Tuple[float, float]:
    """Return (price accumulator, consumed amount) for up to ``target`` units."""
    price = 0.0
    amount = 0.0
    for level_price, level_qty in levels:
        if amount >= target:
            break
        consumed = min(target - amount, level_qty)
        if consumed <= 0 or level_price <= 0:
            continue
        amount = min(target, amount + consumed)
        price += consumed / level_price
    return price, amount


def aggregate_depth(snapshot: DepthSnapshot, target: float) -> ExecutablePrice:
    if target <= 0:
        raise ValueError(f"target must be positive, got {target}")
    buy_price, buy_amount = walk_ladder(snapshot.asks, target)
    sell_price, sell_amount = walk_ladder(snapshot.bids, target)
    return ExecutablePrice(buy_price, buy_amount, sell_price, sell_amount)
