import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Union

from .errors import UnknownLotSizeError

if TYPE_CHECKING:
    from ingest.exchange_session import ExchangeSession


logger = logging.getLogger(__name__)

EXCHANGE_INFO_PATH = "/api/v3/exchangeInfo"

Number = Union[Decimal, float, int, str]


class RoundingMode(str, Enum):
    # Every quantity, base or quote, is floored to the LOT_SIZE step.
    STEP = "step"
    # Quote-currency quantities use the quote asset precision instead.
    QUOTE_AWARE = "quote_aware"


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {value!r}") from exc


def floor_to_increment(value: Number, increment: Decimal) -> Decimal:
    """Largest multiple of ``increment`` that does not exceed ``value``."""
    if increment <= 0:
        raise ValueError("increment must be positive")
    dec = to_decimal(value)
    steps = (dec / increment).to_integral_value(rounding=ROUND_FLOOR)
    return (steps * increment).quantize(increment)


def format_quantity(value: Decimal) -> str:
    text = format(value.normalize(), "f")
    return "0" if text == "-0" else text


@dataclass(frozen=True)
class SymbolTradingRules:
    symbol: str
    step_size: Decimal
    quote_precision: Optional[int] = None

    @classmethod
    def from_exchange_info(cls, payload: Mapping[str, Any]) -> "SymbolTradingRules":
        step = Decimal(0)
        for filt in payload.get("filters") or []:
            if filt.get("filterType") != "LOT_SIZE":
                continue
            try:
                step = Decimal(str(filt.get("stepSize"))).normalize()
            except InvalidOperation:
                step = Decimal(0)
            break
        precision = payload.get("quoteAssetPrecision", payload.get("quotePrecision"))
        return cls(
            symbol=payload.get("symbol", ""),
            step_size=step,
            quote_precision=int(precision) if precision is not None else None,
        )

    @property
    def tradable(self) -> bool:
        return self.step_size > 0


class LotSizeRounder:
    """Per-symbol quantity increments, loaded from exchangeInfo."""

    def __init__(
        self,
        mode: RoundingMode = RoundingMode.STEP,
        rules: Optional[Mapping[str, SymbolTradingRules]] = None,
    ):
        self.mode = RoundingMode(mode)
        self._rules: Mapping[str, SymbolTradingRules] = MappingProxyType(dict(rules or {}))

    @property
    def rules(self) -> Mapping[str, SymbolTradingRules]:
        return self._rules

    def load(self, payload: Mapping[str, Any]) -> int:
        table: Dict[str, SymbolTradingRules] = {}
        for item in payload.get("symbols") or []:
            rules = SymbolTradingRules.from_exchange_info(item)
            if rules.symbol:
                table[rules.symbol] = rules
        # Swap the whole table so readers never see a partial refresh
        self._rules = MappingProxyType(table)
        return len(table)

    async def refresh(self, session: "ExchangeSession") -> int:
        response = await session.unsigned_request("GET", EXCHANGE_INFO_PATH)
        response.raise_for_status()
        count = self.load(response.json())
        logger.info("Loaded trading rules for %s symbols", count)
        return count

    def rules_for(self, symbol: str) -> SymbolTradingRules:
        rules = self._rules.get(symbol)
        if rules is None:
            raise UnknownLotSizeError(symbol, "symbol not listed in exchange info")
        return rules

    def increment(self, symbol: str, quote_denominated: bool = False) -> Decimal:
        rules = self.rules_for(symbol)
        if quote_denominated and self.mode is RoundingMode.QUOTE_AWARE:
            if rules.quote_precision is None:
                raise UnknownLotSizeError(symbol, "no quote asset precision")
            return Decimal(1).scaleb(-rules.quote_precision)
        if not rules.tradable:
            raise UnknownLotSizeError(symbol, "no LOT_SIZE step")
        return rules.step_size

    def round(self, symbol: str, quantity: Number, quote_denominated: bool = False) -> Decimal:
        value = to_decimal(quantity)
        if value < 0:
            raise ValueError(f"quantity must not be negative, got {quantity}")
        return floor_to_increment(value, self.increment(symbol, quote_denominated))
