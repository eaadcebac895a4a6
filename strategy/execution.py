import logging
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol

from ingest.binance_rest import RestResponse
from monitoring.metrics import metrics
from strategy.errors import OrderParseError, OrderRejectedError, OrderStatusUnknownError
from strategy.execution_types import OrderResult, OrderSide
from strategy.lot_size import LotSizeRounder, Number, format_quantity

if TYPE_CHECKING:
    from ingest.exchange_session import ExchangeSession


logger = logging.getLogger(__name__)

ORDER_PATH = "/api/v3/order"
FILL_FIELDS = ("origQty", "executedQty", "cummulativeQuoteQty")


class AuditSink(Protocol):
    def record(self, body: str) -> None:
        ...


def parse_order_response(side: OrderSide, response: RestResponse) -> OrderResult:
    if response.status >= 500:
        raise OrderStatusUnknownError(response.status, response.body)

    try:
        payload: Any = response.json()
    except ValueError:
        if not response.ok:
            raise OrderRejectedError(response.status, None, None, response.body)
        raise OrderParseError(response.body, FILL_FIELDS)

    if not isinstance(payload, dict):
        raise OrderParseError(response.body, FILL_FIELDS)

    missing = [name for name in FILL_FIELDS if name not in payload]
    if not response.ok or (missing and "code" in payload):
        raise OrderRejectedError(response.status, payload.get("code"), payload.get("msg"), response.body)
    if missing:
        raise OrderParseError(response.body, missing)

    try:
        return OrderResult(
            side=side,
            original_quantity=float(payload["origQty"]),
            executed_quantity=float(payload["executedQty"]),
            cumulative_quote_value=float(payload["cummulativeQuoteQty"]),
            raw=payload,
        )
    except (TypeError, ValueError) as exc:
        raise OrderParseError(response.body) from exc


class OrderExecutor:
    """Send signed market orders (for a default symbol unless one is given) and parse their fills."""

    def __init__(
        self,
        session: "ExchangeSession",
        symbol: str,
        rounder: LotSizeRounder,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.session = session
        self.symbol = symbol
        self.rounder = rounder
        self.audit_sink = audit_sink

    def build_order_params(
        self,
        side: OrderSide,
        quantity: str,
        quote_denominated: bool,
        symbol: Optional[str] = None,
    ) -> Dict[str, str]:
        params = {
            "type": "MARKET",
            "symbol": symbol or self.symbol,
            "side": side.value,
        }
        params["quoteOrderQty" if quote_denominated else "quantity"] = quantity
        return params

    async def place_market_order(
        self,
        side: OrderSide,
        quantity: Number,
        quote_denominated: bool,
        symbol: Optional[str] = None,
    ) -> Optional[OrderResult]:
        symbol = symbol or self.symbol
        rounded = self.rounder.round(symbol, quantity, quote_denominated=quote_denominated)
        if rounded <= 0:
            logger.warning(
                "%s %s skipped: quantity %s rounds to zero",
                side.value,
                symbol,
                quantity,
            )
            metrics.record_order_blocked("zero_quantity")
            return None

        qty_text = format_quantity(rounded)
        params = self.build_order_params(side, qty_text, quote_denominated, symbol)
        logger.info(
            "Placing %s MARKET %s %s=%s",
            side.value,
            symbol,
            "quoteOrderQty" if quote_denominated else "quantity",
            qty_text,
        )
        response = await self.session.signed_request("POST", ORDER_PATH, params)
        metrics.record_order_placed(side.value)
        if self.audit_sink is not None:
            self.audit_sink.record(response.body)

        result = parse_order_response(side, response)
        result.requested_quantity = rounded
        logger.info(
            "%s filled %s (quote %s) of requested %s",
            side.value,
            result.executed_quantity,
            result.cumulative_quote_value,
            qty_text,
        )
        return result

    async def buy(self, quantity: Number, quote_denominated: bool = True) -> Optional[OrderResult]:
        return await self.place_market_order(OrderSide.BUY, quantity, quote_denominated)

    async def sell(self, quantity: Number, quote_denominated: bool = False) -> Optional[OrderResult]:
        return await self.place_market_order(OrderSide.SELL, quantity, quote_denominated)
