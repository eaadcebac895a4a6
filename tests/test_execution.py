import asyncio
import sys
from decimal import Decimal

sys.path.insert(0, '.')

import pytest

from ingest.binance_rest import RestResponse
from strategy.errors import OrderParseError, OrderRejectedError, OrderStatusUnknownError, UnknownLotSizeError
from strategy.execution import ORDER_PATH, OrderExecutor, parse_order_response
from strategy.execution_types import OrderSide
from strategy.lot_size import LotSizeRounder
from tests.fakes import FakeSession, ListAuditSink, exchange_info, fill_response


def _executor(responses, step='0.00001000'):
    session = FakeSession(order_responses=responses)
    rounder = LotSizeRounder()
    rounder.load(exchange_info(step=step))
    sink = ListAuditSink()
    return OrderExecutor(session, 'BTCUSDT', rounder, sink), session, sink


def test_buy_in_quote_currency():
    executor, session, sink = _executor([fill_response('0.00055', '0.00055', '14.99')])

    result = asyncio.run(executor.buy(15.0, quote_denominated=True))

    assert session.orders == [{
        'method': 'POST',
        'path': ORDER_PATH,
        'params': {'type': 'MARKET', 'symbol': 'BTCUSDT', 'side': 'BUY', 'quoteOrderQty': '15'},
        'signed': True,
    }]
    assert list(session.orders[0]['params']) == ['type', 'symbol', 'side', 'quoteOrderQty']
    assert result.side is OrderSide.BUY
    assert result.executed_quantity == 0.00055
    assert result.cumulative_quote_value == 14.99
    assert result.requested_quantity == Decimal('15')
    assert len(sink.entries) == 1


def test_sell_rounds_base_quantity():
    executor, session, _ = _executor([fill_response('0.00054', '0.00054', '14.90')])

    result = asyncio.run(executor.sell(0.000549, quote_denominated=False))

    assert session.orders[0]['params']['quantity'] == '0.00054'
    assert 'quoteOrderQty' not in session.orders[0]['params']
    assert result.average_price == pytest.approx(14.90 / 0.00054)


def test_rejected_order_is_classified():
    body = RestResponse(400, '{"code": -2010, "msg": "Account has insufficient balance for requested action."}')
    executor, _, sink = _executor([body])

    with pytest.raises(OrderRejectedError) as excinfo:
        asyncio.run(executor.buy(15.0))

    assert excinfo.value.code == -2010
    assert sink.entries == [body.body]


def test_malformed_fill_raises_parse_error():
    with pytest.raises(OrderParseError) as excinfo:
        parse_order_response(OrderSide.BUY, RestResponse(200, '{"origQty": "1"}'))
    assert excinfo.value.missing == ('executedQty', 'cummulativeQuoteQty')

    with pytest.raises(OrderParseError):
        parse_order_response(OrderSide.BUY, RestResponse(200, 'not json'))

    with pytest.raises(OrderParseError):
        parse_order_response(
            OrderSide.BUY,
            RestResponse(200, '{"origQty": "x", "executedQty": "1", "cummulativeQuoteQty": "1"}'),
        )


def test_quantity_rounding_to_zero_skips_order():
    executor, session, sink = _executor([])

    assert asyncio.run(executor.sell(0.000001)) is None
    assert session.requests == []
    assert sink.entries == []


def test_unknown_step_blocks_before_sending():
    executor, session, _ = _executor([], step=None)

    with pytest.raises(UnknownLotSizeError):
        asyncio.run(executor.buy(15.0))
    assert session.requests == []


def test_server_error_leaves_order_status_unknown():
    body = RestResponse(503, '{"code": -1001, "msg": "Internal error; unable to process your request."}')
    executor, _, sink = _executor([body])

    with pytest.raises(OrderStatusUnknownError) as excinfo:
        asyncio.run(executor.buy(15.0))

    assert not isinstance(excinfo.value, OrderRejectedError)
    assert excinfo.value.status == 503
    assert sink.entries == [body.body]

    with pytest.raises(OrderStatusUnknownError):
        parse_order_response(OrderSide.SELL, RestResponse(502, '<html>Bad Gateway</html>'))


def test_order_for_another_symbol():
    session = FakeSession(order_responses=[fill_response('0.01', '0.01', '25.0')])
    rounder = LotSizeRounder()
    rounder.load({'symbols': exchange_info()['symbols'] + exchange_info(symbol='ETHUSDT', step='0.01000000')['symbols']})
    executor = OrderExecutor(session, 'BTCUSDT', rounder)

    result = asyncio.run(executor.place_market_order(OrderSide.SELL, 0.0149, False, symbol='ETHUSDT'))

    assert session.orders[0]['params'] == {'type': 'MARKET', 'symbol': 'ETHUSDT', 'side': 'SELL', 'quantity': '0.01'}
    assert result.requested_quantity == Decimal('0.01')
