from typing import Optional, Sequence


class OrderError(Exception):
    """Base class for failures that block a single order."""


class UnknownLotSizeError(OrderError):
    def __init__(self, symbol: str, detail: str = "no quantity increment known"):
        self.symbol = symbol
        self.detail = detail
        super().__init__(f"Cannot round quantity for {symbol}: {detail}")


class OrderParseError(OrderError):
    def __init__(self, body: str, missing: Sequence[str] = ()):
        self.body = body
        self.missing = tuple(missing)
        super().__init__(f"Malformed order response (missing={list(self.missing)}): {body[:200]}")


class OrderRejectedError(OrderError):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        super().__init__(f"Order rejected (status={status}, code={code}, msg={msg})")


class OrderStatusUnknownError(OrderError):
    """The exchange answered 5xx; the order may or may not have executed."""

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"Order status unknown after HTTP {status}: {body[:200]}")
