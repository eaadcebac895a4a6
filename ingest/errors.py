from typing import Optional


class ExchangeError(Exception):
    """Base class for failures of the exchange session."""


class ExchangeConnectionError(ExchangeError, ConnectionError):
    """DNS, transport or handshake failure while opening the session."""

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Failed to connect to {target}: {reason}")


class StreamError(ExchangeError):
    """The depth stream could not be read."""


class SubscriptionError(ExchangeError):
    def __init__(self, stream: str, code: Optional[int], msg: Optional[str]):
        self.stream = stream
        self.code = code
        self.msg = msg
        super().__init__(f"Subscription to {stream} failed (code={code}, msg={msg})")


class MissingCredentialsError(ExchangeError):
    """A signed request was attempted without an API key and secret."""
