import logging
import ssl
from typing import Any, Dict, Optional

import aiohttp

from .binance_rest import BinanceRESTClient, Credentials, RestResponse
from .errors import SubscriptionError
from .websocket_client import DepthStreamClient, SubscriptionAck, depth_stream_name


logger = logging.getLogger(__name__)


class ExchangeSession:
    """
    One authenticated streaming connection plus one REST channel to Binance.

    The session carries no trading logic: it frames and signs requests and
    hands raw payloads back to the caller.
    """

    def __init__(
        self,
        stream_host: str,
        rest_host: str,
        credentials: Optional[Credentials] = None,
        read_timeout: Optional[float] = None,
        fail_on_subscribe_error: bool = False,
        rest: Optional[BinanceRESTClient] = None,
        stream: Optional[DepthStreamClient] = None,
    ):
        self.credentials = credentials
        self.fail_on_subscribe_error = fail_on_subscribe_error
        self.rest = rest or BinanceRESTClient(rest_host, credentials)
        self.stream = stream or DepthStreamClient(stream_host, read_timeout=read_timeout)

    async def connect(self) -> None:
        await self.stream.connect()
        try:
            await self.rest.open()
        except Exception:
            await self.stream.close()
            raise

    async def subscribe_depth(self, symbol: str) -> SubscriptionAck:
        stream = depth_stream_name(symbol)
        ack = await self.stream.subscribe(stream)
        if ack.ok:
            logger.info("Subscribed to %s", stream)
            return ack
        logger.error("Subscription to %s rejected (code=%s, msg=%s)", stream, ack.code, ack.msg)
        if self.fail_on_subscribe_error:
            raise SubscriptionError(stream, ack.code, ack.msg)
        return ack

    async def read_depth_message(self) -> bytes:
        return await self.stream.recv()

    async def signed_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> RestResponse:
        return await self.rest.request(method, path, params=params, signed=True)

    async def unsigned_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> RestResponse:
        return await self.rest.request(method, path, params=params, signed=False)

    async def close(self) -> None:
        try:
            await self.stream.close()
        finally:
            try:
                await self.rest.close()
            except (ssl.SSLEOFError, aiohttp.ClientConnectionError) as exc:
                logger.debug("REST channel already closed: %s", exc)
        logger.info("Exchange session closed")

    async def __aenter__(self) -> "ExchangeSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
