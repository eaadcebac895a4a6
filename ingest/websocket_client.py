import asyncio
import json
import logging
import ssl
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .binance_rest import normalize_base_url
from .errors import ExchangeConnectionError, StreamError


logger = logging.getLogger(__name__)


def depth_stream_name(symbol: str) -> str:
    return f"{symbol.lower()}@depth@100ms"


def subscribe_message(stream: str, request_id: int = 0) -> str:
    return json.dumps({"method": "SUBSCRIBE", "params": [stream], "id": request_id})


@dataclass
class SubscriptionAck:
    stream: str
    ok: bool
    code: Optional[int] = None
    msg: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(cls, stream: str, payload: Any) -> "SubscriptionAck":
        if not isinstance(payload, dict):
            return cls(stream, ok=False, msg=f"unexpected acknowledgement: {payload!r}")
        if "result" in payload:
            return cls(stream, ok=True, raw=payload)
        error = payload.get("error") if isinstance(payload.get("error"), dict) else payload
        return cls(
            stream,
            ok=False,
            code=error.get("code"),
            msg=error.get("msg"),
            raw=payload,
        )


class DepthStreamClient:
    """One websocket connection carrying a single depth subscription."""

    def __init__(self, host: str, path: str = "/ws", read_timeout: Optional[float] = None):
        self.url = normalize_base_url(host, scheme="wss") + path
        self.read_timeout = read_timeout
        self._ws = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        if self._ws is not None:
            return
        try:
            self._ws = await websockets.connect(self.url, ping_interval=None)
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            raise ExchangeConnectionError(self.url, str(exc)) from exc
        logger.info("Depth stream connected to %s", self.url)

    async def send(self, message: str) -> None:
        try:
            await self._connection().send(message)
        except ConnectionClosed as exc:
            raise StreamError(f"Stream closed while sending: {exc}") from exc

    async def recv(self) -> bytes:
        ws = self._connection()
        try:
            if self.read_timeout:
                raw = await asyncio.wait_for(ws.recv(), timeout=self.read_timeout)
            else:
                raw = await ws.recv()
        except asyncio.TimeoutError as exc:
            raise StreamError(f"No stream message within {self.read_timeout}s") from exc
        except ConnectionClosed as exc:
            raise StreamError(f"Stream closed: {exc}") from exc
        except OSError as exc:
            raise StreamError(f"Stream transport failure: {exc}") from exc
        if isinstance(raw, str):
            return raw.encode("utf-8")
        return raw

    async def subscribe(self, stream: str) -> SubscriptionAck:
        await self.send(subscribe_message(stream))
        raw = await self.recv()
        try:
            payload = json.loads(raw)
        except ValueError:
            payload = raw.decode("utf-8", errors="replace")
        return SubscriptionAck.parse(stream, payload)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except (ConnectionClosed, ssl.SSLEOFError) as exc:
            logger.debug("Depth stream already closed: %s", exc)

    def _connection(self):
        if self._ws is None:
            raise StreamError("Depth stream is not connected")
        return self._ws
