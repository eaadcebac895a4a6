import asyncio
import hmac
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import aiohttp
from yarl import URL

from .errors import ExchangeConnectionError, MissingCredentialsError


logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-MBX-APIKEY"
PING_PATH = "/api/v3/ping"


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


@dataclass(frozen=True)
class Credentials:
    api_key: str
    api_secret: str = field(repr=False)

    @property
    def complete(self) -> bool:
        return bool(self.api_key) and bool(self.api_secret)


@dataclass
class RestResponse:
    status: int
    body: str

    @property
    def ok(self) -> bool:
        return self.status < 400

    def json(self) -> Any:
        return json.loads(self.body)

    def raise_for_status(self) -> None:
        if self.ok:
            return
        code = None
        msg = None
        try:
            payload = self.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            code = payload.get("code")
            msg = payload.get("msg")
        raise BinanceAPIError(self.status, code, msg, self.body)


def normalize_base_url(host: str, scheme: str = "https") -> str:
    host = host.strip().rstrip("/")
    if "://" in host:
        return host
    return f"{scheme}://{host}"


def build_query(params: Optional[Dict[str, Any]]) -> str:
    """Encode params in insertion order; the result is what gets signed and sent."""
    if not params:
        return ""
    return urlencode(params, doseq=True)


def sign_query(secret: str, query: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        query.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def _unix_ms() -> int:
    return int(time.time() * 1000)


class BinanceRESTClient:
    """REST channel to a Binance spot host over a single keep-alive connection."""

    def __init__(
        self,
        host: str,
        credentials: Optional[Credentials] = None,
        clock_ms: Callable[[], int] = _unix_ms,
    ):
        self.base_url = normalize_base_url(host)
        self.credentials = credentials
        self._clock_ms = clock_ms
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._session is not None and not self._session.closed

    async def open(self) -> None:
        async with self._lock:
            if self.connected:
                return
            connector = aiohttp.TCPConnector(limit=1, force_close=False)
            self._session = aiohttp.ClientSession(connector=connector)
        try:
            # Completes DNS, TCP and TLS on the pooled connection up front
            response = await self.request("GET", PING_PATH)
            response.raise_for_status()
        except (aiohttp.ClientError, OSError, BinanceAPIError) as exc:
            await self.close()
            raise ExchangeConnectionError(self.base_url, str(exc)) from exc
        logger.info("REST channel connected to %s", self.base_url)

    async def close(self) -> None:
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    def prepare_target(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Tuple[str, Dict[str, str]]:
        query = build_query(params)
        headers: Dict[str, str] = {}

        if signed:
            if self.credentials is None or not self.credentials.complete:
                raise MissingCredentialsError("Binance API key/secret required for signed request")
            stamp = f"timestamp={self._clock_ms()}"
            query = f"{query}&{stamp}" if query else stamp
            query += "&signature=" + sign_query(self.credentials.api_secret, query)
            headers[API_KEY_HEADER] = self.credentials.api_key

        target = path
        if query:
            target += "?" + query
        return target, headers

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> RestResponse:
        if not self.connected:
            raise RuntimeError("REST channel is not open")
        target, headers = self.prepare_target(path, params, signed=signed)
        # encoded=True keeps the signed bytes from being re-quoted on the wire
        url = URL(f"{self.base_url}{target}", encoded=True)

        async with self._session.request(method.upper(), url, headers=headers) as resp:
            text = await resp.text()
            logger.debug("%s %s -> %s", method.upper(), path, resp.status)
            return RestResponse(resp.status, text)

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> RestResponse:
        return await self.request("GET", path, params=params, signed=signed)

    async def post(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> RestResponse:
        # Binance REST accepts signed params in query string
        return await self.request("POST", path, params=params, signed=signed)
