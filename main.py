import argparse
import asyncio
import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from config import config
from config.config_loader import Config, load_config
from ingest.binance_rest import Credentials
from ingest.exchange_session import ExchangeSession
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.audit_log import OrderAuditLog
from monitoring.logging_utils import setup_logging
from monitoring.metrics import metrics, start_metrics_server
from strategy.depth import DepthSnapshot
from strategy.execution import OrderExecutor
from strategy.lot_size import LotSizeRounder, RoundingMode
from strategy.trading_state import CycleOutcome, TradingParameters, TradingStateMachine


logger = logging.getLogger(__name__)


@dataclass
class TradingSettings:
    rest_host: str
    stream_host: str
    api_key: str
    api_secret: str
    symbol: str
    target_amount: float
    buy_delay_s: float
    max_sell_delay_s: float
    activation_threshold: float
    quote_denominated: bool = True
    rounding_mode: RoundingMode = RoundingMode.STEP
    audit_log: str = "log.json"
    read_timeout_s: Optional[float] = None
    fail_on_subscribe_error: bool = False
    log_level: str = "INFO"
    prometheus_port: int = 0

    @classmethod
    def from_sources(cls, args: argparse.Namespace, cfg: Config) -> "TradingSettings":
        exchange = cfg.section("exchange")
        stream = cfg.section("stream")
        trading = cfg.section("trading")
        monitoring = cfg.section("monitoring")

        def pick(cli_value: Any, fallback: Any) -> Any:
            return fallback if cli_value is None else cli_value

        quote_denominated = trading.get("quote_denominated", True)
        if args.base_amount:
            quote_denominated = False

        required = {
            "rest_host": pick(args.rest_host, exchange.get("rest_host")),
            "api_key": pick(args.api_key, exchange.get("api_key")),
            "api_secret": pick(args.api_secret, exchange.get("api_secret")),
            "symbol": pick(args.symbol, exchange.get("symbol")),
            "target_amount": pick(args.target_amount, trading.get("target_amount")),
            "buy_delay_s": pick(args.buy_delay, trading.get("buy_delay_s")),
            "max_sell_delay_s": pick(args.max_sell_delay, trading.get("max_sell_delay_s")),
            "activation_threshold": pick(args.activation_threshold, trading.get("activation_threshold")),
        }
        missing = [name for name, value in required.items() if value is None]
        if missing:
            raise ValueError(f"missing required settings (argument or config): {', '.join(missing)}")

        read_timeout = stream.get("read_timeout_s")
        return cls(
            rest_host=str(required["rest_host"]),
            stream_host=pick(args.stream_host, exchange.get("stream_host", "stream.binance.com")),
            api_key=str(required["api_key"]),
            api_secret=str(required["api_secret"]),
            symbol=str(required["symbol"]).upper(),
            target_amount=float(required["target_amount"]),
            buy_delay_s=float(required["buy_delay_s"]),
            max_sell_delay_s=float(required["max_sell_delay_s"]),
            activation_threshold=float(required["activation_threshold"]),
            quote_denominated=bool(quote_denominated),
            rounding_mode=RoundingMode(pick(args.rounding_mode, trading.get("rounding_mode", "step"))),
            audit_log=pick(args.audit_log, monitoring.get("audit_log", "log.json")),
            read_timeout_s=float(read_timeout) if read_timeout else None,
            fail_on_subscribe_error=bool(stream.get("fail_on_subscribe_error", False)),
            log_level=pick(args.log_level, monitoring.get("log_level", "INFO")),
            prometheus_port=int(monitoring.get("prometheus_port", 0)),
        )

    def trading_parameters(self) -> TradingParameters:
        return TradingParameters(
            target_amount=self.target_amount,
            buy_delay_s=self.buy_delay_s,
            max_sell_delay_s=self.max_sell_delay_s,
            activation_threshold=self.activation_threshold,
            quote_denominated=self.quote_denominated,
        )


class TradingSystem:
    """Wire the exchange session, rounding rules, executor and decision loop."""

    def __init__(
        self,
        settings: TradingSettings,
        session: Optional[ExchangeSession] = None,
        audit_log: Optional[OrderAuditLog] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.session = session or ExchangeSession(
            settings.stream_host,
            settings.rest_host,
            Credentials(settings.api_key, settings.api_secret),
            read_timeout=settings.read_timeout_s,
            fail_on_subscribe_error=settings.fail_on_subscribe_error,
        )
        self.audit_log = audit_log or OrderAuditLog(settings.audit_log)
        self.rounder = LotSizeRounder(settings.rounding_mode)
        self.executor = OrderExecutor(self.session, settings.symbol, self.rounder, self.audit_log)
        self.machine = TradingStateMachine(self.executor, settings.trading_parameters(), clock=clock)
        self.cycles = 0

    async def initialize(self) -> None:
        self.audit_log.open()
        await self.session.connect()
        await self.rounder.refresh(self.session)
        rules = self.rounder.rules.get(self.settings.symbol)
        if rules is None or not rules.tradable:
            logger.warning("No LOT_SIZE step known for %s; orders will be blocked", self.settings.symbol)
        await self.session.subscribe_depth(self.settings.symbol)

    async def run_cycle(self) -> Optional[CycleOutcome]:
        raw = await self.session.read_depth_message()
        return await self.handle_message(raw)

    async def handle_message(self, raw: bytes) -> Optional[CycleOutcome]:
        self.cycles += 1
        try:
            snapshot = DepthSnapshot.from_raw(raw)
        except ValueError:
            logger.debug("Ignoring non-depth stream message: %s", raw[:200])
            return None
        metrics.record_depth_update()
        return await self.machine.on_depth(snapshot)

    async def next_message(self, stop_event: asyncio.Event) -> Optional[bytes]:
        """Read one depth message, or return None if ``stop_event`` fires first."""
        read = asyncio.ensure_future(self.session.read_depth_message())
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({read, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not read.done():
                read.cancel()
                try:
                    await read
                except asyncio.CancelledError:
                    pass
        if read.cancelled():
            return None
        return read.result()

    async def run(self, stop_event: asyncio.Event) -> None:
        # only the read is raced against stop; an order in flight always completes
        while not stop_event.is_set():
            raw = await self.next_message(stop_event)
            if raw is None:
                break
            await self.handle_message(raw)
        logger.info("Stop requested after %s cycles", self.cycles)

    async def stop(self) -> None:
        try:
            await self.session.close()
        finally:
            self.audit_log.close()


def watch_stdin(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> threading.Thread:
    """Set ``stop_event`` once the operator presses Enter."""

    def _wait():
        try:
            sys.stdin.readline()
        except (OSError, ValueError):
            return
        loop.call_soon_threadsafe(stop_event.set)

    thread = threading.Thread(target=_wait, name="stop-watcher", daemon=True)
    thread.start()
    return thread


def install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass


async def run_trading(settings: TradingSettings) -> None:
    system = TradingSystem(settings)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    watch_stdin(loop, stop_event)
    install_signal_handlers(loop, stop_event)

    async def _trade():
        try:
            await system.initialize()
            logger.info("Connected; trading %s (press Enter to stop)", settings.symbol)
            await system.run(stop_event)
        except Exception as exc:
            logger.exception("Trading loop aborted: %s", exc)

    await run_tasks_with_cleanup([asyncio.create_task(_trade())], cleanup=system.stop)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="depthtrader",
        description="Buy a fixed amount on Binance spot and sell on a price move or timeout. "
        "Positional arguments left out are read from the configuration file.",
    )
    parser.add_argument("rest_host", nargs="?", help="REST host, e.g. testnet.binance.vision or https://api.binance.com")
    parser.add_argument("api_key", nargs="?", help="API key with trading permission")
    parser.add_argument("api_secret", nargs="?", help="Secret for the API key")
    parser.add_argument("symbol", nargs="?", help="Symbol to trade, e.g. BTCUSDT")
    parser.add_argument("target_amount", nargs="?", type=float, help="Amount to buy, in quote currency unless --base-amount")
    parser.add_argument("buy_delay", nargs="?", type=float, help="Seconds to wait after selling before buying again")
    parser.add_argument("max_sell_delay", nargs="?", type=float, help="Seconds after which a held position is sold")
    parser.add_argument("activation_threshold", nargs="?", type=float, help="Price change factor that triggers a sell, e.g. 0.0001")
    parser.add_argument("--config", default=None, help="Path to a YAML configuration file")
    parser.add_argument("--stream-host", default=None, help="Websocket host (default from config)")
    parser.add_argument("--audit-log", default=None, help="File receiving raw order responses as a JSON array")
    parser.add_argument(
        "--rounding-mode",
        choices=[mode.value for mode in RoundingMode],
        default=None,
        help="How order quantities are rounded",
    )
    parser.add_argument("--base-amount", action="store_true", help="Size buys in base asset units")
    parser.add_argument("--log-level", default=None, help="Logging level (default from config)")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    cfg = load_config(args.config) if args.config else config
    try:
        settings = TradingSettings.from_sources(args, cfg)
        settings.trading_parameters()
    except ValueError as exc:
        build_parser().error(str(exc))
    setup_logging(settings.log_level)
    start_metrics_server(settings.prometheus_port)

    try:
        asyncio.run(run_trading(settings))
    except KeyboardInterrupt:
        logger.info("System shutting down on interrupt")
    logger.info("exit")
    return 0


if __name__ == "__main__":
    sys.exit(main())
