"""
Buy/sell decision loop for a single symbol.

The machine alternates between EMPTY and HOLDING. It buys once the buy delay
has passed since the last sell. It sells when the sell-side reference price
leaves the activation dead-band, or when the position has been held for the
maximum sell delay.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from monitoring.metrics import metrics
from strategy.depth import DepthSnapshot, ExecutablePrice, aggregate_depth
from strategy.errors import OrderRejectedError, UnknownLotSizeError
from strategy.execution import OrderExecutor
from strategy.execution_types import OrderResult


logger = logging.getLogger(__name__)


class TradingState(str, Enum):
    EMPTY = "empty"
    HOLDING = "holding"


class CycleOutcome(str, Enum):
    SKIPPED = "skipped"
    WAITING = "waiting"
    BOUGHT = "bought"
    HELD = "held"
    SOLD_THRESHOLD = "sold_threshold"
    SOLD_TIMEOUT = "sold_timeout"
    BLOCKED = "blocked"


@dataclass
class TradingParameters:
    target_amount: float
    buy_delay_s: float
    max_sell_delay_s: float
    activation_threshold: float
    quote_denominated: bool = True

    def __post_init__(self):
        if self.target_amount <= 0:
            raise ValueError("target_amount must be positive")
        if self.buy_delay_s < 0 or self.max_sell_delay_s < 0:
            raise ValueError("delays must not be negative")
        if self.activation_threshold < 0:
            raise ValueError("activation_threshold must not be negative")


@dataclass
class TradingPosition:
    held_amount: float = 0.0
    buy_timestamp: Optional[float] = None
    sell_timestamp: float = 0.0
    previous_reference_price: float = 0.0
    current_reference_price: float = 0.0
    sample_count: int = 0

    @property
    def state(self) -> TradingState:
        return TradingState.HOLDING if self.held_amount > 0 else TradingState.EMPTY

    def record_reference_price(self, price: float) -> None:
        self.previous_reference_price = self.current_reference_price
        self.current_reference_price = price
        self.sample_count += 1

    def price_change(self) -> float:
        if self.sample_count < 2 or self.previous_reference_price == 0:
            return 0.0
        return self.current_reference_price / self.previous_reference_price - 1.0


class TradingStateMachine:
    def __init__(
        self,
        executor: OrderExecutor,
        params: TradingParameters,
        clock: Callable[[], float] = time.monotonic,
        position: Optional[TradingPosition] = None,
    ):
        self.executor = executor
        self.params = params
        self.clock = clock
        self.position = position or TradingPosition(sell_timestamp=clock())

    @property
    def state(self) -> TradingState:
        return self.position.state

    async def on_depth(self, snapshot: DepthSnapshot) -> CycleOutcome:
        return await self.on_price(aggregate_depth(snapshot, self.params.target_amount))

    async def on_price(self, price: ExecutablePrice) -> CycleOutcome:
        target = self.params.target_amount
        if not price.can_sell(target):
            logger.debug("Sell depth %.8f below target %s; skipping", price.sell_amount, target)
            metrics.record_skip("insufficient_depth")
            return CycleOutcome.SKIPPED

        position = self.position
        position.record_reference_price(price.sell_price)
        metrics.update_sell_price(price.sell_price)
        now = self.clock()

        if position.state is TradingState.EMPTY:
            if now - position.sell_timestamp >= self.params.buy_delay_s:
                return await self._buy(now)
            return CycleOutcome.WAITING

        change = position.price_change()
        threshold = self.params.activation_threshold
        if change < -threshold or change >= threshold:
            logger.info("Price change %.6f left dead-band +/-%s", change, threshold)
            return await self._sell(now, CycleOutcome.SOLD_THRESHOLD)

        if position.buy_timestamp is not None and now - position.buy_timestamp >= self.params.max_sell_delay_s:
            logger.info("Held for %.1fs; forcing sell", now - position.buy_timestamp)
            return await self._sell(now, CycleOutcome.SOLD_TIMEOUT)
        return CycleOutcome.HELD

    async def _buy(self, now: float) -> CycleOutcome:
        result = await self._execute(
            self.executor.buy(self.params.target_amount, quote_denominated=self.params.quote_denominated)
        )
        if result is None:
            return CycleOutcome.BLOCKED
        if not result.filled:
            logger.warning("Buy filled nothing; staying empty")
            return CycleOutcome.BLOCKED
        self.position.held_amount = result.executed_quantity
        self.position.buy_timestamp = now
        metrics.update_position(self.position.held_amount)
        return CycleOutcome.BOUGHT

    async def _sell(self, now: float, outcome: CycleOutcome) -> CycleOutcome:
        result = await self._execute(self.executor.sell(self.position.held_amount, quote_denominated=False))
        if result is None:
            return CycleOutcome.BLOCKED
        if result.executed_quantity < self.position.held_amount:
            logger.warning(
                "Sell filled %s of %s held",
                result.executed_quantity,
                self.position.held_amount,
            )
        self.position.held_amount = 0.0
        self.position.sell_timestamp = now
        metrics.update_position(0.0)
        return outcome

    async def _execute(self, order) -> Optional[OrderResult]:
        try:
            return await order
        except UnknownLotSizeError as exc:
            logger.error("Order blocked: %s", exc)
            metrics.record_order_blocked("unknown_lot_size")
        except OrderRejectedError as exc:
            logger.error("Order rejected by exchange (code=%s, msg=%s)", exc.code, exc.msg)
            metrics.record_order_blocked("rejected")
        return None
