import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, start_http_server


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


class MetricsCollector:
    def __init__(self):
        self.depth_updates = Counter('depth_updates_total', 'Total depth updates consumed')
        self.skipped_cycles = Counter('skipped_cycles_total', 'Depth updates that produced no decision', ['reason'])
        self.orders_placed = Counter('orders_placed_total', 'Total market orders sent', ['side'])
        self.orders_blocked = Counter('orders_blocked_total', 'Orders blocked before or at the exchange', ['reason'])

        self.held_amount = Gauge('held_amount', 'Base quantity currently held')
        self.sell_price = Gauge('sell_reference_price', 'Latest aggregated sell-side reference price')

    def record_depth_update(self):
        self.depth_updates.inc()

    def record_skip(self, reason: str):
        self.skipped_cycles.labels(reason=reason).inc()

    def record_order_placed(self, side: str):
        self.orders_placed.labels(side=side).inc()

    def record_order_blocked(self, reason: str):
        self.orders_blocked.labels(reason=reason).inc()

    def update_position(self, held_amount: float):
        self.held_amount.set(held_amount)

    def update_sell_price(self, price: float):
        self.sell_price.set(price)


def start_metrics_server(port: int) -> Optional[int]:
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED or not port:
        return _METRICS_PORT
    try:
        start_http_server(port)
    except OSError as exc:
        if exc.errno == errno.EADDRINUSE:
            logger.warning("Prometheus metrics port %s already in use; exporter disabled", port)
            return None
        raise
    _METRICS_SERVER_STARTED = True
    _METRICS_PORT = port
    logger.info("Prometheus metrics server started on port %s", port)
    return port


metrics = MetricsCollector()
