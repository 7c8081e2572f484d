import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, start_http_server

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.ws_messages = Counter(
            'websocket_messages_total', 'Inbound WebSocket frames', ['connection']
        )
        self.reconnect_count = Counter(
            'websocket_reconnects_total', 'Total WebSocket reconnects', ['connection']
        )
        self.connection_state = Gauge(
            'websocket_connection_state', 'Current connection state (1 = active)', ['connection', 'state']
        )
        self.dropped_frames = Counter(
            'dropped_frames_total', 'Inbound frames dropped before dispatch', ['reason']
        )
        self.callback_errors = Counter(
            'callback_errors_total', 'Subscriber callbacks that raised', ['key']
        )

        self.signals_generated = Counter(
            'signals_generated_total', 'Strategy signals generated', ['strategy', 'direction']
        )
        self.decisions = Counter(
            'decisions_total', 'Trade decision outcomes', ['outcome']
        )
        self.orders_placed = Counter(
            'orders_placed_total', 'Total orders placed', ['type']
        )
        self.open_positions = Gauge('open_positions', 'Currently open positions')
        self.equity = Gauge('account_equity', 'Available account balance')
        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')

    def record_ws_message(self, connection: str):
        self.ws_messages.labels(connection=connection).inc()

    def record_reconnect(self, connection: str):
        self.reconnect_count.labels(connection=connection).inc()

    def update_connection_state(self, connection: str, state: str, previous: Optional[str] = None):
        if previous:
            self.connection_state.labels(connection=connection, state=previous).set(0)
        self.connection_state.labels(connection=connection, state=state).set(1)

    def record_drop(self, reason: str):
        self.dropped_frames.labels(reason=reason).inc()

    def record_callback_error(self, key: str):
        self.callback_errors.labels(key=key).inc()

    def record_signal(self, strategy: str, direction: str):
        self.signals_generated.labels(strategy=strategy, direction=direction).inc()

    def record_decision(self, outcome: str):
        self.decisions.labels(outcome=outcome).inc()

    def record_order_placed(self, order_type: str):
        self.orders_placed.labels(type=order_type).inc()

    def update_open_positions(self, count: int):
        self.open_positions.set(count)

    def update_equity(self, equity: float):
        self.equity.set(equity)

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
