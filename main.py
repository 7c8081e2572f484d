import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from api.metrics import start_metrics_server
from api.webhook_client import AutomationWebhookClient
from config import config
from ingest.auth import Authenticator, InvalidCredentials
from ingest.bitget_rest import BitgetRESTClient
from ingest.channel_registry import ChannelRegistry
from ingest.market_data_manager import MarketDataManager
from ingest.websocket_client import WebSocketClient
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.performance import PerformanceTracker
from orchestration.orchestrator import StrategyOrchestrator
from orchestration.persistence import PositionStore
from risk.position_sizer import RiskManager
from strategy.base import build_strategies
from strategy.consensus import ConsensusEngine
from strategy.execution import ExecutionCoordinator
from strategy.transports.bitget import BitgetTransport


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire the Bitget clients, strategies and execution, and run the analysis schedule."""

    def __init__(self, config_obj=None):
        self.config = config_obj or config
        self.trading_cfg = self.config.get('trading', {})
        self.websocket_cfg = self.config.get('websocket', {})
        self.monitoring_cfg = self.config.get('monitoring', {})
        self.analysis_interval_s = float(self.trading_cfg.get('analysis_interval_s', 900))
        self.report_interval_s = float(self.monitoring_cfg.get('performance_report_interval_s', 3600))
        self.report_delay_s = float(self.monitoring_cfg.get('performance_report_delay_s', 300))
        self.report_retry_s = float(self.monitoring_cfg.get('performance_retry_delay_s', 300))
        self.symbols: List[str] = [str(s).upper() for s in self.trading_cfg.get('symbols', [])]

        self.authenticator = self._build_authenticator()
        self.transport = BitgetTransport(rest=BitgetRESTClient(authenticator=self.authenticator))
        self.registry = ChannelRegistry()
        self.ws_client = WebSocketClient(authenticator=self.authenticator, registry=self.registry)
        self.market_data_manager = MarketDataManager(self.ws_client)

        self.store = PositionStore(self.config.get('persistence', {}).get('positions_path'))
        self.risk_manager = RiskManager(self.transport, self.config.get('risk', {}))
        self.coordinator = ExecutionCoordinator(self.transport, self.store, self.risk_manager, self.trading_cfg)
        self.strategies = build_strategies(self.config.get('strategies', []))
        self.consensus = ConsensusEngine.from_config(self.trading_cfg)
        self.performance = PerformanceTracker(self.store)
        self.webhook = AutomationWebhookClient()
        self.orchestrator = StrategyOrchestrator(
            self.transport,
            self.strategies,
            self.consensus,
            self.coordinator,
            webhook=self.webhook,
            trading_cfg=self.trading_cfg,
            performance=self.performance,
        )

        self.latest_prices: Dict[str, float] = {}
        self.running = False
        self.started_at: Optional[float] = None

    def _build_authenticator(self) -> Optional[Authenticator]:
        try:
            return Authenticator.from_config(self.config.get('exchange', {}))
        except InvalidCredentials as exc:
            logger.warning("Running without Bitget credentials (%s); private features disabled", exc)
            return None

    async def initialize(self) -> None:
        await self.coordinator.restore()
        try:
            self.risk_manager.observe_equity(await self.transport.get_account_balance())
        except Exception as exc:
            logger.debug("Could not seed account equity: %s", exc)
        await self._subscribe_realtime()

    async def _subscribe_realtime(self) -> None:
        if self.websocket_cfg.get('stream_tickers', True):
            for symbol in self.symbols:
                try:
                    await self.market_data_manager.subscribe_ticker(symbol, self.handle_ticker)
                except Exception as exc:
                    logger.warning("Realtime ticker unavailable for %s: %s", symbol, exc)
        if self.authenticator is not None:
            try:
                await self.market_data_manager.subscribe_orders(self.handle_order_update)
                await self.market_data_manager.subscribe_positions(self.handle_position_update)
            except Exception as exc:
                logger.warning("Private channels unavailable: %s", exc)

    def handle_ticker(self, ticker: Dict[str, Any]) -> None:
        symbol = ticker.get('instId')
        price = ticker.get('lastPr')
        if not symbol or price is None:
            return
        try:
            self.latest_prices[symbol] = float(price)
        except (TypeError, ValueError):
            logger.debug("Unparseable ticker price for %s: %r", symbol, price)

    def handle_order_update(self, order: Dict[str, Any]) -> None:
        logger.info(
            "Order update: %s %s %s size=%s status=%s",
            order.get('instId'), order.get('side'), order.get('orderType'), order.get('size'), order.get('status'),
        )

    def handle_position_update(self, position: Dict[str, Any]) -> None:
        logger.info(
            "Position update: %s %s total=%s unrealizedPL=%s",
            position.get('instId'), position.get('holdSide'), position.get('total'), position.get('unrealizedPL'),
        )

    async def run_schedule(self) -> None:
        while self.running:
            started = time.monotonic()
            try:
                await self.orchestrator.run_analysis()
            except Exception:
                logger.exception("Analysis pass failed")
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self.analysis_interval_s - elapsed))

    async def run_performance_reports(self) -> None:
        await asyncio.sleep(self.report_delay_s)
        while self.running:
            try:
                await self.orchestrator.send_performance_update()
                logger.info("Performance update sent")
                delay = self.report_interval_s
            except Exception:
                logger.exception("Performance report failed")
                delay = self.report_retry_s
            await asyncio.sleep(delay)

    def status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'started_at': self.started_at,
            'symbols': self.symbols,
            'strategies': [s.describe() for s in self.strategies],
            'open_positions': self.coordinator.open_position_count(),
            'auto_trading': self.coordinator.enable_auto_trading,
            'public_socket': self.ws_client.state().value,
            'private_socket': self.ws_client.state(is_private=True).value,
            'last_analysis': self.orchestrator.last_run,
        }

    async def start(self):
        self.running = True
        self.started_at = time.time()

        start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9090)))
        await self.initialize()

        tasks = [
            asyncio.create_task(self.run_schedule()),
            asyncio.create_task(self.run_performance_reports()),
        ]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await self.ws_client.close()
        await self.transport.close()
        logger.info("Trading system stopped")


async def main():
    system = TradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()

def run():
    setup_logging(config.get('monitoring', {}).get('log_level', 'INFO'))
    asyncio.run(main())

if __name__ == "__main__":
    run()
