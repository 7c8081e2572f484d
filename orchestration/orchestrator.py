import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from api.metrics import metrics
from api.webhook_client import AutomationWebhookClient, WebhookError
from config import config
from orchestration.performance import PerformanceTracker
from strategy.base import Strategy
from strategy.consensus import ConsensusEngine
from strategy.execution import CONSENSUS_STRATEGY, ExecutionCoordinator
from strategy.models import Candle, Position, Signal, SignalType, TradeDecision
from strategy.transports.bitget import BitgetTransport


logger = logging.getLogger(__name__)


class StrategyOrchestrator:
    """One analysis pass: candles -> strategies -> consensus -> execution, symbol by symbol.

    Spot DCA signals skip consensus and the futures capacity gate; each one is
    bought on its own through the execution coordinator.
    """

    def __init__(
        self,
        transport: BitgetTransport,
        strategies: List[Strategy],
        consensus: ConsensusEngine,
        coordinator: ExecutionCoordinator,
        webhook: Optional[AutomationWebhookClient] = None,
        trading_cfg: Optional[Mapping[str, Any]] = None,
        performance: Optional[PerformanceTracker] = None,
    ):
        trading_cfg = trading_cfg if trading_cfg is not None else config.get('trading', {})
        self.transport = transport
        self.strategies = strategies
        self.consensus = consensus
        self.coordinator = coordinator
        self.webhook = webhook
        self.performance = performance

        self.symbols: List[str] = [str(s).upper() for s in trading_cfg.get('symbols', [])]
        self.symbol_delay_s = float(trading_cfg.get('symbol_delay_s', 1.0))
        self.granularity = trading_cfg.get('candle_granularity', '1H')
        self.candle_limit = int(trading_cfg.get('candle_limit', 300))
        self.min_candles = int(trading_cfg.get('min_candles', 250))
        self.candle_market = trading_cfg.get('candle_market', 'futures')
        self.max_positions_per_symbol = int(trading_cfg.get('max_positions_per_symbol', 1))

        self.last_signals: Dict[str, List[Signal]] = {}
        self.last_decisions: Dict[str, TradeDecision] = {}
        self.last_run: Optional[float] = None

    def get_strategy(self, name: str) -> Optional[Strategy]:
        for strategy in self.strategies:
            if strategy.name == name:
                return strategy
        return None

    async def run_analysis(self) -> Dict[str, Optional[TradeDecision]]:
        logger.info("Starting analysis for %s symbols", len(self.symbols))
        results: Dict[str, Optional[TradeDecision]] = {}
        for index, symbol in enumerate(self.symbols):
            if index and self.symbol_delay_s > 0:
                await asyncio.sleep(self.symbol_delay_s)
            try:
                results[symbol] = await self.analyze_symbol(symbol)
            except Exception:
                logger.exception("Error analyzing %s", symbol)
                results[symbol] = None
        self.last_run = time.time()
        return results

    async def analyze_symbol(self, symbol: str) -> Optional[TradeDecision]:
        candles = await self._fetch_candles(symbol)
        if len(candles) < self.min_candles:
            logger.warning("Insufficient candle data for %s (%s/%s)", symbol, len(candles), self.min_candles)
            return None

        signals = self.collect_signals(symbol, candles)
        self.last_signals[symbol] = signals
        current_price = candles[-1].close

        await self._handle_close_signals(symbol, signals, current_price)

        for signal in signals:
            if signal.type is SignalType.LONG and self._is_spot_dca(signal):
                await self._execute_dca(signal)

        if self.coordinator.open_position_count(symbol) >= self.max_positions_per_symbol:
            logger.debug("Skipping %s: max positions reached", symbol)
            return None

        entry_signals = [s for s in signals if s.type is not SignalType.CLOSE and not self._is_spot_dca(s)]
        if not entry_signals:
            return None

        await self._notify(symbol, entry_signals, candles)

        decision = self.consensus.evaluate(symbol, entry_signals, current_price)
        if decision is None:
            logger.info("No consensus for %s: %s", symbol, self.consensus.summarize(entry_signals))
            metrics.record_decision('no_consensus')
            return None

        self.last_decisions[symbol] = decision
        position = await self.coordinator.execute(decision)
        if position is not None:
            await self._send_position_update(position)
        return decision

    def collect_signals(self, symbol: str, candles: List[Candle]) -> List[Signal]:
        signals: List[Signal] = []
        for strategy in self.strategies:
            if not strategy.enabled:
                continue
            try:
                signal = strategy.generate_signal(symbol, candles)
            except Exception:
                logger.exception("Strategy %s failed for %s", strategy.name, symbol)
                continue
            if signal is None:
                continue
            signals.append(signal)
            metrics.record_signal(signal.strategy, signal.type.value)
            logger.info(
                "Signal generated: %s %s for %s @ %s",
                signal.strategy, signal.type.value, signal.symbol, signal.entry_price,
            )
        return signals

    def apply_parameter_update(self, strategy_name: str, parameter: str, value: Any) -> bool:
        strategy = self.get_strategy(strategy_name)
        if strategy is None:
            logger.warning("Strategy not found: %s", strategy_name)
            return False
        if value is None:
            logger.warning("No value supplied for %s.%s", strategy_name, parameter)
            return False
        try:
            strategy.update_parameters({parameter: value})
        except (TypeError, ValueError) as exc:
            logger.error("Rejected parameter %s.%s=%r: %s", strategy_name, parameter, value, exc)
            return False
        logger.info("Applied parameter update: %s.%s = %r", strategy_name, parameter, value)
        return True

    async def performance_report(self) -> Optional[Dict[str, Any]]:
        """Per-strategy metrics with each strategy's current parameters, plus the overall figures."""
        if self.performance is None:
            return None
        strategy_metrics = await self.performance.all_strategy_metrics()
        for item in strategy_metrics:
            strategy = self.get_strategy(item.strategy)
            if strategy is not None:
                item.parameters = dict(strategy.parameters)
        return {
            'strategies': [m.to_dict() for m in strategy_metrics],
            'overall': await self.performance.overall_performance(strategy_metrics),
        }

    async def send_performance_update(self) -> Optional[Dict[str, Any]]:
        """Push the report to the webhook; a delivery failure raises WebhookError."""
        report = await self.performance_report()
        if report is not None and self.webhook is not None and self.webhook.enabled:
            await self.webhook.send_performance_metrics(report['strategies'], report['overall'])
        return report

    def signals_snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        return {symbol: [s.to_dict() for s in signals] for symbol, signals in self.last_signals.items()}

    async def _fetch_candles(self, symbol: str) -> List[Candle]:
        try:
            return await self.transport.get_candles(
                symbol, granularity=self.granularity, limit=self.candle_limit, market=self.candle_market
            )
        except Exception:
            logger.exception("Error fetching candle data for %s", symbol)
            return []

    def _is_spot_dca(self, signal: Signal) -> bool:
        if 'dca_type' in signal.metadata:
            return True
        strategy = self.get_strategy(signal.strategy)
        return strategy is not None and strategy.market == 'spot'

    async def _execute_dca(self, signal: Signal) -> None:
        order = await self.coordinator.execute_spot_dca(signal)
        if order is None:
            logger.warning("Spot DCA from %s for %s not executed", signal.strategy, signal.symbol)

    async def _handle_close_signals(self, symbol: str, signals: List[Signal], price: float) -> None:
        for signal in signals:
            if signal.type is not SignalType.CLOSE:
                continue
            for position in self.coordinator.open_positions():
                if position.symbol != symbol or position.strategy not in (signal.strategy, CONSENSUS_STRATEGY):
                    continue
                if await self.coordinator.close_position(position, price):
                    await self._send_position_update(position)

    async def _notify(self, symbol: str, signals: List[Signal], candles: List[Candle]) -> None:
        if self.webhook is None or not self.webhook.enabled:
            return
        market_data = {
            'price': candles[-1].close,
            'volume24h': sum(c.volume for c in candles[-24:]),
        }
        try:
            await self.webhook.send_strategy_analysis(symbol, signals, market_data)
        except WebhookError as exc:
            logger.warning("Strategy analysis webhook failed for %s: %s", symbol, exc)

    async def _send_position_update(self, position: Position) -> None:
        if self.webhook is None or not self.webhook.enabled:
            return
        try:
            await self.webhook.send_position_update(position)
        except WebhookError as exc:
            logger.warning("Position update webhook failed for %s: %s", position.symbol, exc)
