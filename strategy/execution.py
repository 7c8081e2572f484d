import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from api.metrics import metrics
from config import config
from orchestration.persistence import PositionStore
from risk.position_sizer import RiskManager
from strategy.models import (
    DcaOrder,
    DcaType,
    DecisionType,
    Position,
    PositionStatus,
    Signal,
    SignalType,
    TradeDecision,
)
from strategy.transports.bitget import BitgetTransport


logger = logging.getLogger(__name__)

CONSENSUS_STRATEGY = "Consensus"


class TradeRejected(Exception):
    """A decision that failed a pre-trade check."""


class ExecutionCoordinator:
    """Turn approved decisions into exchange orders and track the open-position book.

    Each decision is resolved exactly once: EXECUTED when the entry order is
    accepted, REJECTED on any failed check or error. Executions are serialized
    so the position-count checks see every earlier fill.
    """

    def __init__(
        self,
        transport: BitgetTransport,
        store: PositionStore,
        risk_manager: RiskManager,
        trading_cfg: Optional[Mapping[str, Any]] = None,
    ):
        trading_cfg = trading_cfg if trading_cfg is not None else config.get('trading', {})
        self.transport = transport
        self.store = store
        self.risk_manager = risk_manager
        self.enable_auto_trading = bool(trading_cfg.get('enable_auto_trading', False))
        self.max_total_positions = int(trading_cfg.get('max_total_positions', 8))
        self._open: Dict[str, Position] = {}
        self._lock = asyncio.Lock()

    async def restore(self) -> int:
        for position in await self.store.get_open_positions():
            self._open[position.key] = position
        metrics.update_open_positions(len(self._open))
        if self._open:
            logger.info("Restored %s open positions", len(self._open))
        return len(self._open)

    def get_open_position(self, symbol: str, strategy: str) -> Optional[Position]:
        return self._open.get(f"{symbol}_{strategy}")

    def open_positions(self) -> List[Position]:
        return list(self._open.values())

    def open_position_count(self, symbol: Optional[str] = None) -> int:
        if symbol is None:
            return len(self._open)
        return sum(1 for p in self._open.values() if p.symbol == symbol)

    @staticmethod
    def to_signal(decision: TradeDecision) -> Signal:
        return Signal(
            symbol=decision.symbol,
            strategy=CONSENSUS_STRATEGY,
            type=decision.direction,
            entry_price=decision.entry_price,
            stop_loss=decision.stop_loss,
            take_profit=decision.take_profit,
            confidence=decision.confidence,
            reason=decision.reasoning,
            metadata={'strategy_scores': dict(decision.strategy_scores)},
        )

    async def execute(self, decision: TradeDecision) -> Optional[Position]:
        if not decision.is_pending:
            logger.warning("Decision for %s already %s; ignoring", decision.symbol, decision.status.value)
            return None

        async with self._lock:
            try:
                position = await self._open_from_decision(decision)
            except TradeRejected as exc:
                logger.warning("Trade for %s rejected: %s", decision.symbol, exc)
                decision.mark_rejected(str(exc))
                metrics.record_decision('rejected')
                return None
            except Exception as exc:
                logger.exception("Error executing trade for %s", decision.symbol)
                decision.mark_rejected(f"error: {exc}")
                metrics.record_decision('rejected')
                return None

        decision.mark_executed()
        metrics.record_decision('executed')
        logger.info(
            "Trade executed: %s %s $%.2f with %sx leverage",
            position.symbol, position.side, position.size * position.entry_price, position.leverage,
        )
        return position

    async def _open_from_decision(self, decision: TradeDecision) -> Position:
        if decision.decision is not DecisionType.EXECUTE or decision.direction not in (SignalType.LONG, SignalType.SHORT):
            raise TradeRejected("no trade in decision")
        if not self.enable_auto_trading:
            raise TradeRejected("auto-trading is disabled")

        signal = self.to_signal(decision)
        if self.get_open_position(signal.symbol, signal.strategy) is not None:
            raise TradeRejected(f"position already open for {signal.symbol}_{signal.strategy}")
        if not self.risk_manager.validate_signal(signal, self.open_position_count(), self.max_total_positions):
            raise TradeRejected("signal validation failed")

        sizing = await self.risk_manager.calculate_position_size(decision)
        if sizing is None:
            raise TradeRejected("position sizing failed")
        size_usd, leverage = sizing
        drawdown = self.risk_manager.current_drawdown_pct
        if not self.risk_manager.check_drawdown_limit(drawdown):
            raise TradeRejected(f"drawdown {drawdown:.2f}% at or beyond limit")

        position = await self._open_futures_position(signal, size_usd, leverage)
        if position is None:
            raise TradeRejected("entry order was not accepted")

        await self.store.save_position(position)
        self._open[position.key] = position
        metrics.update_open_positions(len(self._open))
        return position

    async def _open_futures_position(self, signal: Signal, size_usd: float, leverage: int) -> Optional[Position]:
        size = size_usd / signal.entry_price
        side, exit_side = ('buy', 'sell') if signal.type is SignalType.LONG else ('sell', 'buy')

        try:
            margin_set = await self.transport.set_margin_mode(signal.symbol)
        except Exception as exc:
            # Bitget refuses a mode change while the symbol has open exposure
            logger.warning("Could not set margin mode for %s: %s", signal.symbol, exc)
        else:
            if not margin_set:
                logger.warning("Margin mode not applied for %s", signal.symbol)

        if not await self.transport.set_leverage(signal.symbol, leverage):
            logger.warning("Failed to set %sx leverage for %s", leverage, signal.symbol)

        order_id = await self.transport.place_order(signal.symbol, side, 'market', size)
        if not order_id:
            logger.error("Failed to open futures position for %s", signal.symbol)
            return None
        metrics.record_order_placed('market')

        if await self.transport.set_stop_loss(signal.symbol, exit_side, signal.stop_loss, size):
            metrics.record_order_placed('stop_loss')
        else:
            logger.warning("Stop loss not placed for %s", signal.symbol)
        if await self.transport.set_take_profit(signal.symbol, exit_side, signal.take_profit, size):
            metrics.record_order_placed('take_profit')
        else:
            logger.warning("Take profit not placed for %s", signal.symbol)

        logger.info(
            "Opened futures position: %s %s %.6f @ %s with %sx leverage",
            signal.symbol, signal.type.value, size, signal.entry_price, leverage,
        )
        return Position(
            symbol=signal.symbol,
            strategy=signal.strategy,
            side='long' if signal.type is SignalType.LONG else 'short',
            entry_price=signal.entry_price,
            size=size,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            leverage=leverage,
            order_id=order_id,
            market='futures',
        )

    async def close_position(self, position: Position, exit_price: float) -> bool:
        if not position.is_open:
            return False
        try:
            order_id = await self.transport.close_position(position.symbol, position.side, position.size)
        except Exception:
            logger.exception("Error closing position for %s", position.symbol)
            return False
        if not order_id:
            return False

        pnl = position.calculate_pnl(exit_price)
        notional = position.entry_price * position.size
        position.status = PositionStatus.CLOSED
        position.exit_price = exit_price
        position.close_time = time.time()
        position.close_order_id = order_id
        position.pnl = pnl
        position.pnl_percent = pnl / notional * 100 if notional else 0.0

        self._open.pop(position.key, None)
        if position.id is not None:
            await self.store.update_position(position)
        metrics.record_order_placed('close')
        metrics.record_pnl(pnl)
        metrics.update_open_positions(len(self._open))
        logger.info(
            "Closed position: %s %s PnL: %.4f (%.2f%%)", position.symbol, position.side, pnl, position.pnl_percent
        )
        return True

    async def execute_spot_dca(self, signal: Signal, amount_usd: Optional[float] = None) -> Optional[DcaOrder]:
        if not self.enable_auto_trading:
            logger.info("Auto-trading disabled; skipping spot DCA for %s", signal.symbol)
            return None
        amount = amount_usd if amount_usd is not None else self.risk_manager.calculate_dca_amount(signal)
        try:
            order_id = await self.transport.place_spot_market_buy(signal.symbol, amount)
            if not order_id:
                logger.error("Failed to execute spot DCA for %s", signal.symbol)
                return None
            price = await self.transport.get_ticker_price(signal.symbol, market='spot')
        except Exception:
            logger.exception("Error executing spot DCA for %s", signal.symbol)
            return None
        metrics.record_order_placed('spot_market')

        if not price:
            logger.warning("No spot price for %s; using signal entry", signal.symbol)
            price = signal.entry_price
        try:
            dca_type = DcaType(str(signal.metadata.get('dca_type', 'WEEKLY')).upper())
        except ValueError:
            dca_type = DcaType.WEEKLY

        order = DcaOrder(
            symbol=signal.symbol,
            amount_usd=amount,
            price=price,
            quantity=amount / price if price else 0.0,
            type=dca_type,
            order_id=order_id,
            reason=signal.reason,
        )
        await self.store.save_dca_order(order)
        logger.info("Executed spot DCA: %s $%.2f @ %s (%s)", signal.symbol, amount, price, dca_type.value)
        return order
