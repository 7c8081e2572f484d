from typing import Any, Mapping, Optional, Protocol, Tuple
import logging

from api.metrics import metrics
from config import config
from strategy.models import Signal, SignalType, TradeDecision


logger = logging.getLogger(__name__)


class AccountSource(Protocol):
    async def get_account_balance(self) -> float:
        ...


class RiskManager:
    def __init__(self, account: AccountSource, risk_cfg: Optional[Mapping[str, Any]] = None):
        risk_cfg = risk_cfg if risk_cfg is not None else config.get('risk', {})
        self.account = account
        self.min_confidence = float(risk_cfg.get('min_confidence_threshold', 70.0))
        self.max_position_size_pct = float(risk_cfg.get('max_position_size_percent', 5.0))
        self.max_drawdown_pct = float(risk_cfg.get('max_drawdown_percent', 20.0))
        self.base_dca_amount = float(risk_cfg.get('base_dca_amount_usd', 10.0))
        self.peak_equity: Optional[float] = None
        self.current_drawdown_pct = 0.0

    def validate_signal(self, signal: Signal, current_open_positions: int, max_positions: int) -> bool:
        if signal.confidence < self.min_confidence:
            logger.debug(
                "Signal rejected: confidence %.2f below threshold %.2f", signal.confidence, self.min_confidence
            )
            return False

        if current_open_positions >= max_positions:
            logger.debug("Signal rejected: max positions reached (%s/%s)", current_open_positions, max_positions)
            return False

        if signal.type is SignalType.LONG:
            if signal.stop_loss >= signal.entry_price:
                logger.warning("Invalid LONG signal: SL %s >= entry %s", signal.stop_loss, signal.entry_price)
                return False
            if signal.take_profit <= signal.entry_price:
                logger.warning("Invalid LONG signal: TP %s <= entry %s", signal.take_profit, signal.entry_price)
                return False
        elif signal.type is SignalType.SHORT:
            if signal.stop_loss <= signal.entry_price:
                logger.warning("Invalid SHORT signal: SL %s <= entry %s", signal.stop_loss, signal.entry_price)
                return False
            if signal.take_profit >= signal.entry_price:
                logger.warning("Invalid SHORT signal: TP %s >= entry %s", signal.take_profit, signal.entry_price)
                return False

        return True

    async def calculate_position_size(self, decision: TradeDecision) -> Optional[Tuple[float, int]]:
        """Return ``(position_size_usd, leverage)`` or None when the trade cannot be sized."""
        try:
            balance = await self.account.get_account_balance()
        except Exception:
            logger.exception("Error calculating position size")
            return None

        if balance is None or balance <= 0:
            logger.warning("Insufficient account balance")
            return None
        self.observe_equity(balance)

        size = decision.position_size_usd
        max_size = balance * (self.max_position_size_pct / 100)
        if size > max_size:
            logger.warning("Position size $%.2f exceeds max $%.2f, adjusting", size, max_size)
            size = max_size

        leverage = self.adjust_leverage_by_confidence(decision.leverage, decision.confidence)
        logger.info(
            "Position sizing: $%.2f with %sx leverage (confidence: %.2f%%)", size, leverage, decision.confidence
        )
        return size, leverage

    @staticmethod
    def adjust_leverage_by_confidence(leverage: int, confidence: float) -> int:
        if confidence < 75:
            return max(1, leverage // 2)
        if confidence < 85:
            return max(1, leverage * 3 // 4)
        return max(1, leverage)

    def observe_equity(self, equity: float) -> float:
        """Track peak equity and return the drawdown from it, in percent."""
        metrics.update_equity(equity)
        if self.peak_equity is None or equity > self.peak_equity:
            self.peak_equity = equity
        if self.peak_equity > 0:
            self.current_drawdown_pct = (self.peak_equity - equity) / self.peak_equity * 100
        return self.current_drawdown_pct

    def check_drawdown_limit(self, current_drawdown_pct: float) -> bool:
        """True while trading may continue."""
        if abs(current_drawdown_pct) >= self.max_drawdown_pct:
            logger.warning(
                "Drawdown limit reached: %.2f%% >= %.2f%%", current_drawdown_pct, self.max_drawdown_pct
            )
            return False
        return True

    def calculate_dca_amount(self, signal: Signal) -> float:
        amount = signal.metadata.get('dca_amount_usd')
        if isinstance(amount, (int, float)) and not isinstance(amount, bool) and amount > 0:
            return float(amount)
        return self.base_dca_amount
