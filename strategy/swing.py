import logging
from typing import List, Optional

from strategy.base import Strategy
from strategy.models import Candle, Signal, SignalType

logger = logging.getLogger(__name__)


def find_swing_low(candles: List[Candle], period: int) -> Optional[float]:
    """Low of the bar ``period`` bars back if it is strictly below its ``period`` neighbours on each side."""
    if len(candles) < period * 2 + 1:
        return None
    mid = len(candles) - period - 1
    mid_low = candles[mid].low
    for i in range(mid - period, mid + period + 1):
        if i != mid and candles[i].low <= mid_low:
            return None
    return mid_low


def find_swing_high(candles: List[Candle], period: int) -> Optional[float]:
    if len(candles) < period * 2 + 1:
        return None
    mid = len(candles) - period - 1
    mid_high = candles[mid].high
    for i in range(mid - period, mid + period + 1):
        if i != mid and candles[i].high >= mid_high:
            return None
    return mid_high


class SwingStrategy(Strategy):
    """Trade the bounce off a confirmed swing low, or the drop from a swing high."""

    name = "Swing"
    market = "futures"

    def _load_parameters(self) -> None:
        self.swing_period = int(self.parameters.get('swing_period', 5))
        self.min_swing_percent = float(self.parameters.get('min_swing_percent', 2.0))

    def generate_signal(self, symbol: str, candles: List[Candle]) -> Optional[Signal]:
        window = self.swing_period * 3
        if len(candles) < window:
            logger.debug("[%s] %s: need %s candles, have %s", self.name, symbol, window, len(candles))
            return None

        recent = candles[-window:]
        price = candles[-1].close

        swing_low = find_swing_low(recent, self.swing_period)
        if swing_low:
            pct = (price - swing_low) / swing_low * 100
            if pct >= self.min_swing_percent and price > swing_low:
                stop_loss = swing_low * 0.98
                take_profit = price + (price - stop_loss) * 2
                return Signal(
                    symbol=symbol,
                    strategy=self.name,
                    type=SignalType.LONG,
                    entry_price=price,
                    stop_loss=stop_loss,
                    take_profit=take_profit,
                    confidence=min(85.0, 50.0 + pct * 2),
                    reason=f"Swing low reversal at {swing_low:.2f}, bounce {pct:.2f}%",
                    metadata={'swing_low': swing_low, 'swing_percent': pct},
                )

        swing_high = find_swing_high(recent, self.swing_period)
        if swing_high:
            pct = (swing_high - price) / swing_high * 100
            if pct >= self.min_swing_percent and price < swing_high:
                stop_loss = swing_high * 1.02
                take_profit = price - (stop_loss - price) * 2
                return Signal(
                    symbol=symbol,
                    strategy=self.name,
                    type=SignalType.SHORT,
                    entry_price=price,
                    stop_loss=stop_loss,
                    take_profit=take_profit,
                    confidence=min(85.0, 50.0 + pct * 2),
                    reason=f"Swing high reversal at {swing_high:.2f}, drop {pct:.2f}%",
                    metadata={'swing_high': swing_high, 'swing_percent': pct},
                )

        return None
