import logging
from typing import List, Optional

from analytics import indicators
from strategy.base import Strategy
from strategy.models import Candle, Signal, SignalType

logger = logging.getLogger(__name__)


class RsiVolumeEmaStrategy(Strategy):
    """Oversold/overbought RSI confirmed by a volume spike, filtered by EMA trend."""

    name = "RSI_Volume_EMA"
    market = "futures"

    def _load_parameters(self) -> None:
        p = self.parameters
        self.rsi_period = int(p.get('rsi_period', 14))
        self.rsi_oversold = int(p.get('rsi_oversold', 30))
        self.rsi_overbought = int(p.get('rsi_overbought', 70))
        self.ema_period = int(p.get('ema_period', 50))
        self.volume_threshold = float(p.get('volume_threshold', 1.5))

    @property
    def min_candles(self) -> int:
        return max(self.rsi_period, self.ema_period) + 20

    def generate_signal(self, symbol: str, candles: List[Candle]) -> Optional[Signal]:
        if len(candles) < self.min_candles:
            logger.debug("[%s] %s: need %s candles, have %s", self.name, symbol, self.min_candles, len(candles))
            return None

        closes = [c.close for c in candles]
        volumes = [c.volume for c in candles]
        rsi = indicators.rsi(closes, self.rsi_period)
        ema = indicators.ema(closes, self.ema_period)
        avg_volume = indicators.sma(volumes, 20)
        current_volume = volumes[-1]
        price = closes[-1]
        if rsi is None or ema is None or not avg_volume:
            return None

        vol_x = current_volume / avg_volume
        logger.debug(
            "[%s] %s RSI=%.2f EMA=%.2f price=%.2f vol=%.2fx", self.name, symbol, rsi, ema, price, vol_x
        )
        high_volume = current_volume > avg_volume * self.volume_threshold

        if rsi < self.rsi_oversold and price > ema and high_volume:
            return Signal(
                symbol=symbol,
                strategy=self.name,
                type=SignalType.LONG,
                entry_price=price,
                stop_loss=price * 0.97,
                take_profit=price * 1.06,
                confidence=min(95.0, 100.0 - rsi),
                reason=f"RSI oversold ({rsi:.2f}), price above EMA ({ema:.2f}), high volume ({vol_x:.2f}x)",
                metadata={'rsi': rsi, 'ema': ema, 'volume_ratio': vol_x},
            )

        if rsi > self.rsi_overbought and price < ema and high_volume:
            return Signal(
                symbol=symbol,
                strategy=self.name,
                type=SignalType.SHORT,
                entry_price=price,
                stop_loss=price * 1.03,
                take_profit=price * 0.94,
                confidence=min(95.0, rsi - 30.0),
                reason=f"RSI overbought ({rsi:.2f}), price below EMA ({ema:.2f}), high volume ({vol_x:.2f}x)",
                metadata={'rsi': rsi, 'ema': ema, 'volume_ratio': vol_x},
            )

        return None
