import logging
from typing import List, Optional

from analytics import indicators
from strategy.base import Strategy
from strategy.models import Candle, Signal, SignalType

logger = logging.getLogger(__name__)


class FvgLiquidityStrategy(Strategy):
    """Enter when price trades back into the most recent fair value gap.

    Bullish gaps (bar three's low above bar one's high) give a LONG with the stop
    under bar one, bearish gaps the mirror SHORT; the target is twice the risk.
    A gap that lines up with a clustered swing level gets a small confidence bump.
    """

    name = "FVG_Liquidity"
    market = "futures"

    def _load_parameters(self) -> None:
        p = self.parameters
        self.min_gap_percent = float(p.get('min_gap_percent', 0.5))
        self.lookback_period = int(p.get('lookback_period', 50))
        self.zone_tolerance_percent = float(p.get('zone_tolerance_percent', 1.0))
        self.zone_bonus = float(p.get('zone_bonus', 5.0))
        if self.lookback_period < 3:
            raise ValueError("lookback_period must be at least 3")

    def generate_signal(self, symbol: str, candles: List[Candle]) -> Optional[Signal]:
        if len(candles) < self.lookback_period:
            logger.debug("[%s] %s: need %s candles, have %s", self.name, symbol, self.lookback_period, len(candles))
            return None

        recent = candles[-self.lookback_period:]
        price = candles[-1].close
        gaps = indicators.find_fair_value_gaps(recent, self.min_gap_percent)

        for gap in reversed(gaps):
            if not gap.contains(price):
                continue
            anchor = recent[gap.start_index]
            gap_percent = gap.size / (gap.gap_low if gap.bullish else gap.gap_high) * 100
            confidence = min(90.0, 60.0 + gap_percent * 5)

            zones = indicators.find_liquidity_zones(recent, self.lookback_period)
            zone = indicators.near_liquidity_zone(price, zones, self.zone_tolerance_percent)
            if zone is not None:
                confidence = min(90.0, confidence + self.zone_bonus)

            if gap.bullish:
                stop_loss = anchor.low
                if stop_loss >= price:
                    continue
                direction = SignalType.LONG
                take_profit = price + (price - stop_loss) * 2
            else:
                stop_loss = anchor.high
                if stop_loss <= price:
                    continue
                direction = SignalType.SHORT
                take_profit = price - (stop_loss - price) * 2

            kind = "Bullish" if gap.bullish else "Bearish"
            logger.info("[%s] %s %s FVG %.2f%% gap", self.name, symbol, kind, gap_percent)
            return Signal(
                symbol=symbol,
                strategy=self.name,
                type=direction,
                entry_price=price,
                stop_loss=stop_loss,
                take_profit=take_profit,
                confidence=confidence,
                reason=(
                    f"{kind} FVG detected ({gap_percent:.2f}% gap), "
                    f"price in fill zone [{gap.gap_low:.2f} - {gap.gap_high:.2f}]"
                ),
                metadata={
                    'gap_low': gap.gap_low,
                    'gap_high': gap.gap_high,
                    'gap_percent': gap_percent,
                    'liquidity_zone': zone.price if zone else None,
                },
            )

        logger.debug("[%s] %s: no open gap at %.2f", self.name, symbol, price)
        return None
