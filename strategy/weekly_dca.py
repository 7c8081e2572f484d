import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from strategy.base import Strategy
from strategy.models import Candle, DcaType, Signal, SignalType

logger = logging.getLogger(__name__)

WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_weekday(value: Any) -> int:
    """Monday=0 .. Sunday=6; accepts the index or the English day name."""
    if isinstance(value, str) and not value.strip().isdigit():
        name = value.strip().lower()
        if name not in WEEKDAYS:
            raise ValueError(f"Unknown weekday '{value}'")
        return WEEKDAYS.index(name)
    day = int(value)
    if not 0 <= day <= 6:
        raise ValueError(f"Weekday index out of range: {day}")
    return day


class WeeklyDcaStrategy(Strategy):
    """Fixed-amount spot buy once a week at a set UTC day and hour, whatever the price."""

    name = "Weekly_DCA"
    market = "spot"

    def __init__(
        self,
        parameters: Optional[Mapping[str, Any]] = None,
        enabled: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.clock = clock or _utcnow
        self.last_buy: Dict[str, datetime] = {}
        super().__init__(parameters, enabled)

    def _load_parameters(self) -> None:
        p = self.parameters
        self.buy_day = parse_weekday(p.get('buy_day', 0))
        self.buy_hour = int(p.get('buy_hour', 10))
        self.buy_amount_usd = float(p.get('buy_amount_usd', 100.0))
        if not 0 <= self.buy_hour <= 23:
            raise ValueError(f"buy_hour out of range: {self.buy_hour}")
        if self.buy_amount_usd <= 0:
            raise ValueError("buy_amount_usd must be positive")

    def generate_signal(self, symbol: str, candles: List[Candle]) -> Optional[Signal]:
        if not candles:
            return None
        now = self.clock()
        if now.weekday() != self.buy_day or now.hour != self.buy_hour:
            logger.debug(
                "[%s] %s: not buy time (now %s %02d:00, target %s %02d:00)",
                self.name, symbol, WEEKDAYS[now.weekday()], now.hour, WEEKDAYS[self.buy_day], self.buy_hour,
            )
            return None

        previous = self.last_buy.get(symbol)
        if previous is not None and (now - previous).total_seconds() < 6 * 86400:
            logger.debug("[%s] %s: already bought this week (%s)", self.name, symbol, previous.date())
            return None

        self.last_buy[symbol] = now
        price = candles[-1].close
        logger.info("[%s] %s DCA buy signal: $%.2f at %.2f", self.name, symbol, self.buy_amount_usd, price)
        return Signal(
            symbol=symbol,
            strategy=self.name,
            type=SignalType.LONG,
            entry_price=price,
            stop_loss=price * 0.90,
            take_profit=price * 1.20,
            confidence=80.0,
            reason=f"Weekly DCA buy on {WEEKDAYS[self.buy_day].capitalize()}, ${self.buy_amount_usd:.2f} investment",
            metadata={'dca_type': DcaType.WEEKLY.value, 'dca_amount_usd': self.buy_amount_usd},
        )
