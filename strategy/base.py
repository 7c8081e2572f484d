import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type

from strategy.models import Candle, Signal

logger = logging.getLogger(__name__)


class Strategy(ABC):
    """A named signal generator over an ascending candle series.

    ``parameters`` is an opaque map; implementations read the keys they know
    and keep their defaults for the rest.
    """

    name: str = ""
    market: str = "futures"

    def __init__(self, parameters: Optional[Mapping[str, Any]] = None, enabled: bool = True):
        self.enabled = enabled
        self.parameters: Dict[str, Any] = {}
        self.update_parameters(dict(parameters or {}))

    @abstractmethod
    def generate_signal(self, symbol: str, candles: List[Candle]) -> Optional[Signal]:
        pass

    @abstractmethod
    def _load_parameters(self) -> None:
        pass

    def update_parameters(self, params: Mapping[str, Any]) -> None:
        previous = dict(self.parameters)
        self.parameters.update(params)
        try:
            self._load_parameters()
        except (TypeError, ValueError):
            # keep the last values that loaded
            self.parameters = previous
            self._load_parameters()
            raise

    def describe(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'market': self.market,
            'enabled': self.enabled,
            'parameters': dict(self.parameters),
        }


def _registry() -> Dict[str, Type[Strategy]]:
    from strategy.fvg_liquidity import FvgLiquidityStrategy
    from strategy.rsi_volume_ema import RsiVolumeEmaStrategy
    from strategy.swing import SwingStrategy
    from strategy.weekly_dca import WeeklyDcaStrategy

    classes = (RsiVolumeEmaStrategy, SwingStrategy, FvgLiquidityStrategy, WeeklyDcaStrategy)
    return {cls.name: cls for cls in classes}


def build_strategies(strategies_cfg: Iterable[Mapping[str, Any]]) -> List[Strategy]:
    """Instantiate the enabled strategies in configuration order."""
    available = _registry()
    strategies: List[Strategy] = []
    for entry in strategies_cfg or []:
        name = entry.get('name')
        if not entry.get('enabled', True):
            logger.info("Strategy %s disabled", name)
            continue
        cls = available.get(name)
        if cls is None:
            logger.warning("Unknown strategy %s in config; skipping", name)
            continue
        strategies.append(cls(entry.get('parameters') or {}))
    return strategies
