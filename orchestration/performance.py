import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from orchestration.persistence import PositionStore
from strategy.models import Position, PositionStatus


logger = logging.getLogger(__name__)


@dataclass
class StrategyMetrics:
    strategy: str
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    roi: float = 0.0
    max_drawdown: float = 0.0
    average_win_percent: float = 0.0
    average_loss_percent: float = 0.0
    parameters: Dict[str, Any] = field(default_factory=dict)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'strategy': self.strategy,
            'total_trades': self.total_trades,
            'winning_trades': self.winning_trades,
            'losing_trades': self.losing_trades,
            'win_rate': self.win_rate,
            'total_pnl': self.total_pnl,
            'roi': self.roi,
            'max_drawdown': self.max_drawdown,
            'average_win_percent': self.average_win_percent,
            'average_loss_percent': self.average_loss_percent,
            'parameters': dict(self.parameters),
            'updated_at': int(self.updated_at * 1000),
        }


def max_drawdown_percent(pnls: List[float]) -> float:
    """Largest fall of cumulative PnL from its running peak, as a percent of that peak."""
    if not pnls:
        return 0.0
    equity = np.cumsum(np.asarray(pnls, dtype=float))
    running_max = np.maximum.accumulate(np.maximum(equity, 0.0))
    with np.errstate(divide='ignore', invalid='ignore'):
        drawdown = np.where(running_max > 0, (running_max - equity) / running_max * 100, 0.0)
    return float(drawdown.max())


class PerformanceTracker:
    """Per-strategy results over the closed positions in the store. Percentages are 0-100."""

    def __init__(self, store: PositionStore):
        self.store = store

    async def strategy_metrics(self, strategy: str) -> StrategyMetrics:
        positions = [p for p in await self.store.get_positions() if p.strategy == strategy]
        return self._calculate(strategy, positions)

    async def all_strategy_metrics(self) -> List[StrategyMetrics]:
        positions = await self.store.get_positions()
        names = sorted({p.strategy for p in positions})
        logger.debug("Computing performance for %s strategies over %s positions", len(names), len(positions))
        return [self._calculate(name, [p for p in positions if p.strategy == name]) for name in names]

    async def overall_performance(self, metrics: Optional[List[StrategyMetrics]] = None) -> Dict[str, Any]:
        if metrics is None:
            metrics = await self.all_strategy_metrics()
        total_trades = sum(m.total_trades for m in metrics)
        traded = [m for m in metrics if m.total_trades]
        if not traded:
            return {'total_roi': 0.0, 'win_rate': 0.0, 'max_drawdown': 0.0, 'total_trades': 0, 'total_pnl': 0.0}
        winning = sum(m.winning_trades for m in metrics)
        return {
            'total_roi': float(np.mean([m.roi for m in traded])),
            'win_rate': winning / total_trades * 100,
            'max_drawdown': max(m.max_drawdown for m in traded),
            'total_trades': total_trades,
            'total_pnl': sum(m.total_pnl for m in traded),
        }

    @staticmethod
    def _calculate(strategy: str, positions: List[Position]) -> StrategyMetrics:
        closed = sorted(
            (p for p in positions if p.status is PositionStatus.CLOSED),
            key=lambda p: p.close_time or 0.0,
        )
        metrics = StrategyMetrics(strategy=strategy, total_trades=len(closed))
        if not closed:
            return metrics

        wins = [p for p in closed if p.pnl > 0]
        losses = [p for p in closed if p.pnl < 0]
        invested = sum(p.entry_price * p.size for p in closed)
        metrics.winning_trades = len(wins)
        metrics.losing_trades = len(losses)
        metrics.win_rate = len(wins) / len(closed) * 100
        metrics.total_pnl = sum(p.pnl for p in closed)
        metrics.roi = metrics.total_pnl / invested * 100 if invested > 0 else 0.0
        metrics.max_drawdown = max_drawdown_percent([p.pnl for p in closed])
        if wins:
            metrics.average_win_percent = float(np.mean([p.pnl_percent for p in wins]))
        if losses:
            metrics.average_loss_percent = float(np.mean([p.pnl_percent for p in losses]))
        return metrics
