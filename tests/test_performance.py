#!/usr/bin/env python
"""
Per-strategy performance figures over stored positions
"""
import asyncio
import sys
sys.path.insert(0, '.')

import pytest

from orchestration.performance import PerformanceTracker, max_drawdown_percent
from orchestration.persistence import PositionStore
from strategy.models import Position, PositionStatus


def _closed(strategy, pnl, close_time, entry=100.0, size=1.0):
    notional = entry * size
    return Position(
        "BTCUSDT", strategy, "long", entry, size, entry * 0.95, entry * 1.1,
        status=PositionStatus.CLOSED, pnl=pnl, pnl_percent=pnl / notional * 100, close_time=close_time,
    )


def _tracker(positions):
    store = PositionStore()

    async def _fill():
        for position in positions:
            await store.save_position(position)

    asyncio.run(_fill())
    return PerformanceTracker(store)


def test_max_drawdown_from_running_peak():
    # cumulative 10, 4, 12, 6 -> worst fall is 6 from 12
    assert max_drawdown_percent([10.0, -6.0, 8.0, -6.0]) == pytest.approx(60.0)
    assert max_drawdown_percent([-5.0, -5.0]) == 0.0
    assert max_drawdown_percent([]) == 0.0


def test_strategy_metrics():
    tracker = _tracker([
        _closed("Swing", 10.0, 1.0),
        _closed("Swing", -4.0, 2.0),
        _closed("Swing", 6.0, 3.0),
        Position("BTCUSDT", "Swing", "long", 100.0, 1.0, 95.0, 110.0),
        _closed("Consensus", -2.0, 1.0),
    ])

    metrics = asyncio.run(tracker.strategy_metrics("Swing"))

    assert metrics.total_trades == 3
    assert metrics.winning_trades == 2
    assert metrics.losing_trades == 1
    assert metrics.win_rate == pytest.approx(200 / 3)
    assert metrics.total_pnl == pytest.approx(12.0)
    assert metrics.roi == pytest.approx(4.0)
    assert metrics.max_drawdown == pytest.approx(40.0)
    assert metrics.average_win_percent == pytest.approx(8.0)
    assert metrics.average_loss_percent == pytest.approx(-4.0)


def test_strategy_without_closed_trades():
    tracker = _tracker([Position("BTCUSDT", "Swing", "long", 100.0, 1.0, 95.0, 110.0)])
    metrics = asyncio.run(tracker.strategy_metrics("Swing"))
    assert metrics.total_trades == 0
    assert metrics.win_rate == 0.0
    assert asyncio.run(tracker.overall_performance()) == {
        'total_roi': 0.0, 'win_rate': 0.0, 'max_drawdown': 0.0, 'total_trades': 0, 'total_pnl': 0.0,
    }


def test_overall_performance():
    tracker = _tracker([
        _closed("Swing", 10.0, 1.0),
        _closed("Swing", -5.0, 2.0),
        _closed("Consensus", 4.0, 1.0),
    ])

    all_metrics = asyncio.run(tracker.all_strategy_metrics())
    overall = asyncio.run(tracker.overall_performance())

    assert [m.strategy for m in all_metrics] == ["Consensus", "Swing"]
    assert overall['total_trades'] == 3
    assert overall['win_rate'] == pytest.approx(200 / 3)
    # mean of 4% and 2.5%
    assert overall['total_roi'] == pytest.approx(3.25)
    assert overall['max_drawdown'] == pytest.approx(50.0)
    assert overall['total_pnl'] == pytest.approx(9.0)
    assert all_metrics[1].to_dict()['win_rate'] == 50.0
