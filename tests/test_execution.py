#!/usr/bin/env python
"""
Decision execution, position bookkeeping and snapshot persistence
"""
import asyncio
import sys
sys.path.insert(0, '.')

import pytest

from orchestration.persistence import PositionStore
from risk.position_sizer import RiskManager
from strategy.execution import ExecutionCoordinator
from strategy.models import (
    DcaType,
    DecisionStatus,
    DecisionType,
    Position,
    PositionStatus,
    Signal,
    SignalType,
    TradeDecision,
)
from tests.fakes import FakeTransport

RISK_CFG = {'min_confidence_threshold': 70.0, 'max_position_size_percent': 5.0}


def _decision(symbol="BTCUSDT", direction=SignalType.LONG, confidence=90.0, decision=DecisionType.EXECUTE):
    long_ = direction is SignalType.LONG
    return TradeDecision(
        symbol=symbol,
        decision=decision,
        direction=direction,
        entry_price=100.0,
        stop_loss=95.0 if long_ else 105.0,
        take_profit=110.0 if long_ else 90.0,
        position_size_usd=200.0,
        leverage=10,
        confidence=confidence,
        strategy_scores={'RSI_Volume_EMA': 90.0, 'Swing': 90.0},
    )


def _coordinator(transport, store=None, auto_trading=True, max_total=8):
    store = store or PositionStore()
    risk = RiskManager(transport, RISK_CFG)
    cfg = {'enable_auto_trading': auto_trading, 'max_total_positions': max_total}
    return ExecutionCoordinator(transport, store, risk, cfg)


def test_execute_opens_position_with_protective_orders():
    async def _run():
        transport = FakeTransport(balance=10000.0)
        coordinator = _coordinator(transport)
        decision = _decision()

        position = await coordinator.execute(decision)

        assert decision.status is DecisionStatus.EXECUTED
        assert position.side == 'long'
        assert position.strategy == 'Consensus'
        assert position.size == pytest.approx(2.0)
        assert position.leverage == 10
        assert position.id == 1
        assert transport.called('leverage') == [('leverage', 'BTCUSDT', 10)]
        assert transport.called('order') == [('order', 'BTCUSDT', 'buy', 'market', pytest.approx(2.0))]
        assert transport.called('stop_loss')[0][2:4] == ('sell', 95.0)
        assert transport.called('take_profit')[0][2:4] == ('sell', 110.0)
        assert coordinator.open_position_count("BTCUSDT") == 1
        assert await coordinator.store.get_open_position_count() == 1

    asyncio.run(_run())


def test_short_protective_orders_buy_back():
    async def _run():
        transport = FakeTransport()
        coordinator = _coordinator(transport)
        position = await coordinator.execute(_decision(direction=SignalType.SHORT))
        assert position.side == 'short'
        assert transport.called('order')[0][2] == 'sell'
        assert transport.called('stop_loss')[0][2:4] == ('buy', 105.0)

    asyncio.run(_run())


def test_margin_mode_set_before_entry_order():
    async def _run():
        transport = FakeTransport()
        coordinator = _coordinator(transport)
        await coordinator.execute(_decision())
        names = [c[0] for c in transport.calls]
        assert transport.called('margin_mode') == [('margin_mode', 'BTCUSDT', 'crossed')]
        assert names.index('margin_mode') < names.index('leverage') < names.index('order')

    asyncio.run(_run())


def test_margin_mode_failure_does_not_block_entry():
    async def _run():
        transport = FakeTransport()
        transport.margin_mode_result = RuntimeError("40920 position exists")
        coordinator = _coordinator(transport)
        decision = _decision()
        assert await coordinator.execute(decision) is not None
        assert decision.status is DecisionStatus.EXECUTED
        assert len(transport.called('order')) == 1

    asyncio.run(_run())


def test_drawdown_limit_blocks_new_entries():
    async def _run():
        transport = FakeTransport(balance=10000.0)
        coordinator = _coordinator(transport)
        assert await coordinator.execute(_decision("BTCUSDT")) is not None

        transport.balance = 7500.0
        decision = _decision("ETHUSDT")
        assert await coordinator.execute(decision) is None
        assert decision.status is DecisionStatus.REJECTED
        assert "drawdown" in decision.resolution
        assert coordinator.risk_manager.peak_equity == 10000.0
        assert coordinator.risk_manager.current_drawdown_pct == pytest.approx(25.0)
        assert len(transport.called('order')) == 1

        # recovery above the limit reopens trading
        transport.balance = 9000.0
        assert await coordinator.execute(_decision("ETHUSDT")) is not None

    asyncio.run(_run())


def test_auto_trading_disabled_rejects():
    async def _run():
        transport = FakeTransport()
        coordinator = _coordinator(transport, auto_trading=False)
        decision = _decision()
        assert await coordinator.execute(decision) is None
        assert decision.status is DecisionStatus.REJECTED
        assert "auto-trading" in decision.resolution
        assert transport.called('order') == []

    asyncio.run(_run())


def test_decision_resolved_only_once():
    async def _run():
        transport = FakeTransport()
        coordinator = _coordinator(transport)
        decision = _decision()
        assert await coordinator.execute(decision) is not None
        assert await coordinator.execute(decision) is None
        assert decision.status is DecisionStatus.EXECUTED
        assert len(transport.called('order')) == 1
        with pytest.raises(RuntimeError):
            decision.mark_rejected("late")

    asyncio.run(_run())


def test_duplicate_position_rejected():
    async def _run():
        coordinator = _coordinator(FakeTransport())
        assert await coordinator.execute(_decision()) is not None
        second = _decision()
        assert await coordinator.execute(second) is None
        assert second.status is DecisionStatus.REJECTED
        assert "already open" in second.resolution

    asyncio.run(_run())


def test_concurrent_executions_respect_position_limit():
    async def _run():
        coordinator = _coordinator(FakeTransport(), max_total=1)
        decisions = [_decision("BTCUSDT"), _decision("ETHUSDT")]
        results = await asyncio.gather(*(coordinator.execute(d) for d in decisions))
        assert sum(1 for r in results if r is not None) == 1
        assert sorted(d.status.value for d in decisions) == ['EXECUTED', 'REJECTED']

    asyncio.run(_run())


def test_rejections_for_bad_decisions():
    async def _run():
        coordinator = _coordinator(FakeTransport())
        no_action = _decision(decision=DecisionType.NO_ACTION)
        low = _decision(confidence=65.0)
        assert await coordinator.execute(no_action) is None
        assert await coordinator.execute(low) is None
        assert no_action.status is DecisionStatus.REJECTED
        assert low.resolution == "signal validation failed"

        broke = _coordinator(FakeTransport(balance=0.0))
        unsized = _decision()
        assert await broke.execute(unsized) is None
        assert unsized.resolution == "position sizing failed"

    asyncio.run(_run())


def test_entry_order_refused():
    async def _run():
        transport = FakeTransport()
        transport.place_order_result = None
        coordinator = _coordinator(transport)
        decision = _decision()
        assert await coordinator.execute(decision) is None
        assert decision.status is DecisionStatus.REJECTED
        assert transport.called('stop_loss') == []
        assert coordinator.open_position_count() == 0

    asyncio.run(_run())


def test_close_position_records_pnl():
    async def _run():
        transport = FakeTransport()
        coordinator = _coordinator(transport)
        position = await coordinator.execute(_decision())

        assert await coordinator.close_position(position, 110.0)

        assert position.status is PositionStatus.CLOSED
        assert position.pnl == pytest.approx(20.0)
        assert position.pnl_percent == pytest.approx(10.0)
        assert position.close_order_id == "close-1"
        assert transport.called('close') == [('close', 'BTCUSDT', 'long', pytest.approx(2.0))]
        assert coordinator.open_positions() == []
        assert await coordinator.store.get_open_position_count() == 0
        # closing again is a no-op
        assert not await coordinator.close_position(position, 120.0)

    asyncio.run(_run())


def test_short_pnl():
    position = Position("BTCUSDT", "Swing", "short", 100.0, 3.0, 105.0, 90.0)
    assert position.calculate_pnl(90.0) == pytest.approx(30.0)
    assert position.calculate_pnl(110.0) == pytest.approx(-30.0)


def test_spot_dca_saved():
    async def _run():
        transport = FakeTransport(spot_price=50.0)
        coordinator = _coordinator(transport)
        signal = Signal(
            symbol="BTCUSDT", strategy="DCA", type=SignalType.LONG, entry_price=49.0,
            stop_loss=0.0, take_profit=0.0, confidence=80.0, reason="weekly buy",
            metadata={'dca_amount_usd': 25.0, 'dca_type': 'daily'},
        )
        order = await coordinator.execute_spot_dca(signal)

        assert order.amount_usd == 25.0
        assert order.price == 50.0
        assert order.quantity == pytest.approx(0.5)
        assert order.type is DcaType.DAILY
        assert transport.called('spot_buy') == [('spot_buy', 'BTCUSDT', 25.0)]
        assert len(await coordinator.store.get_dca_orders()) == 1

    asyncio.run(_run())


def test_store_snapshot_round_trip(tmp_path):
    async def _run():
        path = tmp_path / "positions.json"
        coordinator = _coordinator(FakeTransport(), store=PositionStore(path))
        opened = await coordinator.execute(_decision("BTCUSDT"))
        other = await coordinator.execute(_decision("ETHUSDT"))
        await coordinator.close_position(other, 105.0)

        reloaded = PositionStore(path)
        assert await reloaded.get_open_position_count() == 1
        assert await reloaded.get_open_position_count("ETHUSDT") == 0
        positions = {p.id: p for p in await reloaded.get_positions()}
        assert positions[opened.id].stop_loss == 95.0
        assert positions[other.id].status is PositionStatus.CLOSED
        assert positions[other.id].pnl == pytest.approx(10.0)

        restored = _coordinator(FakeTransport(), store=reloaded)
        assert await restored.restore() == 1
        assert restored.get_open_position("BTCUSDT", "Consensus").id == opened.id

        # ids keep counting after a restart
        third = Position("SOLUSDT", "Swing", "long", 10.0, 1.0, 9.0, 12.0)
        assert await reloaded.save_position(third) == 3

    asyncio.run(_run())


def test_store_rejects_unknown_update():
    async def _run():
        store = PositionStore()
        with pytest.raises(KeyError):
            await store.update_position(Position("BTCUSDT", "Swing", "long", 1.0, 1.0, 0.9, 1.1, id=99))

    asyncio.run(_run())


def test_store_ignores_corrupt_snapshot(tmp_path):
    path = tmp_path / "positions.json"
    path.write_text("{not json")
    store = PositionStore(path)
    assert asyncio.run(store.get_positions()) == []
