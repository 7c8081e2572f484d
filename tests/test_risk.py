#!/usr/bin/env python
"""
Risk checks and position sizing tests
"""
import asyncio
import sys
sys.path.insert(0, '.')

import pytest

from risk.position_sizer import RiskManager
from strategy.models import DecisionType, Signal, SignalType, TradeDecision
from tests.fakes import FakeTransport

RISK_CFG = {
    'min_confidence_threshold': 70.0,
    'max_position_size_percent': 5.0,
    'max_drawdown_percent': 20.0,
    'base_dca_amount_usd': 10.0,
}


def _signal(type_=SignalType.LONG, sl=95.0, tp=110.0, confidence=80.0, metadata=None):
    return Signal(
        symbol="BTCUSDT",
        strategy="Consensus",
        type=type_,
        entry_price=100.0,
        stop_loss=sl,
        take_profit=tp,
        confidence=confidence,
        metadata=metadata or {},
    )


def _decision(size=100.0, leverage=10, confidence=90.0):
    return TradeDecision(
        symbol="BTCUSDT",
        decision=DecisionType.EXECUTE,
        direction=SignalType.LONG,
        entry_price=100.0,
        stop_loss=95.0,
        take_profit=110.0,
        position_size_usd=size,
        leverage=leverage,
        confidence=confidence,
    )


def test_validate_signal_levels():
    risk = RiskManager(FakeTransport(), RISK_CFG)
    assert risk.validate_signal(_signal(), 0, 8)
    assert not risk.validate_signal(_signal(sl=101.0), 0, 8)
    assert not risk.validate_signal(_signal(tp=99.0), 0, 8)
    assert risk.validate_signal(_signal(SignalType.SHORT, sl=105.0, tp=90.0), 0, 8)
    assert not risk.validate_signal(_signal(SignalType.SHORT, sl=95.0, tp=90.0), 0, 8)
    assert not risk.validate_signal(_signal(SignalType.SHORT, sl=105.0, tp=100.0), 0, 8)


def test_validate_signal_confidence_and_capacity():
    risk = RiskManager(FakeTransport(), RISK_CFG)
    assert not risk.validate_signal(_signal(confidence=69.9), 0, 8)
    assert not risk.validate_signal(_signal(), 8, 8)
    assert risk.validate_signal(_signal(), 7, 8)


@pytest.mark.parametrize("confidence,expected", [(70, 5), (80, 7), (90, 10), (85, 10), (74.9, 5)])
def test_leverage_scaled_by_confidence(confidence, expected):
    assert RiskManager.adjust_leverage_by_confidence(10, confidence) == expected


def test_leverage_never_below_one():
    assert RiskManager.adjust_leverage_by_confidence(1, 60) == 1


def test_position_size_capped_by_balance():
    async def _run():
        risk = RiskManager(FakeTransport(balance=1000.0), RISK_CFG)
        assert await risk.calculate_position_size(_decision(size=100.0, confidence=90)) == (50.0, 10)
        assert await risk.calculate_position_size(_decision(size=20.0, confidence=80)) == (20.0, 7)

    asyncio.run(_run())


def test_position_size_without_balance():
    async def _run():
        assert await RiskManager(FakeTransport(balance=0.0), RISK_CFG).calculate_position_size(_decision()) is None
        failing = FakeTransport(balance=ConnectionError("exchange down"))
        assert await RiskManager(failing, RISK_CFG).calculate_position_size(_decision()) is None

    asyncio.run(_run())


def test_drawdown_limit():
    risk = RiskManager(FakeTransport(), RISK_CFG)
    assert risk.check_drawdown_limit(5.0)
    assert not risk.check_drawdown_limit(20.0)
    assert not risk.check_drawdown_limit(-25.0)


def test_peak_equity_drawdown():
    risk = RiskManager(FakeTransport(), RISK_CFG)
    assert risk.observe_equity(1000.0) == 0.0
    assert risk.observe_equity(1200.0) == 0.0
    assert risk.observe_equity(900.0) == pytest.approx(25.0)
    assert risk.peak_equity == 1200.0
    assert not risk.check_drawdown_limit(risk.current_drawdown_pct)
    assert risk.observe_equity(1100.0) == pytest.approx(100 / 12)


def test_dca_amount():
    risk = RiskManager(FakeTransport(), RISK_CFG)
    assert risk.calculate_dca_amount(_signal()) == 10.0
    assert risk.calculate_dca_amount(_signal(metadata={'dca_amount_usd': 25})) == 25.0
    assert risk.calculate_dca_amount(_signal(metadata={'dca_amount_usd': -5})) == 10.0
