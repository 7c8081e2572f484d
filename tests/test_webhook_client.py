#!/usr/bin/env python
"""
Automation webhook client tests
"""
import asyncio
import sys
sys.path.insert(0, '.')

import aiohttp
import pytest

from api.webhook_client import AutomationWebhookClient, WebhookError
from strategy.models import Position, Signal, SignalType
from tests.fakes import FakeHttpSession, FakeResponse


def _client(script, base_url="https://hooks.example.test/"):
    session = FakeHttpSession(script)
    client = AutomationWebhookClient(
        base_url=base_url,
        timeout_s=1,
        max_retries=3,
        backoff_s=0,
        paths={},
        session_factory=lambda: session,
    )
    return client, session


def _signal():
    return Signal("BTCUSDT", "Swing", SignalType.LONG, 100.0, 95.0, 110.0, 75.0, reason="bounce")


def test_strategy_analysis_payload():
    async def _run():
        client, session = _client([FakeResponse(200, {"decision": "EXECUTE"})])
        result = await client.send_strategy_analysis("BTCUSDT", [_signal()], {"price": 100.0})

        assert result == {"decision": "EXECUTE"}
        request = session.requests[0]
        assert request["url"] == "https://hooks.example.test/webhook/strategy-analysis"
        assert request["json"]["symbol"] == "BTCUSDT"
        assert request["json"]["signals"][0]["strategy"] == "Swing"
        assert request["json"]["marketData"] == {"price": 100.0}

    asyncio.run(_run())


def test_retries_until_success():
    async def _run():
        client, session = _client([
            FakeResponse(502, "bad gateway"),
            aiohttp.ClientConnectionError("reset"),
            FakeResponse(200, "accepted"),
        ])
        position = Position("BTCUSDT", "Consensus", "long", 100.0, 1.0, 95.0, 110.0)
        assert await client.send_position_update(position) == "accepted"
        assert len(session.requests) == 3
        assert session.requests[-1]["url"].endswith("/webhook/position-update")

    asyncio.run(_run())


def test_final_failure_raises():
    async def _run():
        client, session = _client([FakeResponse(500, "down"), asyncio.TimeoutError(), FakeResponse(503, "still down")])
        with pytest.raises(WebhookError) as info:
            await client.post("/webhook/strategy-analysis", {})
        assert info.value.status == 503
        assert len(session.requests) == 3

    asyncio.run(_run())


def test_disabled_without_base_url():
    async def _run():
        client, session = _client([], base_url="")
        assert not client.enabled
        assert await client.send_strategy_analysis("BTCUSDT", [_signal()], {}) is None
        assert session.requests == []

    asyncio.run(_run())


def test_performance_payload():
    async def _run():
        client, session = _client([FakeResponse(200, "")])
        strategies = [{'strategy': 'Swing', 'win_rate': 50.0, 'parameters': {'swing_period': 5}}]
        overall = {'total_trades': 2, 'win_rate': 50.0}

        assert await client.send_performance_metrics(strategies, overall) is None

        request = session.requests[0]
        assert request["url"] == "https://hooks.example.test/webhook/performance"
        assert request["json"] == {'strategies': strategies, 'overallPerformance': overall}

    asyncio.run(_run())


def test_performance_skipped_without_base_url():
    async def _run():
        client, session = _client([], base_url="")
        assert await client.send_performance_metrics([], {}) is None
        assert session.requests == []

    asyncio.run(_run())
