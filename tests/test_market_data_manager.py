#!/usr/bin/env python
"""
Typed channel subscriptions end to end through the socket read loop
"""
import asyncio
import sys
sys.path.insert(0, '.')

import pytest

from ingest.market_data_manager import MarketDataManager
from ingest.websocket_client import ConnectionState
from strategy.models import Candle
from tests.fakes import FakeConnector, data_frame, make_authenticator, make_ws_client, wait_until


def _manager(connector, authenticator=None, resubscribe=False):
    client = make_ws_client(connector, authenticator=authenticator)
    return client, MarketDataManager(client, resubscribe_on_reconnect=resubscribe)


def test_public_keys_match_inbound_frames():
    async def _run():
        connector = FakeConnector()
        client, manager = _manager(connector)
        tickers, books = [], []

        assert await manager.subscribe_ticker("BTCUSDT", tickers.append) == "ticker_BTCUSDT"
        assert await manager.subscribe_depth("BTCUSDT", books.append, depth=15) == "books15_BTCUSDT"
        assert await manager.subscribe_trades("ETHUSDT", lambda r: None, market="spot") == "trade_ETHUSDT"
        assert await manager.subscribe_funding_rate("BTCUSDT", lambda r: None) == "funding-rate_BTCUSDT"

        sent = connector.sockets[0].frames()
        assert sent[2]["args"][0] == {"instType": "SPOT", "channel": "trade", "instId": "ETHUSDT"}

        sock = connector.sockets[0]
        sock.feed(data_frame("ticker", "BTCUSDT", [{"lastPr": "1"}, {"lastPr": "2"}]))
        sock.feed(data_frame("books15", "BTCUSDT", [{"bids": [], "asks": []}]))
        await wait_until(lambda: len(tickers) == 2 and len(books) == 1)

        assert [t["lastPr"] for t in tickers] == ["1", "2"]
        await client.close()

    asyncio.run(_run())


def test_private_channels_use_default_inst_id():
    async def _run():
        connector = FakeConnector()
        client, manager = _manager(connector, authenticator=make_authenticator())
        orders, positions = [], []

        assert await manager.subscribe_orders(orders.append) == "orders_default"
        assert await manager.subscribe_positions(positions.append) == "positions_default"
        assert await manager.subscribe_account(lambda r: None) == "account_default"

        sock = connector.sockets[0]
        sock.feed(data_frame("orders", "default", [{"ordId": "1", "instId": "BTCUSDT"}]))
        sock.feed(data_frame("positions", "default", [{"instId": "BTCUSDT", "holdSide": "long"}]))
        await wait_until(lambda: orders and positions)

        assert orders[0]["ordId"] == "1"
        assert client.state() is ConnectionState.DISCONNECTED
        await client.close()

    asyncio.run(_run())


def test_candle_rows_parsed():
    async def _run():
        connector = FakeConnector()
        client, manager = _manager(connector)
        candles = []
        key = await manager.subscribe_candles("BTCUSDT", candles.append, interval="1H")
        assert key == "candle1H_BTCUSDT"

        row = ["1700000000000", "100", "110", "95", "105", "12.5", "1300", "1300"]
        connector.sockets[0].feed(data_frame("candle1H", "BTCUSDT", [row]))
        await wait_until(lambda: candles)

        assert candles[0] == Candle(1700000000000, 100.0, 110.0, 95.0, 105.0, 12.5, "BTCUSDT")
        await client.close()

    asyncio.run(_run())


def test_failing_handler_does_not_stop_later_records():
    async def _run():
        connector = FakeConnector()
        client, manager = _manager(connector)
        seen = []

        def handler(record):
            if record["n"] == 1:
                raise ValueError("bad record")
            seen.append(record["n"])

        await manager.subscribe_ticker("BTCUSDT", handler)
        connector.sockets[0].feed(data_frame("ticker", "BTCUSDT", [{"n": 1}, {"n": 2}]))
        await wait_until(lambda: seen)
        assert seen == [2]
        await client.close()

    asyncio.run(_run())


def test_failed_subscribe_registers_nothing():
    async def _run():
        connector = FakeConnector(fail_times=1)
        client, manager = _manager(connector)
        with pytest.raises(ConnectionError):
            await manager.subscribe_ticker("BTCUSDT", lambda r: None)
        assert manager.registry.keys() == []
        assert manager.active_subscriptions() == []

    asyncio.run(_run())


def test_cancelled_subscribe_registers_nothing():
    async def _run():
        connector = FakeConnector(delay=1.0)
        client, manager = _manager(connector)
        task = asyncio.create_task(manager.subscribe_ticker("BTCUSDT", lambda r: None))
        await asyncio.sleep(0.05)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        assert manager.registry.keys() == []
        assert client.state() is ConnectionState.DISCONNECTED

    asyncio.run(_run())


def test_invalid_arguments_rejected():
    async def _run():
        connector = FakeConnector()
        client, manager = _manager(connector)
        with pytest.raises(TypeError):
            await manager.subscribe_ticker("BTCUSDT", None)
        with pytest.raises(ValueError):
            await manager.subscribe_ticker("BTCUSDT", lambda r: None, market="options")
        assert connector.calls == 0

    asyncio.run(_run())


def test_unsubscribe_removes_callback_and_sends_frame():
    async def _run():
        connector = FakeConnector()
        client, manager = _manager(connector)
        key = await manager.subscribe_ticker("BTCUSDT", lambda r: None)

        assert await manager.unsubscribe(key) is True
        assert await manager.unsubscribe(key) is False
        assert manager.registry.keys() == []
        assert connector.sockets[0].frames()[-1]["op"] == "unsubscribe"
        await client.close()

    asyncio.run(_run())


def test_unsubscribe_drops_every_callback_under_key():
    async def _run():
        connector = FakeConnector()
        client, manager = _manager(connector)
        first, second = [], []
        key = await manager.subscribe_ticker("BTCUSDT", first.append)
        assert await manager.subscribe_ticker("BTCUSDT", second.append) == key
        assert manager.registry.callback_count(key) == 2
        assert len(manager.active_subscriptions()) == 2

        assert await manager.unsubscribe(key) is True
        assert manager.registry.callback_count(key) == 0
        assert manager.active_subscriptions() == []
        unsubscribes = [f for f in connector.sockets[0].frames() if f["op"] == "unsubscribe"]
        assert len(unsubscribes) == 1

        connector.sockets[0].feed(data_frame("ticker", "BTCUSDT", [{"lastPr": "3"}]))
        await asyncio.sleep(0.05)
        assert first == [] and second == []
        await client.close()

    asyncio.run(_run())


def test_spot_and_futures_tickers_both_replayed():
    async def _run():
        connector = FakeConnector()
        client, manager = _manager(connector, resubscribe=True)
        await manager.subscribe_ticker("BTCUSDT", lambda r: None)
        await manager.subscribe_ticker("BTCUSDT", lambda r: None, market="spot")

        connector.sockets[0].feed(ConnectionError("dropped"))
        await wait_until(lambda: len(connector.sockets) == 2 and len(connector.sockets[1].sent) == 2)

        replayed = [f["args"][0] for f in connector.sockets[1].frames()]
        assert sorted(a["instType"] for a in replayed) == ["SPOT", "USDT-FUTURES"]
        assert {a["instId"] for a in replayed} == {"BTCUSDT"}
        assert manager.registry.callback_count("ticker_BTCUSDT") == 2

        await manager.unsubscribe("ticker_BTCUSDT")
        unsubscribes = [f["args"][0]["instType"] for f in connector.sockets[1].frames() if f["op"] == "unsubscribe"]
        assert sorted(unsubscribes) == ["SPOT", "USDT-FUTURES"]
        await client.close()

    asyncio.run(_run())


def test_resubscribe_on_reconnect_when_enabled():
    async def _run():
        connector = FakeConnector()
        client, manager = _manager(connector, resubscribe=True)
        seen = []
        await manager.subscribe_ticker("BTCUSDT", seen.append)

        connector.sockets[0].feed(ConnectionError("dropped"))
        await wait_until(lambda: len(connector.sockets) == 2 and connector.sockets[1].sent)

        assert connector.sockets[1].frames()[0] == {
            "op": "subscribe",
            "args": [{"instType": "USDT-FUTURES", "channel": "ticker", "instId": "BTCUSDT"}],
        }
        connector.sockets[1].feed(data_frame("ticker", "BTCUSDT", [{"lastPr": "9"}]))
        await wait_until(lambda: seen)
        # still one callback after the replay
        assert manager.registry.callback_count("ticker_BTCUSDT") == 1
        await client.close()

    asyncio.run(_run())
