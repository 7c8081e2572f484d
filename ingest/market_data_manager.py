import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import config
from ingest.channel_registry import ChannelRegistry, subscription_key
from ingest.websocket_client import WebSocketClient
from strategy.models import Candle

logger = logging.getLogger(__name__)

RecordHandler = Callable[[Any], None]

INST_TYPES = {
    'futures': 'USDT-FUTURES',
    'spot': 'SPOT',
}

# Bitget v2 private channels address every instrument with instId "default"
PRIVATE_INST_ID = 'default'


@dataclass(frozen=True)
class ChannelSubscription:
    key: str
    channel: str
    inst_id: Optional[str]
    inst_type: str
    is_private: bool
    dispatcher: Callable[[Dict], None]


class MarketDataManager:
    """Typed Bitget channel subscriptions routed to per-record callbacks.

    The wire subscribe is sent first; the callback is registered under the same
    key the WebSocket client computes for inbound frames only after the subscribe
    succeeded. Each record of a frame's ``data`` array is handed to the callback
    individually.

    A key may carry several callbacks, and several instTypes when spot and futures
    share a channel name. ``unsubscribe(key)`` drops all of them.
    """

    def __init__(
        self,
        ws_client: WebSocketClient,
        registry: Optional[ChannelRegistry] = None,
        resubscribe_on_reconnect: Optional[bool] = None,
    ):
        self.ws_client = ws_client
        self.registry = registry or ws_client.registry
        self._active: Dict[str, List[ChannelSubscription]] = {}

        if resubscribe_on_reconnect is None:
            resubscribe_on_reconnect = bool(config.get('websocket', {}).get('resubscribe_on_reconnect', False))
        if resubscribe_on_reconnect:
            self.ws_client.register_handler('reconnected', self._resubscribe)

    async def subscribe_ticker(self, symbol: str, callback: RecordHandler, market: str = 'futures') -> str:
        return await self._subscribe('ticker', symbol, market, False, callback)

    async def subscribe_trades(self, symbol: str, callback: RecordHandler, market: str = 'futures') -> str:
        return await self._subscribe('trade', symbol, market, False, callback)

    async def subscribe_depth(
        self, symbol: str, callback: RecordHandler, depth: int = 5, market: str = 'futures'
    ) -> str:
        channel = 'books5' if depth <= 5 else 'books15'
        return await self._subscribe(channel, symbol, market, False, callback)

    async def subscribe_funding_rate(self, symbol: str, callback: RecordHandler) -> str:
        return await self._subscribe('funding-rate', symbol, 'futures', False, callback)

    async def subscribe_candles(
        self, symbol: str, callback: RecordHandler, interval: str = '1m', market: str = 'futures'
    ) -> str:
        return await self._subscribe(
            f'candle{interval}', symbol, market, False, callback,
            parser=lambda record: Candle.from_row(record, symbol),
        )

    async def subscribe_orders(self, callback: RecordHandler, market: str = 'futures') -> str:
        return await self._subscribe('orders', PRIVATE_INST_ID, market, True, callback)

    async def subscribe_positions(self, callback: RecordHandler) -> str:
        return await self._subscribe('positions', PRIVATE_INST_ID, 'futures', True, callback)

    async def subscribe_account(self, callback: RecordHandler, market: str = 'futures') -> str:
        return await self._subscribe('account', PRIVATE_INST_ID, market, True, callback)

    async def unsubscribe(self, key: str) -> bool:
        entries = self._active.pop(key, None)
        if not entries:
            return False
        for entry in entries:
            self.registry.remove_callback(key, entry.dispatcher)
        # every callback under the key is gone; drop each wire subscription once
        for channel, inst_id, inst_type, is_private in self._wire_args(entries):
            await self.ws_client.unsubscribe(channel, inst_id=inst_id, is_private=is_private, inst_type=inst_type)
        return True

    def active_subscriptions(self) -> List[Dict[str, Any]]:
        return [
            {
                'key': entry.key,
                'channel': entry.channel,
                'inst_id': entry.inst_id,
                'inst_type': entry.inst_type,
                'private': entry.is_private,
                'callbacks': self.registry.callback_count(entry.key),
            }
            for entries in self._active.values()
            for entry in entries
        ]

    async def _subscribe(
        self,
        channel: str,
        inst_id: Optional[str],
        market: str,
        is_private: bool,
        callback: RecordHandler,
        parser: Optional[Callable[[Any], Any]] = None,
    ) -> str:
        if not callable(callback):
            raise TypeError("callback must be callable")
        inst_type = INST_TYPES.get(market)
        if inst_type is None:
            raise ValueError(f"Unknown market '{market}'")

        await self.ws_client.subscribe(channel, inst_id=inst_id, inst_type=inst_type, is_private=is_private)

        key = subscription_key(channel, inst_id)
        dispatcher = self._build_dispatcher(key, callback, parser)
        self.registry.add_subscription(key, dispatcher)
        self._active.setdefault(key, []).append(
            ChannelSubscription(key, channel, inst_id, inst_type, is_private, dispatcher)
        )
        logger.info("Subscribed to %s (%s)", key, inst_type)
        return key

    @staticmethod
    def _wire_args(entries: List[ChannelSubscription]) -> List[Tuple[str, Optional[str], str, bool]]:
        seen: List[Tuple[str, Optional[str], str, bool]] = []
        for entry in entries:
            arg = (entry.channel, entry.inst_id, entry.inst_type, entry.is_private)
            if arg not in seen:
                seen.append(arg)
        return seen

    def _build_dispatcher(
        self,
        key: str,
        callback: RecordHandler,
        parser: Optional[Callable[[Any], Any]],
    ) -> Callable[[Dict], None]:
        def _dispatch(message: Dict) -> None:
            records = message.get('data') or []
            if not isinstance(records, list):
                records = [records]
            for record in records:
                try:
                    callback(parser(record) if parser else record)
                except Exception:
                    logger.exception("Market data handler %s failed", key)

        return _dispatch

    async def _resubscribe(self, connection: str) -> None:
        is_private = connection == 'private'
        entries = [entry for group in list(self._active.values()) for entry in group]
        for channel, inst_id, inst_type, private in self._wire_args(entries):
            if private != is_private:
                continue
            try:
                await self.ws_client.subscribe(channel, inst_id=inst_id, inst_type=inst_type, is_private=private)
            except Exception as exc:
                logger.error("Resubscribe to %s (%s) failed: %s", subscription_key(channel, inst_id), inst_type, exc)
