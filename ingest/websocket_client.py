import asyncio
import json
import logging
import random
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import websockets

from api.metrics import metrics
from config import config
from monitoring.async_utils import cancel_task
from .auth import Authenticator
from .channel_registry import ChannelRegistry, subscription_key


logger = logging.getLogger(__name__)

PUBLIC_URL = "wss://ws.bitget.com/v2/ws/public"
PRIVATE_URL = "wss://ws.bitget.com/v2/ws/private"

Handler = Callable[..., Union[None, Awaitable[None]]]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    RECONNECTING = "reconnecting"


class AuthenticationRequired(RuntimeError):
    """Raised when a private socket is requested without credentials."""


class ErrorEvent(RuntimeError):
    """An ``"event":"error"`` frame sent by the exchange, handed to ``error`` handlers."""

    def __init__(self, payload: Dict[str, Any]):
        self.code = str(payload.get("code", ""))
        self.msg = payload.get("msg", "")
        self.payload = payload
        super().__init__(f"code={self.code} msg={self.msg}")


class _Connection:
    """Per-socket state. Only the owning WebSocketClient touches it."""

    def __init__(self, name: str, url: str, is_private: bool):
        self.name = name
        self.url = url
        self.is_private = is_private
        self.state = ConnectionState.DISCONNECTED
        self.ws: Any = None
        self.running = False
        self.reader_task: Optional[asyncio.Task] = None
        self.keepalive_task: Optional[asyncio.Task] = None
        self.send_lock = asyncio.Lock()
        self.connect_lock = asyncio.Lock()
        self.wire_subscriptions: Dict[str, Dict[str, Optional[str]]] = {}


class WebSocketClient:
    """Public and private Bitget WebSocket connections multiplexed through a ChannelRegistry.

    Each connection runs its own read loop and keep-alive task. Inbound frames are
    routed by ``arg.channel``/``arg.instId`` to the callbacks registered under the
    matching subscription key. Private sockets log in again after every reconnect;
    wire-level subscriptions are not replayed, callers that need that listen for the
    ``reconnected`` event.
    """

    EVENTS = ("connected", "disconnected", "reconnected", "error", "message")

    def __init__(
        self,
        authenticator: Optional[Authenticator] = None,
        registry: Optional[ChannelRegistry] = None,
        connect: Optional[Callable[..., Awaitable[Any]]] = None,
        public_url: Optional[str] = None,
        private_url: Optional[str] = None,
        ping_interval: Optional[float] = None,
        reconnect_timeout: Optional[float] = None,
        reconnect_backoff: Optional[List[float]] = None,
        subscribe_settle: Optional[float] = None,
    ):
        ws_cfg = config.get('websocket', {})
        self.authenticator = authenticator
        self.registry = registry or ChannelRegistry()
        self._connect_factory = connect or websockets.connect
        self.ping_interval = float(ping_interval if ping_interval is not None else ws_cfg.get('ping_interval_s', 30))
        self.reconnect_timeout = float(
            reconnect_timeout if reconnect_timeout is not None else ws_cfg.get('reconnect_timeout_s', 60)
        )
        self.reconnect_backoff = list(reconnect_backoff or ws_cfg.get('reconnect_backoff', [1, 2, 5, 10, 30]))
        self.subscribe_settle = float(
            subscribe_settle if subscribe_settle is not None else ws_cfg.get('subscribe_settle_s', 0.1)
        )

        self.handlers: Dict[str, Handler] = {}
        self._public = _Connection("public", public_url or ws_cfg.get('public_url', PUBLIC_URL), False)
        self._private = _Connection("private", private_url or ws_cfg.get('private_url', PRIVATE_URL), True)

    async def __aenter__(self) -> 'WebSocketClient':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def register_handler(self, event: str, handler: Handler) -> None:
        if event not in self.EVENTS:
            raise ValueError(f"Unknown WebSocket event '{event}'")
        self.handlers[event] = handler

    def state(self, is_private: bool = False) -> ConnectionState:
        return self._conn(is_private).state

    def is_running(self, is_private: bool = False) -> bool:
        return self._conn(is_private).running

    def subscriptions(self, is_private: bool = False) -> List[Dict[str, Optional[str]]]:
        return list(self._conn(is_private).wire_subscriptions.values())

    async def connect_public(self) -> None:
        await self._ensure_connected(self._public)

    async def connect_private(self) -> None:
        if self.authenticator is None:
            raise AuthenticationRequired("Authentication required for private WebSocket")
        await self._ensure_connected(self._private)

    async def subscribe(
        self,
        channel: str,
        inst_id: Optional[str] = None,
        inst_type: Optional[str] = None,
        is_private: bool = False,
    ) -> None:
        conn = self._conn(is_private)
        if not conn.running:
            if is_private:
                await self.connect_private()
            else:
                await self.connect_public()

        arg = {"instType": inst_type, "channel": channel, "instId": inst_id}
        await self._send(conn, json.dumps({"op": "subscribe", "args": [arg]}))
        conn.wire_subscriptions[subscription_key(channel, inst_id)] = arg
        logger.debug("Subscribed to %s channel %s (%s)", conn.name, channel, inst_id or "all")

        if self.subscribe_settle > 0:
            await asyncio.sleep(self.subscribe_settle)

    async def unsubscribe(
        self,
        channel: str,
        inst_id: Optional[str] = None,
        is_private: bool = False,
        inst_type: Optional[str] = None,
    ) -> None:
        conn = self._conn(is_private)
        key = subscription_key(channel, inst_id)
        recorded = conn.wire_subscriptions.pop(key, None)
        if not conn.running or conn.ws is None:
            return

        arg = {
            "instType": inst_type or (recorded or {}).get("instType"),
            "channel": channel,
            "instId": inst_id,
        }
        await self._send(conn, json.dumps({"op": "unsubscribe", "args": [arg]}))
        logger.debug("Unsubscribed from %s channel %s (%s)", conn.name, channel, inst_id or "all")

    async def close(self) -> None:
        for conn in (self._public, self._private):
            await self._shutdown(conn)

    def _conn(self, is_private: bool) -> _Connection:
        return self._private if is_private else self._public

    def _set_state(self, conn: _Connection, state: ConnectionState) -> None:
        previous = conn.state
        if previous is state:
            return
        conn.state = state
        metrics.update_connection_state(conn.name, state.value, previous.value)
        logger.debug("%s WebSocket %s -> %s", conn.name, previous.value, state.value)

    async def _emit(self, event: str, *args: Any) -> None:
        handler = self.handlers.get(event)
        if handler is None:
            return
        try:
            result = handler(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("WebSocket %s handler failed", event)

    async def _ensure_connected(self, conn: _Connection) -> None:
        async with conn.connect_lock:
            if conn.running:
                return
            await self._open(conn)

    async def _open(self, conn: _Connection) -> None:
        self._set_state(conn, ConnectionState.CONNECTING)
        try:
            conn.ws = await self._connect_factory(conn.url, ping_interval=None)
            self._set_state(conn, ConnectionState.CONNECTED)
            if conn.is_private:
                await self._authenticate(conn)
        except (Exception, asyncio.CancelledError):
            await self._close_socket(conn)
            self._set_state(conn, ConnectionState.DISCONNECTED)
            raise

        conn.running = True
        conn.reader_task = asyncio.create_task(self._read_loop(conn))
        self._start_keepalive(conn)
        logger.info("%s WebSocket connected to %s", conn.name.capitalize(), conn.url)
        await self._emit("connected", conn.name)

    async def _authenticate(self, conn: _Connection) -> None:
        self._set_state(conn, ConnectionState.AUTHENTICATING)
        frame = json.dumps({"op": "login", "args": [self.authenticator.login_args()]})
        await self._send(conn, frame)
        logger.debug("Sent authentication message")
        self._set_state(conn, ConnectionState.READY)

    async def _send(self, conn: _Connection, text: str) -> None:
        ws = conn.ws
        if ws is None:
            raise ConnectionError(f"{conn.name} WebSocket is not connected")
        async with conn.send_lock:
            await ws.send(text)

    def _start_keepalive(self, conn: _Connection) -> None:
        conn.keepalive_task = asyncio.create_task(self._keepalive_loop(conn))

    async def _keepalive_loop(self, conn: _Connection) -> None:
        while conn.running:
            await asyncio.sleep(self.ping_interval)
            if conn.state not in (ConnectionState.CONNECTED, ConnectionState.READY):
                continue
            try:
                await self._send(conn, "ping")
            except Exception as exc:
                logger.error("Error sending ping on %s socket: %s", conn.name, exc)

    async def _read_loop(self, conn: _Connection) -> None:
        while conn.running:
            try:
                raw = await asyncio.wait_for(conn.ws.recv(), timeout=self.reconnect_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "%s WebSocket silent for %.0fs; reconnecting", conn.name.capitalize(), self.reconnect_timeout
                )
                await self._reconnect(conn, "timeout")
                continue
            except Exception as exc:
                if not conn.running:
                    break
                logger.warning("%s WebSocket disconnected: %s", conn.name.capitalize(), exc)
                await self._reconnect(conn, str(exc) or type(exc).__name__)
                continue

            try:
                await self._handle_message(conn, raw)
            except Exception as exc:
                logger.exception("Error handling %s WebSocket message", conn.name)
                await self._emit("error", conn.name, exc)

    async def _reconnect(self, conn: _Connection, reason: str) -> None:
        self._set_state(conn, ConnectionState.RECONNECTING)
        await cancel_task(conn.keepalive_task)
        conn.keepalive_task = None
        await self._close_socket(conn)
        await self._emit("disconnected", conn.name, reason)

        attempt = 0
        while conn.running:
            delay = self._backoff_delay(attempt)
            logger.info("Reconnecting %s WebSocket in %.1fs (attempt %s)", conn.name, delay, attempt + 1)
            await asyncio.sleep(delay)
            if not conn.running:
                return

            self._set_state(conn, ConnectionState.CONNECTING)
            try:
                conn.ws = await self._connect_factory(conn.url, ping_interval=None)
                self._set_state(conn, ConnectionState.CONNECTED)
                # The exchange keeps no session across drops
                if conn.is_private:
                    await self._authenticate(conn)
            except Exception as exc:
                attempt += 1
                logger.error("%s WebSocket reconnect failed: %s", conn.name.capitalize(), exc)
                await self._close_socket(conn)
                self._set_state(conn, ConnectionState.RECONNECTING)
                await self._emit("error", conn.name, exc)
                continue

            metrics.record_reconnect(conn.name)
            self._start_keepalive(conn)
            logger.info("%s WebSocket reconnected", conn.name.capitalize())
            await self._emit("reconnected", conn.name)
            return

    def _backoff_delay(self, attempt: int) -> float:
        if not self.reconnect_backoff:
            return 0.0
        base = float(self.reconnect_backoff[min(attempt, len(self.reconnect_backoff) - 1)])
        if base <= 0:
            return 0.0
        return base + random.uniform(0, 0.5)

    async def _handle_message(self, conn: _Connection, raw: Union[str, bytes]) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        metrics.record_ws_message(conn.name)
        await self._emit("message", conn.name, raw)

        if await self._handle_control_frame(conn, raw):
            return

        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("Could not parse %s WebSocket frame: %.200s", conn.name, raw)
            metrics.record_drop("malformed")
            return

        arg = payload.get("arg") if isinstance(payload, dict) else None
        if not isinstance(arg, dict) or not arg.get("channel"):
            logger.debug("%s frame has no arg.channel: %.200s", conn.name, raw)
            metrics.record_drop("no_channel")
            return

        key = subscription_key(arg["channel"], arg.get("instId"))
        self.registry.dispatch(key, payload)

    async def _handle_control_frame(self, conn: _Connection, raw: str) -> bool:
        if raw.strip() == "pong":
            logger.debug("Received pong on %s socket", conn.name)
            return True
        if '"event"' not in raw and '"op"' not in raw:
            return False

        try:
            payload = json.loads(raw)
        except ValueError:
            return False
        if not isinstance(payload, dict):
            return False

        event = payload.get("event")
        if event == "pong" or payload.get("op") == "pong":
            logger.debug("Received pong on %s socket", conn.name)
            return True
        if event in ("subscribe", "unsubscribe"):
            logger.debug("%s confirmed on %s socket: %s", event.capitalize(), conn.name, payload.get("arg"))
            return True
        if event == "login":
            if str(payload.get("code", "0")) in ("0", "00000"):
                logger.info("%s WebSocket login accepted", conn.name.capitalize())
            else:
                logger.error("%s WebSocket login rejected: %s", conn.name.capitalize(), payload.get("msg"))
            return True
        if event == "error":
            logger.error(
                "%s WebSocket error event: code=%s msg=%s", conn.name.capitalize(), payload.get("code"), payload.get("msg")
            )
            metrics.record_drop("error_event")
            await self._emit("error", conn.name, ErrorEvent(payload))
            return True
        return False

    async def _close_socket(self, conn: _Connection) -> None:
        ws, conn.ws = conn.ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing %s socket: %s", conn.name, exc)

    async def _shutdown(self, conn: _Connection) -> None:
        was_running = conn.running
        conn.running = False
        await cancel_task(conn.keepalive_task)
        conn.keepalive_task = None
        await cancel_task(conn.reader_task)
        conn.reader_task = None
        await self._close_socket(conn)
        self._set_state(conn, ConnectionState.DISCONNECTED)
        if was_running:
            logger.info("%s WebSocket closed", conn.name.capitalize())
            await self._emit("disconnected", conn.name, "closed")
