import asyncio
import logging
from typing import Any, Dict, List, Optional

from config import config
from ingest.auth import Authenticator, InvalidCredentials
from ingest.bitget_rest import ApiResponse, BitgetAPIError, BitgetRESTClient
from strategy.models import Candle


__all__ = ["BitgetTransport", "BitgetAPIError"]

logger = logging.getLogger(__name__)

# Futures granularities mapped to the spot endpoint's spelling
SPOT_GRANULARITY = {
    "1m": "1min",
    "5m": "5min",
    "15m": "15min",
    "30m": "30min",
    "1H": "1h",
    "4H": "4h",
    "6H": "6h",
    "12H": "12h",
    "1D": "1day",
    "1W": "1week",
}


class BitgetTransport:
    """Market data, account and order calls against the Bitget v2 REST API."""

    def __init__(
        self,
        rest: Optional[BitgetRESTClient] = None,
        product_type: Optional[str] = None,
        margin_coin: Optional[str] = None,
        margin_mode: Optional[str] = None,
    ) -> None:
        exchange_cfg = config.get('exchange', {})
        self._rest = rest
        self.product_type = product_type or exchange_cfg.get("product_type", "USDT-FUTURES")
        self.margin_coin = margin_coin or exchange_cfg.get("margin_coin", "USDT")
        self.margin_mode = margin_mode or exchange_cfg.get("margin_mode", "crossed")
        self._lock = asyncio.Lock()

    def _client(self) -> BitgetRESTClient:
        if self._rest is None:
            try:
                authenticator = Authenticator.from_config(config.get('exchange', {}))
            except InvalidCredentials as exc:
                logger.warning("No Bitget credentials configured (%s); private calls will fail", exc)
                authenticator = None
            self._rest = BitgetRESTClient(authenticator=authenticator)
        return self._rest

    async def get_candles(
        self,
        symbol: str,
        granularity: str = "1H",
        limit: int = 300,
        market: str = "futures",
    ) -> List[Candle]:
        rest = self._client()
        if market == "spot":
            resp = await rest.get(
                "/api/v2/spot/market/candles",
                params={
                    "symbol": symbol,
                    "granularity": SPOT_GRANULARITY.get(granularity, granularity),
                    "limit": limit,
                },
            )
        else:
            resp = await rest.get(
                "/api/v2/mix/market/candles",
                params={
                    "symbol": symbol,
                    "productType": self.product_type,
                    "granularity": granularity,
                    "limit": limit,
                },
            )
        if not resp.is_success or not isinstance(resp.data, list):
            logger.warning("Failed to fetch candles for %s: %s", symbol, resp.msg)
            return []

        candles: List[Candle] = []
        for row in resp.data:
            try:
                candles.append(Candle.from_row(row, symbol))
            except (TypeError, ValueError) as exc:
                logger.debug("Skipping malformed candle row for %s: %s", symbol, exc)
        candles.sort(key=lambda c: c.timestamp)
        return candles

    async def get_account_balance(self) -> float:
        rest = self._client()
        resp = await rest.get(
            "/api/v2/mix/account/accounts",
            params={"productType": self.product_type},
            signed=True,
        )
        if not resp.is_success or not isinstance(resp.data, list):
            logger.warning("Failed to fetch account balance: %s", resp.msg)
            return 0.0
        for account in resp.data:
            if str(account.get("marginCoin", "")).upper() != self.margin_coin.upper():
                continue
            return self._as_float(account.get("available")) or 0.0
        return 0.0

    async def get_ticker_price(self, symbol: str, market: str = "futures") -> Optional[float]:
        rest = self._client()
        if market == "spot":
            resp = await rest.get("/api/v2/spot/market/tickers", params={"symbol": symbol})
        else:
            resp = await rest.get(
                "/api/v2/mix/market/ticker",
                params={"symbol": symbol, "productType": self.product_type},
            )
        if not resp.is_success:
            return None
        data = resp.data
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            return None
        return self._as_float(data.get("lastPr"))

    async def set_leverage(self, symbol: str, leverage: int) -> bool:
        rest = self._client()
        resp = await rest.post(
            "/api/v2/mix/account/set-leverage",
            body={
                "symbol": symbol,
                "productType": self.product_type,
                "marginCoin": self.margin_coin,
                "leverage": str(leverage),
            },
        )
        return resp.is_success

    async def set_margin_mode(self, symbol: str, margin_mode: Optional[str] = None) -> bool:
        rest = self._client()
        resp = await rest.post(
            "/api/v2/mix/account/set-margin-mode",
            body={
                "symbol": symbol,
                "productType": self.product_type,
                "marginCoin": self.margin_coin,
                "marginMode": margin_mode or self.margin_mode,
            },
        )
        return resp.is_success

    async def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        size: float,
        price: Optional[float] = None,
        reduce_only: bool = False,
    ) -> Optional[str]:
        rest = self._client()
        body: Dict[str, Any] = {
            "symbol": symbol,
            "productType": self.product_type,
            "marginMode": self.margin_mode,
            "marginCoin": self.margin_coin,
            "size": self._fmt(size),
            "side": side.lower(),
            "orderType": order_type.lower(),
        }
        if price is not None and order_type.lower() == "limit":
            body["price"] = self._fmt(price)
            body["force"] = "gtc"
        if reduce_only:
            body["reduceOnly"] = "YES"
        resp = await rest.post("/api/v2/mix/order/place-order", body=body)
        return self._order_id(resp, "order", symbol)

    async def set_stop_loss(self, symbol: str, side: str, trigger_price: float, size: float) -> Optional[str]:
        return await self._place_plan_order(symbol, side, trigger_price, size, "stop loss")

    async def set_take_profit(self, symbol: str, side: str, trigger_price: float, size: float) -> Optional[str]:
        return await self._place_plan_order(symbol, side, trigger_price, size, "take profit")

    async def close_position(self, symbol: str, side: str, size: float) -> Optional[str]:
        """Market-close ``size`` of a position held on ``side`` ('long'/'short')."""
        close_side = "sell" if side.lower() in ("long", "buy") else "buy"
        return await self.place_order(symbol, close_side, "market", size, reduce_only=True)

    async def place_spot_market_buy(self, symbol: str, amount_usd: float) -> Optional[str]:
        rest = self._client()
        resp = await rest.post(
            "/api/v2/spot/trade/place-order",
            body={
                "symbol": symbol,
                "side": "buy",
                "orderType": "market",
                "force": "gtc",
                "size": self._fmt(amount_usd),
            },
        )
        return self._order_id(resp, "spot order", symbol)

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    async def _place_plan_order(
        self, symbol: str, side: str, trigger_price: float, size: float, label: str
    ) -> Optional[str]:
        rest = self._client()
        resp = await rest.post(
            "/api/v2/mix/order/place-plan-order",
            body={
                "planType": "normal_plan",
                "symbol": symbol,
                "productType": self.product_type,
                "marginMode": self.margin_mode,
                "marginCoin": self.margin_coin,
                "size": self._fmt(size),
                "triggerPrice": self._fmt(trigger_price),
                "triggerType": "mark_price",
                "side": side.lower(),
                "orderType": "market",
                "reduceOnly": "YES",
            },
        )
        return self._order_id(resp, label, symbol)

    @staticmethod
    def _order_id(resp: ApiResponse, label: str, symbol: str) -> Optional[str]:
        if not resp.is_success:
            logger.error("Failed to place %s for %s: %s", label, symbol, resp.msg)
            return None
        data = resp.data if isinstance(resp.data, dict) else {}
        order_id = data.get("orderId")
        return str(order_id) if order_id is not None else None

    @staticmethod
    def _fmt(value: float) -> str:
        return f"{float(value):.8f}".rstrip("0").rstrip(".")

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
