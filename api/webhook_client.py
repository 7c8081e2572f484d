import asyncio
import json
import logging
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import aiohttp

from config import config
from strategy.models import Position, Signal


logger = logging.getLogger(__name__)


class WebhookError(Exception):
    def __init__(self, url: str, status: Optional[int], message: str):
        self.url = url
        self.status = status
        super().__init__(f"Webhook {url} failed (status={status}): {message}")


class AutomationWebhookClient:
    """POST analysis, position and performance events to an external automation workflow."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_s: Optional[float] = None,
        paths: Optional[Mapping[str, str]] = None,
        session_factory: Optional[Callable[[], Any]] = None,
    ):
        webhook_cfg = config.get('webhook', {})
        url = base_url if base_url is not None else webhook_cfg.get('base_url')
        self.base_url = str(url).rstrip('/') if url else None
        self.enabled = bool(self.base_url)
        self.timeout_s = float(timeout_s if timeout_s is not None else webhook_cfg.get('timeout_s', 10))
        self.max_retries = max(1, int(max_retries if max_retries is not None else webhook_cfg.get('max_retries', 3)))
        self.backoff_s = float(backoff_s if backoff_s is not None else webhook_cfg.get('backoff_s', 2))
        paths = paths if paths is not None else webhook_cfg
        self.strategy_analysis_path = paths.get('strategy_analysis_path', '/webhook/strategy-analysis')
        self.position_update_path = paths.get('position_update_path', '/webhook/position-update')
        self.performance_path = paths.get('performance_path', '/webhook/performance')
        self._session_factory = session_factory or aiohttp.ClientSession

    async def post(self, path: str, payload: Dict[str, Any]) -> Any:
        """POST ``payload``; return the decoded JSON body, or the raw text when it is not JSON."""
        url = f"{self.base_url}{path}"
        last_error: Optional[WebhookError] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._session_factory() as session:
                    async with session.post(
                        url,
                        json=payload,
                        headers={'Content-Type': 'application/json'},
                        timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                    ) as response:
                        text = await response.text()
                        if 200 <= response.status < 300:
                            return self._decode(text)
                        last_error = WebhookError(url, response.status, text[:200])
            except asyncio.TimeoutError:
                last_error = WebhookError(url, None, "timed out")
            except aiohttp.ClientError as exc:
                last_error = WebhookError(url, None, str(exc))

            if attempt < self.max_retries:
                logger.warning("%s; retrying in %.1fs (%s/%s)", last_error, self.backoff_s, attempt, self.max_retries)
                await asyncio.sleep(self.backoff_s)

        raise last_error

    async def send_strategy_analysis(
        self, symbol: str, signals: Iterable[Signal], market_data: Dict[str, Any]
    ) -> Any:
        if not self.enabled:
            logger.debug("Webhook disabled; skipping strategy analysis for %s", symbol)
            return None
        payload = {
            'symbol': symbol,
            'signals': [s.to_dict() for s in signals],
            'marketData': market_data,
        }
        logger.info("Sending strategy analysis for %s", symbol)
        return await self.post(self.strategy_analysis_path, payload)

    async def send_position_update(self, position: Position) -> Any:
        if not self.enabled:
            logger.debug("Webhook disabled; skipping position update for %s", position.symbol)
            return None
        return await self.post(self.position_update_path, position.to_dict())

    async def send_performance_metrics(
        self, strategies: Iterable[Dict[str, Any]], overall: Dict[str, Any]
    ) -> Any:
        if not self.enabled:
            logger.debug("Webhook disabled; skipping performance report")
            return None
        payload = {
            'strategies': list(strategies),
            'overallPerformance': overall,
        }
        logger.info("Sending performance metrics for %s strategies", len(payload['strategies']))
        return await self.post(self.performance_path, payload)

    @staticmethod
    def _decode(text: str) -> Any:
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text
