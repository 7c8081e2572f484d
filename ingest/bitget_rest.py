import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from config import config
from .auth import Authenticator


logger = logging.getLogger(__name__)

SUCCESS_CODE = "00000"


class BitgetAPIError(Exception):
    def __init__(self, status: int, code: Optional[str], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Bitget API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


@dataclass
class ApiResponse:
    code: str
    msg: str
    data: Any = None
    request_time: Optional[int] = None

    @property
    def is_success(self) -> bool:
        return self.code == SUCCESS_CODE

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'ApiResponse':
        request_time = payload.get("requestTime")
        return cls(
            code=str(payload.get("code", "")),
            msg=str(payload.get("msg") or ""),
            data=payload.get("data"),
            request_time=int(request_time) if request_time is not None else None,
        )


class BitgetRESTClient:
    """Signed Bitget REST client returning the ``{code, msg, data}`` envelope.

    Requests are spaced by ``rate_limit_delay`` seconds. HTTP 429 is retried with
    exponential backoff and timeouts with a fixed pause, up to ``max_retries``
    attempts. HTTP 400 still carries an envelope and is returned to the caller;
    other statuses >= 400 raise ``BitgetAPIError``.
    """

    def __init__(
        self,
        authenticator: Optional[Authenticator] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        rate_limit_delay: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: float = 1.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        exchange_cfg = config.get('exchange', {})
        self.authenticator = authenticator
        self.base_url = (base_url or exchange_cfg.get("rest_base_url") or "https://api.bitget.com").rstrip("/")
        self.timeout = float(timeout if timeout is not None else exchange_cfg.get("request_timeout_s", 30))
        self.rate_limit_delay = float(
            rate_limit_delay if rate_limit_delay is not None else exchange_cfg.get("rate_limit_delay_s", 0.1)
        )
        self.max_retries = max(1, int(max_retries if max_retries is not None else exchange_cfg.get("max_retries", 3)))
        self.retry_delay = retry_delay
        self._session = session
        self._lock = asyncio.Lock()
        self._rate_lock = asyncio.Lock()
        self._last_request = 0.0

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def _throttle(self) -> None:
        loop = asyncio.get_running_loop()
        async with self._rate_lock:
            wait = self.rate_limit_delay - (loop.time() - self._last_request)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = loop.time()

    @staticmethod
    def build_request_path(path: str, params: Optional[Dict[str, Any]] = None) -> str:
        clean = {k: v for k, v in (params or {}).items() if v is not None}
        if not clean:
            return path
        return f"{path}?{urlencode(clean, doseq=True)}"

    def _headers(self, method: str, request_path: str, body: str, signed: bool) -> Dict[str, str]:
        if signed:
            if self.authenticator is None:
                raise RuntimeError("Bitget API credentials required for signed request")
            return self.authenticator.auth_headers(method, request_path, body)
        return {"Content-Type": "application/json", "locale": "en-US"}

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> ApiResponse:
        method = method.upper()
        request_path = self.build_request_path(path, params)
        body_text = json.dumps(body) if body is not None else ""
        url = f"{self.base_url}{request_path}"
        session = await self._get_session()

        attempt = 0
        while True:
            attempt += 1
            await self._throttle()
            # Timestamp is part of the signature, so headers are rebuilt per attempt
            headers = self._headers(method, request_path, body_text, signed)
            try:
                async with session.request(
                    method,
                    url,
                    data=body_text or None,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    status = resp.status
                    text = await resp.text()
            except asyncio.TimeoutError:
                if attempt >= self.max_retries:
                    logger.error("%s %s timed out after %s attempts", method, path, attempt)
                    raise
                logger.warning("%s %s timed out; retrying (%s/%s)", method, path, attempt, self.max_retries)
                await asyncio.sleep(self.retry_delay)
                continue

            if status == 429:
                if attempt >= self.max_retries:
                    raise BitgetAPIError(status, None, "rate limited", text)
                wait = self.retry_delay * (2 ** (attempt - 1))
                logger.warning("Rate limited on %s %s; retrying in %.1fs", method, path, wait)
                await asyncio.sleep(wait)
                continue

            return self._parse(status, text)

    @staticmethod
    def _parse(status: int, text: str) -> ApiResponse:
        try:
            payload = json.loads(text) if text else None
        except ValueError:
            payload = None

        if status >= 400 and status != 400:
            code = msg = None
            if isinstance(payload, dict):
                code = payload.get("code")
                msg = payload.get("msg")
            raise BitgetAPIError(status, code, msg, text)
        if not isinstance(payload, dict):
            raise BitgetAPIError(status, None, "unexpected response body", text)

        response = ApiResponse.from_payload(payload)
        if not response.is_success:
            logger.warning("Bitget API returned code=%s msg=%s", response.code, response.msg)
        return response

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> ApiResponse:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(
        self,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> ApiResponse:
        return await self._request("POST", path, body=body, signed=signed)
