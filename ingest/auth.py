import base64
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping


LOGIN_METHOD = "GET"
LOGIN_PATH = "/user/verify"


class InvalidCredentials(ValueError):
    """Raised when an API key, secret or passphrase is missing."""


@dataclass(frozen=True)
class Credentials:
    api_key: str
    secret_key: str
    passphrase: str

    def __repr__(self) -> str:
        return f"Credentials(api_key={self.api_key[:4]}***)"


class Authenticator:
    """Signs Bitget REST requests and private WebSocket logins.

    Signature: base64(HMAC-SHA256(secret, timestamp + METHOD + requestPath + body)).
    Holds no mutable state after construction, so one instance can be shared
    between the REST client and the WebSocket client.
    """

    def __init__(self, credentials: Credentials):
        if credentials is None:
            raise InvalidCredentials("Credentials are required")
        for field_name, label in (
            ("api_key", "API key"),
            ("secret_key", "Secret key"),
            ("passphrase", "Passphrase"),
        ):
            value = getattr(credentials, field_name)
            if not value or not str(value).strip():
                raise InvalidCredentials(f"{label} cannot be empty")
        self._credentials = credentials

    @classmethod
    def from_config(cls, exchange_cfg: Mapping[str, Any]) -> 'Authenticator':
        return cls(
            Credentials(
                api_key=exchange_cfg.get("api_key") or "",
                secret_key=exchange_cfg.get("secret_key") or "",
                passphrase=exchange_cfg.get("passphrase") or "",
            )
        )

    @property
    def credentials(self) -> Credentials:
        return self._credentials

    @staticmethod
    def get_timestamp() -> str:
        return str(int(time.time() * 1000))

    def generate_signature(self, timestamp: str, method: str, request_path: str, body: str = "") -> str:
        message = f"{timestamp}{method.upper()}{request_path}{body or ''}"
        digest = hmac.new(
            self._credentials.secret_key.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def auth_headers(self, method: str, request_path: str, body: str = "") -> Dict[str, str]:
        timestamp = self.get_timestamp()
        return {
            "ACCESS-KEY": self._credentials.api_key,
            "ACCESS-SIGN": self.generate_signature(timestamp, method, request_path, body),
            "ACCESS-TIMESTAMP": timestamp,
            "ACCESS-PASSPHRASE": self._credentials.passphrase,
            "Content-Type": "application/json",
            "locale": "en-US",
        }

    def login_args(self) -> Dict[str, str]:
        timestamp = self.get_timestamp()
        return {
            "apiKey": self._credentials.api_key,
            "passphrase": self._credentials.passphrase,
            "timestamp": timestamp,
            "sign": self.generate_signature(timestamp, LOGIN_METHOD, LOGIN_PATH, ""),
        }
