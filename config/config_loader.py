import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'
CONFIG_PATH_ENV = 'BITGET_TRADER_CONFIG'
REQUIRED_SECTIONS = ('exchange', 'websocket', 'trading')

# ${NAME} or ${NAME:fallback}, anywhere inside a string value
_ENV_REF = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([^}]*))?\}')


def _wrap(value: Any) -> Any:
    if isinstance(value, dict):
        return SectionProxy(value)
    return value


class SectionProxy(Mapping):
    """Read-only view over a nested config section."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(value)

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config:
    """YAML settings for the trader, with ``${VAR}`` references filled from the environment.

    The file comes from ``config_path``, then ``$BITGET_TRADER_CONFIG``, then the
    bundled ``config/config.yaml``. Unset variables without a ``:fallback`` become
    empty strings, so missing credentials are caught by the authenticator rather
    than sent to the exchange as literal placeholders.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"Configuration root in {self.config_path} must be a mapping")
        missing = [name for name in REQUIRED_SECTIONS if not isinstance(raw.get(name), dict)]
        if missing:
            raise RuntimeError(f"Configuration is missing section(s): {', '.join(missing)}")
        return self._resolve_env_vars(raw)

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str) and '${' in node:
            return _ENV_REF.sub(lambda m: os.getenv(m.group(1), m.group(2) or ''), node)
        return node

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            return _wrap(self._data[name])
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
