import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from api.metrics import metrics


logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]


def subscription_key(channel: str, inst_id: Optional[str] = None) -> str:
    """Composite key under which inbound frames for a stream are dispatched."""
    if inst_id:
        return f"{channel}_{inst_id}"
    return channel


class ChannelRegistry:
    """Map subscription keys to subscriber callbacks.

    Shared between the socket read loops (dispatch) and application code
    (add/remove), so every operation takes the internal lock. Callbacks are
    invoked on a snapshot taken under the lock and run outside it, which lets a
    callback add or remove subscriptions while it is being dispatched.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._subscriptions: Dict[str, List[Callback]] = {}

    def add_subscription(self, key: str, callback: Callback) -> None:
        if not callable(callback):
            raise TypeError("callback must be callable")
        with self._lock:
            self._subscriptions.setdefault(key, []).append(callback)

    def remove_subscription(self, key: str) -> None:
        with self._lock:
            self._subscriptions.pop(key, None)

    def remove_callback(self, key: str, callback: Callback) -> bool:
        with self._lock:
            callbacks = self._subscriptions.get(key)
            if not callbacks or callback not in callbacks:
                return False
            callbacks.remove(callback)
            if not callbacks:
                del self._subscriptions[key]
            return True

    def dispatch(self, key: str, message: Any) -> int:
        with self._lock:
            callbacks = list(self._subscriptions.get(key, ()))

        if not callbacks:
            logger.debug("No subscription found for key %s", key)
            return 0

        for callback in callbacks:
            try:
                callback(message)
            except Exception:
                logger.exception("Error in subscription callback for %s", key)
                metrics.record_callback_error(key)
        return len(callbacks)

    def callback_count(self, key: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(key, ()))

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._subscriptions.keys())

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()
