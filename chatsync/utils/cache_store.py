import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from chatsync import config


logger = logging.getLogger(__name__)


def cache_key(type_tag: str, entity_id: str) -> str:
    return f"{type_tag}:{entity_id}"


class CacheStore:
    """Session-local key-value store with reader-side expiry.

    Values are stored as JSON text, like the device storage they stand in
    for. Nothing sweeps the store; an expired entry is deleted by the read
    that finds it.
    """

    def __init__(self, ttl: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = config.CACHE_TTL if ttl is None else ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}

    def set(self, key: str, value: Any) -> None:
        try:
            payload = json.dumps(value, default=str)
        except (TypeError, ValueError):
            logger.warning("Failed to cache %s: value is not serializable", key)
            return
        self._entries[key] = (self._clock(), payload)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, payload = entry
        if self._clock() - stored_at > self._ttl:
            del self._entries[key]
            return None
        return json.loads(payload)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear_prefix(self, type_tag: str) -> None:
        prefix = f"{type_tag}:"
        for key in [k for k in self._entries if k.startswith(prefix)]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
