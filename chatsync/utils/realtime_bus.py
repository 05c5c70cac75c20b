import logging

from chatsync import config


logger = logging.getLogger(__name__)

PRESENCE_TTL_SECONDS = 60


def presence_key(user_id: str) -> str:
    return f"presence:{user_id}"


class NoopBus:

    enabled = False

    async def set_presence(self, user_id: str, ttl_seconds: int = PRESENCE_TTL_SECONDS) -> None:
        return

    async def clear_presence(self, user_id: str) -> None:
        return

    async def is_online(self, user_id: str) -> bool:
        # no presence store: nobody is known to be online
        return False

    async def close(self) -> None:
        return


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        import redis.asyncio as redis

        self._redis = redis.from_url(url)

    async def set_presence(self, user_id: str, ttl_seconds: int = PRESENCE_TTL_SECONDS) -> None:
        await self._redis.set(presence_key(user_id), "online", ex=ttl_seconds)

    async def clear_presence(self, user_id: str) -> None:
        await self._redis.delete(presence_key(user_id))

    async def is_online(self, user_id: str) -> bool:
        ttl = await self._redis.ttl(presence_key(user_id))
        return bool(ttl and ttl > 0)

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    if not config.REDIS_URL:
        _bus = NoopBus()
    else:
        _bus = RedisBus(config.REDIS_URL)
        logger.info("Presence backed by Redis")
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
    _bus = None
