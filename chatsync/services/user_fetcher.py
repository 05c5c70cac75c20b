"""Batched, cached user profile lookups."""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from chatsync import config
from chatsync.repositories.user_repository import UserRepository
from chatsync.schemas.user import UNKNOWN_USER_NAME, UserProfile
from chatsync.utils.errors import ChatError


logger = logging.getLogger(__name__)


def chunked(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class UserBatchFetcher:
    """Resolves profiles for sets of user ids.

    N uncached ids cost ceil(N / batch_limit) queries. Resolved profiles land
    in a cache shared by every conversation of the session; ids already in
    it are never fetched again. Two callers asking for the same uncached set
    at the same time share one fetch.
    """

    def __init__(
        self,
        user_repo: UserRepository,
        batch_limit: int | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self._user_repo = user_repo
        self._batch_limit = batch_limit or config.USER_BATCH_LIMIT
        self._max_retries = config.USER_FETCH_MAX_RETRIES if max_retries is None else max_retries
        self._retry_delay = config.USER_FETCH_RETRY_DELAY if retry_delay is None else retry_delay
        self._cache: Dict[str, UserProfile] = {}
        self._pending: Dict[str, asyncio.Future] = {}

    @property
    def cache(self) -> Dict[str, UserProfile]:
        return self._cache

    def cached(self, user_id: str) -> Optional[UserProfile]:
        return self._cache.get(user_id)

    def display_name(self, user_id: str) -> str:
        profile = self._cache.get(user_id)
        return profile.display_name if profile else UNKNOWN_USER_NAME

    def avatar(self, user_id: str) -> Optional[str]:
        profile = self._cache.get(user_id)
        return profile.photo_url if profile else None

    async def fetch_batch(self, user_ids: Iterable[str]) -> List[UserProfile]:
        wanted = [uid for uid in dict.fromkeys(user_ids) if uid]
        uncached = sorted(uid for uid in wanted if uid not in self._cache)
        if uncached:
            batch_key = ",".join(uncached)
            pending = self._pending.get(batch_key)
            if pending is not None:
                await asyncio.shield(pending)
            else:
                future = asyncio.get_running_loop().create_future()
                self._pending[batch_key] = future
                try:
                    await self._fetch_uncached(uncached)
                    future.set_result(None)
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as exc:
                    future.set_exception(exc)
                    # the waiters re-raise; keep the loop from warning about an unretrieved error
                    future.exception()
                    raise
                finally:
                    # clear() may have dropped or replaced this entry meanwhile
                    if self._pending.get(batch_key) is future:
                        del self._pending[batch_key]
        return [self._cache[uid] for uid in wanted if uid in self._cache]

    async def _fetch_uncached(self, uncached: List[str]) -> None:
        for chunk in chunked(uncached, self._batch_limit):
            docs = await self._user_repo.get_users_by_ids(chunk)
            for doc in docs:
                profile = UserProfile.from_document(doc)
                self._cache[profile.uid] = profile
        logger.debug("Fetched %d user profiles in %d batch(es)", len(uncached), -(-len(uncached) // self._batch_limit))

    async def fetch_one(self, user_id: str) -> UserProfile:
        attempt = 0
        while True:
            try:
                results = await self.fetch_batch([user_id])
                if results:
                    return results[0]
                raise ChatError(f"User {user_id} not found")
            except ChatError as exc:
                if attempt >= self._max_retries:
                    logger.warning("Failed to fetch user %s after %d retries: %s", user_id, self._max_retries, exc)
                    return UserProfile.placeholder(user_id)
                attempt += 1
                await asyncio.sleep(self._retry_delay)

    def clear(self) -> None:
        self._cache.clear()
        self._pending.clear()
