"""Per-conversation history paging.

``load_earlier`` is guarded by the ``loading`` flag: a call made while a
fetch is in flight, or after history ran out, returns False without
touching the backend. ``reset`` bumps a generation counter so a page that
arrives after the conversation was closed is thrown away.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from chatsync import config
from chatsync.schemas.chat import ChatMessage
from chatsync.services.timeline import MessageTimeline


logger = logging.getLogger(__name__)

PageFetcher = Callable[[str, int, Optional[str]], Awaitable[Tuple[List[Dict[str, Any]], Optional[str]]]]


@dataclass
class PaginationState:
    has_more: bool = True
    loading: bool = False
    cursor: Optional[str] = None
    generation: int = 0


class PaginationTracker:

    def __init__(self, fetch_page: PageFetcher, page_size: int | None = None) -> None:
        self._fetch_page = fetch_page
        self._page_size = page_size or config.MESSAGES_PER_LOAD
        self._states: Dict[str, PaginationState] = {}
        self._timelines: Dict[str, MessageTimeline] = {}
        self._generation = 0

    @property
    def page_size(self) -> int:
        return self._page_size

    def state(self, conversation_id: str) -> PaginationState:
        state = self._states.get(conversation_id)
        if state is None:
            self._generation += 1
            state = PaginationState(generation=self._generation)
            self._states[conversation_id] = state
        return state

    def timeline(self, conversation_id: str) -> MessageTimeline:
        timeline = self._timelines.get(conversation_id)
        if timeline is None:
            timeline = self._timelines[conversation_id] = MessageTimeline()
        return timeline

    def has_more(self, conversation_id: str) -> bool:
        state = self._states.get(conversation_id)
        return bool(state and state.has_more)

    def _is_stale(self, conversation_id: str, generation: int) -> bool:
        state = self._states.get(conversation_id)
        return state is None or state.generation != generation

    async def seed(self, conversation_id: str) -> List[ChatMessage]:
        """Load the newest page for a freshly opened conversation."""
        state = self.state(conversation_id)
        generation = state.generation
        state.loading = True
        try:
            docs, cursor = await self._fetch_page(conversation_id, self._page_size, None)
        finally:
            if not self._is_stale(conversation_id, generation):
                state.loading = False
        if self._is_stale(conversation_id, generation):
            logger.debug("Discarding first page for closed conversation %s", conversation_id)
            return []
        page = [ChatMessage.from_document(d) for d in docs]
        state.cursor = cursor
        state.has_more = len(page) >= self._page_size and cursor is not None
        self.timeline(conversation_id).upsert(page)
        return page

    async def load_earlier(self, conversation_id: str) -> bool:
        state = self._states.get(conversation_id)
        if state is None or state.loading or not state.has_more:
            logger.debug(
                "load_earlier(%s) ignored: %s",
                conversation_id,
                "already loading" if state and state.loading else "no more messages",
            )
            return False
        if state.cursor is None:
            state.has_more = False
            return False

        generation = state.generation
        state.loading = True
        try:
            docs, cursor = await self._fetch_page(conversation_id, self._page_size, state.cursor)
        finally:
            if not self._is_stale(conversation_id, generation):
                state.loading = False
        if self._is_stale(conversation_id, generation):
            logger.debug("Discarding earlier page for closed conversation %s", conversation_id)
            return False

        page = [ChatMessage.from_document(d) for d in docs]
        if page:
            self.timeline(conversation_id).prepend(page)
            state.cursor = cursor
        state.has_more = len(page) >= self._page_size
        return state.has_more

    def reset(self, conversation_id: str) -> None:
        self._states.pop(conversation_id, None)
        self._timelines.pop(conversation_id, None)

    def reset_all(self) -> None:
        self._states.clear()
        self._timelines.clear()
