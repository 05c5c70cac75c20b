from typing import Dict, Iterable, List, Optional

from chatsync.schemas.chat import ChatMessage


def _order_key(message: ChatMessage):
    return message.created_at, message.id


class MessageTimeline:
    """Confirmed messages of one conversation, kept in server order."""

    def __init__(self) -> None:
        self._by_id: Dict[str, ChatMessage] = {}
        self._ordered: List[ChatMessage] = []

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._by_id

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._ordered)

    def get(self, message_id: str) -> Optional[ChatMessage]:
        return self._by_id.get(message_id)

    def oldest(self) -> Optional[ChatMessage]:
        return self._ordered[0] if self._ordered else None

    def upsert(self, messages: Iterable[ChatMessage]) -> None:
        changed = False
        for message in messages:
            self._by_id[message.id] = message
            changed = True
        if changed:
            self._ordered = sorted(self._by_id.values(), key=_order_key)

    def prepend(self, page: Iterable[ChatMessage]) -> None:
        # older pages can overlap the live window; upsert dedupes by id
        self.upsert(page)

    def remove(self, message_id: str) -> bool:
        if self._by_id.pop(message_id, None) is None:
            return False
        self._ordered = [m for m in self._ordered if m.id != message_id]
        return True

    def clear(self) -> None:
        self._by_id.clear()
        self._ordered = []
