"""Optimistic sends layered over the confirmed timeline.

Every locally created message gets a ``client_message_id`` that travels
with the write and is stored on the confirmed record. Reconciliation is by
that id only: two messages with the same text from the same sender are two
messages.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Literal, Optional

from chatsync.schemas.chat import ChatMessage, PollState


EntryStatus = Literal["pending", "failed", "confirmed"]

PENDING: EntryStatus = "pending"
FAILED: EntryStatus = "failed"
CONFIRMED: EntryStatus = "confirmed"


def new_client_message_id() -> str:
    return uuid.uuid4().hex


@dataclass
class OverlayEntry:
    status: EntryStatus
    message: ChatMessage
    error: Optional[str] = None

    @property
    def client_message_id(self) -> Optional[str]:
        return self.message.client_message_id

    def to_dict(self) -> dict:
        data = self.message.model_dump(mode="json")
        data["status"] = self.status
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class OptimisticOverlay:
    conversation_id: str
    _entries: Dict[str, OverlayEntry] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, client_message_id: str) -> Optional[OverlayEntry]:
        return self._entries.get(client_message_id)

    @property
    def entries(self) -> List[OverlayEntry]:
        return list(self._entries.values())

    def add_pending(
        self,
        sender_id: str,
        text: Optional[str] = None,
        image_url: Optional[str] = None,
        poll: Optional[PollState] = None,
        sender_name: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> OverlayEntry:
        cid = client_message_id or new_client_message_id()
        message = ChatMessage(
            id=f"optimistic_{cid}",
            conversation_id=self.conversation_id,
            sender_id=sender_id,
            text=text,
            image_url=image_url,
            created_at=datetime.now(timezone.utc),
            client_message_id=cid,
            poll=poll,
            sender_name=sender_name,
        )
        entry = OverlayEntry(PENDING, message)
        self._entries[cid] = entry
        return entry

    def mark_pending(self, client_message_id: str) -> Optional[OverlayEntry]:
        entry = self._entries.get(client_message_id)
        if entry is not None:
            entry.status = PENDING
            entry.error = None
        return entry

    def mark_failed(self, client_message_id: str, reason: str) -> Optional[OverlayEntry]:
        entry = self._entries.get(client_message_id)
        if entry is not None:
            entry.status = FAILED
            entry.error = reason
        return entry

    def remove(self, client_message_id: str) -> Optional[OverlayEntry]:
        return self._entries.pop(client_message_id, None)

    def confirm(self, client_message_id: str) -> Optional[OverlayEntry]:
        return self.remove(client_message_id)

    def reconcile(self, confirmed: Iterable[ChatMessage]) -> int:
        """Drop local entries whose confirmed copy is present. Returns how many."""
        seen = {m.client_message_id for m in confirmed if m.client_message_id}
        dropped = [cid for cid in self._entries if cid in seen]
        for cid in dropped:
            del self._entries[cid]
        return len(dropped)

    def merge(self, confirmed: Iterable[ChatMessage]) -> List[OverlayEntry]:
        confirmed = list(confirmed)
        self.reconcile(confirmed)
        view = [OverlayEntry(CONFIRMED, m) for m in confirmed]
        view.extend(self._entries.values())
        view.sort(key=lambda e: (e.message.created_at, e.status != CONFIRMED, e.message.id))
        return view

    def clear(self) -> None:
        self._entries.clear()
