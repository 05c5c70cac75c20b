"""Per-user chat synchronization.

A ChatSession is created when a user connects and closed when they leave.
It owns every piece of listener and cache state for that user, so nothing
survives the connection and nothing is shared between users.

Events go out through a single async callback as plain dicts:

- ``messages``: merged confirmed + optimistic view of a conversation
- ``poll``: a poll's votes changed
- ``typing``: who else is typing
- ``read_receipts``: last-read timestamps per participant
- ``toast``: feedback for a user action that did not complete
- ``conversations``: the user's chat list with unread counts, once
  ``watch_conversations`` has been called
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from chatsync.models.change import REMOVED, ChangeEvent
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.user_repository import UserRepository
from chatsync.schemas.chat import ChatMessage, PollState
from chatsync.services.chat_service import ChatService, validate_message
from chatsync.services.conversation_directory import ConversationRef
from chatsync.services.listener_manager import CONVERSATIONS, METADATA, MESSAGES, POLLS, ListenerManager
from chatsync.services.optimistic import FAILED, OptimisticOverlay, OverlayEntry
from chatsync.services.pagination import PaginationTracker
from chatsync.services.polls import build_poll
from chatsync.services.typing_indicator import TypingIndicator
from chatsync.services.user_fetcher import UserBatchFetcher
from chatsync.utils.cache_store import CacheStore, cache_key
from chatsync.utils.errors import ChatError, ChatValidationError, NotFoundError, PermissionDeniedError


logger = logging.getLogger(__name__)

EventSink = Callable[[Dict[str, Any]], Awaitable[None]]

SEND_FAILED = "Could not send message."
VOTE_FAILED = "Could not register your vote."
LOAD_FAILED = "Could not load earlier messages."
OPEN_FAILED = "Could not load messages."

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class OpenConversation:
    conversation_id: str
    target: Union[ConversationRef, str]
    overlay: OptimisticOverlay
    typing: TypingIndicator
    typing_users: List[str] = field(default_factory=list)
    last_read: Dict[str, datetime] = field(default_factory=dict)


class ChatSession:

    def __init__(
        self,
        user_id: str,
        chat_service: ChatService,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        user_repo: UserRepository,
        emit: EventSink,
        listeners: Optional[ListenerManager] = None,
        users: Optional[UserBatchFetcher] = None,
        pagination: Optional[PaginationTracker] = None,
        cache: Optional[CacheStore] = None,
        typing_timeout: float | None = None,
    ) -> None:
        self.user_id = user_id
        self._service = chat_service
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._emit = emit
        self._listeners = listeners or ListenerManager(self._open_stream)
        self._users = users or UserBatchFetcher(user_repo)
        self._pagination = pagination or PaginationTracker(message_repo.get_messages_page)
        self._cache = cache or CacheStore()
        self._typing_timeout = typing_timeout
        self._open: Dict[str, OpenConversation] = {}
        self._closed = False
        self._watching = False

    @property
    def users(self) -> UserBatchFetcher:
        return self._users

    @property
    def listeners(self) -> ListenerManager:
        return self._listeners

    @property
    def pagination(self) -> PaginationTracker:
        return self._pagination

    @property
    def open_conversations(self) -> List[str]:
        return list(self._open)

    def is_open(self, conversation_id: str) -> bool:
        return conversation_id in self._open

    async def _open_stream(self, conversation_id: str, channel: str, resume_token: Optional[Dict[str, Any]]):
        if channel == CONVERSATIONS:
            # keyed by the user id
            return await self._conversation_repo.open_list_change_stream(conversation_id, resume_token)
        if channel == METADATA:
            return await self._conversation_repo.open_change_stream(conversation_id, channel, resume_token)
        return await self._message_repo.open_change_stream(conversation_id, channel, resume_token)

    # -- opening and closing -------------------------------------------------

    async def open_direct(self, other_user_id: str) -> str:
        return await self.open_conversation(ConversationRef.direct(self.user_id, other_user_id))

    async def open_crew(self, crew_id: str) -> str:
        return await self.open_conversation(ConversationRef.crew(crew_id))

    async def open_crew_date(self, crew_id: str, day: Union[date, datetime, str]) -> str:
        return await self.open_conversation(ConversationRef.crew_date(crew_id, day))

    async def open_conversation(self, target: Union[ConversationRef, str]) -> str:
        """Start syncing a conversation.

        Membership is checked first; PermissionDeniedError and NotFoundError
        propagate and leave the session unchanged. Once open, load failures
        are reported as a toast and the listeners keep the view current.
        """
        if self._closed:
            raise RuntimeError("session is closed")
        cid = target.id if isinstance(target, ConversationRef) else target
        metadata = await self._service.ensure_conversation(target, self.user_id)
        if cid in self._open:
            # reopening starts pagination over
            await self.close_conversation(cid)

        conv = OpenConversation(
            conversation_id=cid,
            target=target,
            overlay=OptimisticOverlay(cid),
            typing=TypingIndicator(self._typing_writer(cid), timeout=self._typing_timeout),
        )
        self._open[cid] = conv

        cached = self._cache.get(cache_key("messages", cid))
        if cached:
            await self._emit({"type": "messages", "conversation_id": cid, "items": cached, "from_cache": True})

        await self._listeners.attach(cid, self._on_message_changes, MESSAGES)
        await self._listeners.attach(cid, self._on_poll_changes, POLLS)
        await self._listeners.attach(cid, self._on_metadata_changes, METADATA)

        try:
            await self._pagination.seed(cid)
        except PermissionDeniedError:
            logger.debug("No access to messages of %s", cid)
        except ChatError as exc:
            logger.error("Failed to load first page of %s: %s", cid, exc)
            await self._toast(OPEN_FAILED)
        await self._apply_metadata(conv, metadata)
        await self._set_active(cid, True)
        if self._open.get(cid) is conv:
            await self._resolve_senders(cid)
            await self._emit_messages(cid)
        await self._refresh_if_watching()
        return cid

    async def close_conversation(self, conversation_id: str) -> None:
        conv = self._open.pop(conversation_id, None)
        await self._listeners.detach(conversation_id)
        self._pagination.reset(conversation_id)
        if conv is not None:
            await conv.typing.close()
            await self._set_active(conversation_id, False)
            await self._refresh_if_watching()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._watching = False
        for cid in list(self._open):
            await self.close_conversation(cid)
        await self._listeners.detach_all()
        self._pagination.reset_all()
        self._users.clear()
        self._cache.clear()

    # -- chat list -----------------------------------------------------------

    async def watch_conversations(self) -> List[Dict[str, Any]]:
        """Keep the user's chat list live and emit it once right away."""
        if self._closed:
            raise RuntimeError("session is closed")
        self._watching = True
        await self._listeners.attach(self.user_id, self._on_chat_list_changes, CONVERSATIONS)
        return await self.refresh_conversations()

    async def _on_chat_list_changes(self, user_id: str, changes: List[ChangeEvent]) -> None:
        if self._watching:
            await self.refresh_conversations()

    async def _refresh_if_watching(self) -> None:
        if self._watching and not self._closed:
            await self.refresh_conversations()

    async def refresh_conversations(self) -> List[Dict[str, Any]]:
        """Re-read the chat list and emit it with per-chat and total unread counts.

        Conversations open in this session count as read and are left out of
        the total.
        """
        try:
            convos = await self._conversation_repo.list_all_for_user(self.user_id)
        except PermissionDeniedError:
            logger.debug("No access to the chat list of %s", self.user_id)
            return []
        except ChatError as exc:
            logger.warning("Could not load chat list for %s: %s", self.user_id, exc)
            return []

        convos = sorted(convos, key=lambda c: c.get("last_message_at") or _EPOCH, reverse=True)
        await self._users_quietly({uid for c in convos for uid in c.get("participants") or []})
        items = []
        total = 0
        for convo in convos:
            cid = convo["_id"]
            active = cid in self._open
            unread = 0 if active else await self._service.unread_count(cid, self.user_id, convo=convo)
            total += unread
            items.append(self._render_conversation(convo, unread, active))
        await self._emit({"type": "conversations", "items": items, "total_unread": total})
        return items

    def _render_conversation(self, convo: Mapping[str, Any], unread: int, active: bool) -> Dict[str, Any]:
        others = [uid for uid in convo.get("participants") or [] if uid != self.user_id]
        last_message_at = convo.get("last_message_at")
        return {
            "conversation_id": convo["_id"],
            "kind": convo.get("kind"),
            "crew_id": convo.get("crew_id"),
            "members": [
                {"user_id": uid, "name": self._users.display_name(uid), "avatar": self._users.avatar(uid)}
                for uid in others
            ],
            "last_message_preview": convo.get("last_message_preview"),
            "last_message_at": last_message_at.isoformat() if last_message_at else None,
            "last_read": {uid: ts.isoformat() for uid, ts in (convo.get("last_read") or {}).items() if ts},
            "unread": unread,
            "active": active,
        }

    # -- inbound changes -----------------------------------------------------

    async def _on_message_changes(self, conversation_id: str, changes: List[ChangeEvent]) -> None:
        if conversation_id not in self._open:
            return
        timeline = self._pagination.timeline(conversation_id)
        arrived: List[ChatMessage] = []
        changed = False
        for change in changes:
            if change.kind == REMOVED:
                changed = timeline.remove(change.document_id) or changed
            elif change.document is not None:
                arrived.append(ChatMessage.from_document(change.document))
        if arrived:
            timeline.upsert(arrived)
            self._open[conversation_id].overlay.reconcile(arrived)
            changed = True
        if changed:
            await self._resolve_senders(conversation_id)
            await self._emit_messages(conversation_id)

    async def _on_poll_changes(self, conversation_id: str, changes: List[ChangeEvent]) -> None:
        if conversation_id not in self._open:
            return
        timeline = self._pagination.timeline(conversation_id)
        for change in changes:
            if change.document is None or not change.document.get("poll"):
                continue
            message = ChatMessage.from_document(change.document)
            if message.id in timeline:
                timeline.upsert([message])
            await self._emit_poll(conversation_id, message.id, message.poll)

    async def _on_metadata_changes(self, conversation_id: str, changes: List[ChangeEvent]) -> None:
        conv = self._open.get(conversation_id)
        if conv is None:
            return
        for change in changes:
            if change.document is not None:
                await self._apply_metadata(conv, change.document)

    async def _apply_metadata(self, conv: OpenConversation, doc: Mapping[str, Any]) -> None:
        typing = doc.get("typing") or {}
        typing_users = sorted(
            uid for uid, state in typing.items() if uid != self.user_id and (state or {}).get("is_typing")
        )
        if typing_users != conv.typing_users:
            conv.typing_users = typing_users
            await self._users_quietly(typing_users)
            await self._emit(
                {
                    "type": "typing",
                    "conversation_id": conv.conversation_id,
                    "user_ids": typing_users,
                    "names": [self._users.display_name(uid) for uid in typing_users],
                }
            )
        last_read = dict(doc.get("last_read") or {})
        if last_read != conv.last_read:
            conv.last_read = last_read
            await self._emit(
                {
                    "type": "read_receipts",
                    "conversation_id": conv.conversation_id,
                    "last_read": {uid: ts.isoformat() for uid, ts in last_read.items() if ts},
                }
            )

    # -- outbound actions ----------------------------------------------------

    def _require_open(self, conversation_id: str) -> OpenConversation:
        conv = self._open.get(conversation_id)
        if conv is None:
            raise NotFoundError(f"Conversation {conversation_id} is not open")
        return conv

    def _typing_writer(self, conversation_id: str):
        async def write(is_typing: bool) -> None:
            await self._service.set_typing(conversation_id, self.user_id, is_typing)

        return write

    async def text_changed(self, conversation_id: str, text: str) -> None:
        await self._require_open(conversation_id).typing.on_text_changed(text)

    async def send_message(
        self, conversation_id: str, text: Optional[str], image_url: Optional[str] = None
    ) -> Optional[OverlayEntry]:
        conv = self._require_open(conversation_id)
        try:
            text = validate_message(text, image_url)
        except ChatValidationError as exc:
            await self._toast(str(exc))
            return None
        entry = conv.overlay.add_pending(
            self.user_id, text=text, image_url=image_url, sender_name=self._users.display_name(self.user_id)
        )
        await conv.typing.on_message_sent()
        await self._emit_messages(conversation_id)
        await self._deliver(conv, entry)
        return entry

    async def send_poll(self, conversation_id: str, question: str, options: Sequence[str]) -> Optional[OverlayEntry]:
        conv = self._require_open(conversation_id)
        try:
            poll = build_poll(question, options)
        except ChatValidationError as exc:
            await self._toast(str(exc))
            return None
        entry = conv.overlay.add_pending(self.user_id, poll=PollState(**poll))
        await self._emit_messages(conversation_id)
        await self._deliver(conv, entry)
        return entry

    async def retry_message(self, conversation_id: str, client_message_id: str) -> bool:
        conv = self._require_open(conversation_id)
        entry = conv.overlay.get(client_message_id)
        if entry is None or entry.status != FAILED:
            return False
        conv.overlay.mark_pending(client_message_id)
        await self._emit_messages(conversation_id)
        await self._deliver(conv, entry)
        return True

    async def discard_message(self, conversation_id: str, client_message_id: str) -> bool:
        conv = self._require_open(conversation_id)
        if conv.overlay.remove(client_message_id) is None:
            return False
        await self._emit_messages(conversation_id)
        return True

    async def _deliver(self, conv: OpenConversation, entry: OverlayEntry) -> None:
        draft = entry.message
        try:
            if draft.poll is not None:
                confirmed = await self._service.create_poll(
                    conv.target, self.user_id, draft.poll.question, draft.poll.options, draft.client_message_id
                )
            else:
                confirmed = await self._service.send_message(
                    conv.target, self.user_id, draft.text, draft.image_url, draft.client_message_id
                )
        except PermissionDeniedError as exc:
            logger.debug("Send to %s not permitted: %s", conv.conversation_id, exc)
            conv.overlay.mark_failed(draft.client_message_id, exc.code)
        except ChatError as exc:
            logger.error("Error sending message to %s: %s", conv.conversation_id, exc)
            conv.overlay.mark_failed(draft.client_message_id, exc.code)
            await self._toast(SEND_FAILED)
        except Exception as exc:
            logger.exception("Unexpected error sending message to %s", conv.conversation_id)
            conv.overlay.mark_failed(draft.client_message_id, type(exc).__name__)
            await self._toast(SEND_FAILED)
        else:
            if self._open.get(conv.conversation_id) is not conv:
                return
            self._pagination.timeline(conv.conversation_id).upsert([confirmed])
            conv.overlay.reconcile([confirmed])
        if self._open.get(conv.conversation_id) is conv:
            await self._emit_messages(conv.conversation_id)

    async def vote(self, conversation_id: str, message_id: str, option_index: int) -> Optional[PollState]:
        self._require_open(conversation_id)
        timeline = self._pagination.timeline(conversation_id)
        local = timeline.get(message_id)
        if local is not None and local.poll is not None:
            if not 0 <= option_index < len(local.poll.options):
                await self._toast("Invalid poll option.")
                return None
        try:
            poll = await self._service.vote(conversation_id, message_id, option_index, self.user_id)
        except PermissionDeniedError:
            logger.debug("Vote on %s not permitted", message_id)
            return None
        except ChatValidationError as exc:
            await self._toast(str(exc))
            return None
        except ChatError as exc:
            logger.error("Error voting on %s: %s", message_id, exc)
            await self._toast(VOTE_FAILED)
            return None
        current = timeline.get(message_id)
        if current is not None:
            timeline.upsert([current.model_copy(update={"poll": poll})])
        if conversation_id in self._open:
            await self._emit_poll(conversation_id, message_id, poll)
        return poll

    async def load_earlier(self, conversation_id: str) -> bool:
        if conversation_id not in self._open:
            return False
        try:
            has_more = await self._pagination.load_earlier(conversation_id)
        except PermissionDeniedError:
            return False
        except ChatError as exc:
            logger.error("Error loading earlier messages for %s: %s", conversation_id, exc)
            await self._toast(LOAD_FAILED)
            return False
        if conversation_id in self._open:
            await self._resolve_senders(conversation_id)
            await self._emit_messages(conversation_id)
        return has_more

    async def mark_read(self, conversation_id: str) -> bool:
        try:
            # membership may have changed since open
            await self._service.ensure_conversation(conversation_id, self.user_id)
            await self._service.mark_read(conversation_id, self.user_id)
            return True
        except PermissionDeniedError:
            logger.debug("%s may not mark %s as read", self.user_id, conversation_id)
            return False
        except ChatError as exc:
            logger.warning("Error updating last read for %s: %s", conversation_id, exc)
            return False

    # -- views ---------------------------------------------------------------

    def view(self, conversation_id: str) -> List[OverlayEntry]:
        conv = self._require_open(conversation_id)
        return conv.overlay.merge(self._pagination.timeline(conversation_id).messages)

    def _render(self, entry: OverlayEntry) -> Dict[str, Any]:
        data = entry.to_dict()
        sender = entry.message.sender_id
        data["sender_name"] = self._users.display_name(sender)
        data["sender_avatar"] = self._users.avatar(sender)
        return data

    async def _emit_messages(self, conversation_id: str) -> None:
        items = [self._render(e) for e in self.view(conversation_id)]
        self._cache.set(cache_key("messages", conversation_id), [i for i in items if i["status"] == "confirmed"])
        await self._emit(
            {
                "type": "messages",
                "conversation_id": conversation_id,
                "items": items,
                "has_more": self._pagination.has_more(conversation_id),
            }
        )

    async def _emit_poll(self, conversation_id: str, message_id: str, poll: Optional[PollState]) -> None:
        await self._emit(
            {
                "type": "poll",
                "conversation_id": conversation_id,
                "message_id": message_id,
                "poll": poll.model_dump() if poll else None,
            }
        )

    async def _toast(self, text: str, title: str = "Error", level: str = "error") -> None:
        await self._emit({"type": "toast", "level": level, "title": title, "text": text})

    async def _set_active(self, conversation_id: str, active: bool) -> None:
        try:
            await self._user_repo.set_active_chat(self.user_id, conversation_id, active)
        except ChatError as exc:
            logger.warning("Could not update active chats for %s: %s", self.user_id, exc)

    async def _users_quietly(self, user_ids) -> None:
        try:
            await self._users.fetch_batch(user_ids)
        except ChatError as exc:
            logger.warning("Could not resolve user details: %s", exc)

    async def _resolve_senders(self, conversation_id: str) -> None:
        timeline = self._pagination.timeline(conversation_id)
        await self._users_quietly({m.sender_id for m in timeline.messages} | {self.user_id})
