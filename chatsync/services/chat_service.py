import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from chatsync import config
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.device_repository import DeviceRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.user_repository import UserRepository
from chatsync.schemas.chat import ChatMessage, PollState
from chatsync.services.conversation_directory import CREW, CREW_DATE, DIRECT, ConversationRef
from chatsync.services.polls import build_poll
from chatsync.services.user_fetcher import chunked
from chatsync.utils.errors import ChatValidationError, NotFoundError, PermissionDeniedError, TransientError
from chatsync.utils.notifications import get_push
from chatsync.utils.realtime_bus import get_bus


logger = logging.getLogger(__name__)

NOTIFICATION_CATEGORIES = {
    DIRECT: "direct_message",
    CREW: "crew_chat_message",
    CREW_DATE: "crew_date_chat_message",
}


def validate_message(text: Optional[str], image_url: Optional[str] = None) -> Optional[str]:
    text = text.strip() if text else None
    if not text and not image_url:
        raise ChatValidationError("Message cannot be empty")
    if text and len(text) > config.MAX_MESSAGE_LENGTH:
        raise ChatValidationError("Message too long")
    return text


def should_send_notification(settings: Optional[Mapping[str, Any]], category: str) -> bool:
    # categories are opt-out
    if not settings:
        return True
    return settings.get(category, True) is not False


def notification_body(sender_name: str, message: ChatMessage) -> str:
    if message.image_url:
        return f"{sender_name} sent an image"
    if message.poll:
        return f"{sender_name} created a poll: {message.poll.question}"
    return f"{sender_name}: {message.text or ''}"


def message_preview(message: ChatMessage) -> str:
    if message.poll:
        return f"Poll: {message.poll.question}"[:200]
    if message.text:
        return message.text[:200]
    return "Image"


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        user_repo: Optional[UserRepository] = None,
        device_repo: Optional[DeviceRepository] = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._device_repo = device_repo

    async def ensure_conversation(self, ref: Union[ConversationRef, str], user_id: str) -> Dict[str, Any]:
        if isinstance(ref, str):
            convo = await self._conversation_repo.get(ref)
        elif ref.kind == DIRECT:
            if user_id not in ref.participants:
                raise PermissionDeniedError(f"{user_id} is not part of {ref.id}")
            convo = await self._conversation_repo.get_or_create(ref.id, DIRECT, ref.participants)
        else:
            # crew chats only come into existence through create_group
            convo = await self._conversation_repo.get(ref.id)
        if user_id not in (convo.get("participants") or []):
            raise PermissionDeniedError(f"{user_id} is not a member of {convo['_id']}")
        return convo

    async def create_group(
        self, ref: ConversationRef, creator_id: str, participants: Sequence[str] = ()
    ) -> Dict[str, Any]:
        """Create a crew or crew-date conversation, or add members to one.

        Whoever creates the conversation becomes its first member. Once it
        exists, only current members may add people to it.
        """
        if ref.kind == DIRECT:
            raise ChatValidationError("Direct conversations are created from their two participants")
        if not creator_id:
            raise ChatValidationError("A group conversation needs a creator")
        members = [uid for uid in dict.fromkeys([creator_id, *participants]) if uid]
        created = await self._conversation_repo.create(ref.id, ref.kind, members, crew_id=ref.crew_id)
        if created is not None:
            logger.info("Conversation %s created by %s", ref.id, creator_id)
            return created
        existing = await self._conversation_repo.get(ref.id)
        if creator_id not in (existing.get("participants") or []):
            raise PermissionDeniedError(f"{creator_id} is not a member of {ref.id}")
        return await self._conversation_repo.get_or_create(ref.id, ref.kind, members, crew_id=ref.crew_id)

    async def send_message(
        self,
        ref: Union[ConversationRef, str],
        sender_id: str,
        text: Optional[str] = None,
        image_url: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> ChatMessage:
        text = validate_message(text, image_url)
        convo = await self.ensure_conversation(ref, sender_id)
        saved = await self._message_repo.save_message(
            conversation_id=convo["_id"],
            sender_id=sender_id,
            text=text,
            image_url=image_url,
            client_message_id=client_message_id,
        )
        return await self._after_save(convo, saved)

    async def create_poll(
        self,
        ref: Union[ConversationRef, str],
        sender_id: str,
        question: str,
        options: Sequence[str],
        client_message_id: Optional[str] = None,
    ) -> ChatMessage:
        poll = build_poll(question, options)
        convo = await self.ensure_conversation(ref, sender_id)
        saved = await self._message_repo.save_message(
            conversation_id=convo["_id"],
            sender_id=sender_id,
            client_message_id=client_message_id,
            poll=poll,
        )
        return await self._after_save(convo, saved)

    async def _after_save(self, convo: Dict[str, Any], saved: Dict[str, Any]) -> ChatMessage:
        message = ChatMessage.from_document(saved)
        await self._conversation_repo.update_on_new_message(convo["_id"], message_preview(message))
        logger.info("Message %s sent in %s by %s", message.id, convo["_id"], message.sender_id)
        try:
            await self.notify_recipients(convo, message)
        except Exception:
            # the message is stored; a failed push must not fail the send
            logger.exception("Push dispatch failed for message %s", message.id)
        return message

    async def vote(self, conversation_id: str, message_id: str, option_index: int, user_id: str) -> PollState:
        poll = await self._message_repo.vote_on_poll(conversation_id, message_id, option_index, user_id)
        return PollState(**poll)

    async def mark_read(self, conversation_id: str, user_id: str) -> datetime:
        return await self._conversation_repo.mark_read(conversation_id, user_id)

    async def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        await self._conversation_repo.set_typing(conversation_id, user_id, is_typing)

    async def get_history(
        self, conversation_id: str, limit: int = 20, cursor: Optional[str] = None
    ) -> Tuple[List[ChatMessage], Optional[str]]:
        docs, next_cursor = await self._message_repo.get_messages_page(conversation_id, limit=limit, cursor=cursor)
        return [ChatMessage.from_document(d) for d in docs], next_cursor

    async def list_conversations(self, user_id: str, limit: int = 20, cursor: str | None = None):
        return await self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor)

    async def add_member(self, conversation_id: str, user_id: str) -> None:
        await self._conversation_repo.add_member(conversation_id, user_id)

    async def remove_member(self, conversation_id: str, user_id: str) -> bool:
        return await self._conversation_repo.remove_member(conversation_id, user_id)

    async def unread_count(self, conversation_id: str, user_id: str, convo: Optional[Mapping[str, Any]] = None) -> int:
        if not user_id:
            return 0
        try:
            if convo is None:
                convo = await self._conversation_repo.get(conversation_id)
            last_read = (convo.get("last_read") or {}).get(user_id)
            if not last_read:
                return 0
            return await self._message_repo.count_since(conversation_id, last_read)
        except (PermissionDeniedError, NotFoundError):
            return 0
        except TransientError as exc:
            logger.warning("Unread count for %s unavailable: %s", conversation_id, exc)
            return 0
        except Exception:
            logger.exception("Error fetching unread count for %s", conversation_id)
            return 0

    async def total_unread(self, user_id: str, active_conversations: Iterable[str] = ()) -> int:
        active = set(active_conversations)
        try:
            conversations = await self._conversation_repo.list_all_for_user(user_id)
        except (PermissionDeniedError, TransientError) as exc:
            logger.warning("Could not list conversations for %s: %s", user_id, exc)
            return 0
        total = 0
        for convo in conversations:
            if convo["_id"] in active:
                continue
            total += await self.unread_count(convo["_id"], user_id, convo=convo)
        return total

    async def notify_recipients(self, convo: Mapping[str, Any], message: ChatMessage) -> int:
        if self._user_repo is None or self._device_repo is None:
            return 0
        recipient_ids = [uid for uid in convo.get("participants") or [] if uid != message.sender_id]
        if not recipient_ids:
            return 0
        push = await get_push()
        if not getattr(push, "enabled", False):
            return 0

        sender = await self._user_repo.get_user_by_id(message.sender_id)
        sender_name = (sender or {}).get("display_name") or "Someone"
        category = NOTIFICATION_CATEGORIES.get(convo.get("kind", DIRECT), "direct_message")
        last_read = convo.get("last_read") or {}
        bus = await get_bus()

        eligible: List[str] = []
        for chunk in chunked(recipient_ids, config.USER_BATCH_LIMIT):
            for user in await self._user_repo.get_users_by_ids(chunk):
                uid = user["_id"]
                if not should_send_notification(user.get("notification_settings"), category):
                    continue
                read_at = last_read.get(uid)
                if read_at and read_at > message.created_at:
                    continue
                viewing = convo["_id"] in (user.get("active_chats") or [])
                if viewing and (user.get("is_online") or await bus.is_online(uid)):
                    continue
                eligible.append(uid)
        if not eligible:
            return 0

        devices = await self._device_repo.get_tokens(eligible, platform="fcm")
        tokens = [d["token"] for d in devices]
        if not tokens:
            return 0
        title = sender_name if convo.get("kind", DIRECT) == DIRECT else "New crew message"
        data = {"conversation_id": convo["_id"], "message_id": message.id, "sender_id": message.sender_id}
        sent = await push.send_fcm(tokens, title, notification_body(sender_name, message), data)
        logger.info("Sent %d push notification(s) for message %s", sent, message.id)
        return sent
