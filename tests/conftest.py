import asyncio
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from chatsync.models.change import ADDED, MODIFIED, ChangeEvent
from chatsync.services.polls import apply_vote
from chatsync.utils.errors import NotFoundError, PermissionDeniedError, TransientError


BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class MockStream:
    def __init__(self):
        self.queue = asyncio.Queue()
        self.closed = False
        self._token = None

    @property
    def resume_token(self):
        return self._token

    def push(self, *changes):
        self.queue.put_nowait(list(changes))

    def fail(self, exc):
        self.queue.put_nowait(exc)

    async def next_batch(self):
        item = await self.queue.get()
        if isinstance(item, BaseException):
            raise item
        self._token = {"_data": f"token-{id(item)}"}
        return item

    async def close(self):
        self.closed = True


class StreamRegistry:
    """Hands out MockStreams and remembers every open call."""

    def __init__(self):
        self.calls = []
        self.streams = {}
        self.errors = []

    async def open(self, conversation_id, channel, resume_token=None):
        self.calls.append((conversation_id, channel, resume_token))
        if self.errors:
            raise self.errors.pop(0)
        stream = MockStream()
        self.streams[(conversation_id, channel)] = stream
        return stream


class MockMessageRepository:
    def __init__(self):
        self.docs = []
        self.page_calls = []
        self.save_calls = []
        self.save_errors = []
        self.page_errors = []
        self.registry = StreamRegistry()
        self._ids = itertools.count(1)

    def add(self, conversation_id, sender_id, text="hi", poll=None, client_message_id=None):
        n = next(self._ids)
        doc = {
            "_id": f"m{n:04d}",
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "text": text,
            "image_url": None,
            "created_at": BASE_TIME + timedelta(seconds=n),
            "client_message_id": client_message_id,
            "poll": poll,
        }
        self.docs.append(doc)
        return doc

    async def save_message(self, conversation_id, sender_id, text=None, image_url=None, client_message_id=None, poll=None):
        self.save_calls.append((conversation_id, sender_id, text, client_message_id))
        if self.save_errors:
            raise self.save_errors.pop(0)
        for doc in self.docs:
            if client_message_id and doc["client_message_id"] == client_message_id and doc["sender_id"] == sender_id:
                return dict(doc)
        doc = self.add(conversation_id, sender_id, text=text, poll=poll, client_message_id=client_message_id)
        doc["image_url"] = image_url
        return dict(doc)

    async def get_messages_page(self, conversation_id, limit=20, cursor=None):
        self.page_calls.append((conversation_id, limit, cursor))
        if self.page_errors:
            raise self.page_errors.pop(0)
        docs = sorted(
            (d for d in self.docs if d["conversation_id"] == conversation_id),
            key=lambda d: (d["created_at"], d["_id"]),
        )
        if cursor:
            docs = [d for d in docs if d["_id"] < cursor]
        page = docs[-limit:]
        next_cursor = page[0]["_id"] if page else None
        return [dict(d) for d in page], next_cursor

    async def count_since(self, conversation_id, since):
        return sum(1 for d in self.docs if d["conversation_id"] == conversation_id and d["created_at"] > since)

    async def vote_on_poll(self, conversation_id, message_id, option_index, user_id):
        for doc in self.docs:
            if doc["_id"] == message_id and doc["conversation_id"] == conversation_id and doc["poll"]:
                doc["poll"] = apply_vote(doc["poll"], option_index, user_id)
                return doc["poll"]
        raise NotFoundError(f"Poll message {message_id} not found")

    async def open_change_stream(self, conversation_id, channel="messages", resume_token=None):
        return await self.registry.open(conversation_id, channel, resume_token)

    def stream(self, conversation_id, channel="messages"):
        return self.registry.streams[(conversation_id, channel)]


class MockConversationRepository:
    def __init__(self):
        self.convos = {}
        self.typing_writes = []
        self.registry = StreamRegistry()

    def add(self, conversation_id, participants, kind="direct", **extra):
        doc = {
            "_id": conversation_id,
            "kind": kind,
            "participants": list(participants),
            "last_read": {},
            "typing": {},
            "has_messages": False,
            "last_message_at": BASE_TIME,
            "last_message_preview": None,
        }
        doc.update(extra)
        self.convos[conversation_id] = doc
        return doc

    async def get(self, conversation_id):
        doc = self.convos.get(conversation_id)
        if doc is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return doc

    async def create(self, conversation_id, kind, participants, crew_id=None):
        if conversation_id in self.convos:
            return None
        return self.add(conversation_id, participants, kind=kind, crew_id=crew_id)

    async def get_or_create(self, conversation_id, kind, participants, crew_id=None):
        doc = self.convos.get(conversation_id)
        if doc is None:
            doc = self.add(conversation_id, [], kind=kind, crew_id=crew_id)
        for uid in participants:
            if uid not in doc["participants"]:
                doc["participants"].append(uid)
        return doc

    async def update_on_new_message(self, conversation_id, preview):
        doc = self.convos[conversation_id]
        doc["has_messages"] = True
        doc["last_message_preview"] = preview

    async def mark_read(self, conversation_id, user_id):
        now = datetime.now(timezone.utc)
        self.convos.setdefault(conversation_id, {"_id": conversation_id, "participants": []})
        self.convos[conversation_id].setdefault("last_read", {})[user_id] = now
        return now

    async def set_typing(self, conversation_id, user_id, is_typing):
        self.typing_writes.append((conversation_id, user_id, is_typing))

    async def add_member(self, conversation_id, user_id):
        doc = self.convos.get(conversation_id) or self.add(conversation_id, [], kind="crew")
        if user_id not in doc["participants"]:
            doc["participants"].append(user_id)

    async def remove_member(self, conversation_id, user_id):
        doc = self.convos.get(conversation_id)
        if not doc or user_id not in doc["participants"]:
            return False
        doc["participants"].remove(user_id)
        return True

    async def list_for_user(self, user_id, limit=20, cursor=None, with_messages_only=True):
        items = [c for c in self.convos.values() if user_id in c["participants"]]
        if with_messages_only:
            items = [c for c in items if c.get("has_messages")]
        return items[:limit], None

    async def list_all_for_user(self, user_id):
        return [c for c in self.convos.values() if user_id in c["participants"] and c.get("has_messages")]

    async def open_change_stream(self, conversation_id, channel="metadata", resume_token=None):
        return await self.registry.open(conversation_id, channel, resume_token)

    async def open_list_change_stream(self, user_id, resume_token=None):
        return await self.registry.open(user_id, "conversations", resume_token)


class MockUserRepository:
    def __init__(self, users=None):
        self.users = {u["_id"]: u for u in users or []}
        self.batch_calls = []
        self.errors = []
        self.active_chats = []
        self.online = {}

    def add(self, uid, name=None, **extra):
        self.users[uid] = {"_id": uid, "display_name": name or uid.title(), **extra}
        return self.users[uid]

    async def get_user_by_id(self, user_id):
        return self.users.get(user_id)

    async def get_users_by_ids(self, user_ids):
        self.batch_calls.append(list(user_ids))
        if self.errors:
            raise self.errors.pop(0)
        return [self.users[u] for u in user_ids if u in self.users]

    async def set_online(self, user_id, is_online):
        self.online[user_id] = is_online

    async def set_active_chat(self, user_id, conversation_id, active):
        self.active_chats.append((user_id, conversation_id, active))


class MockDeviceRepository:
    def __init__(self):
        self.devices = []

    async def register(self, user_id, platform, token):
        doc = {"user_id": user_id, "platform": platform, "token": token}
        if doc not in self.devices:
            self.devices.append(doc)
        return doc

    async def get_tokens(self, user_ids, platform=None):
        return [d for d in self.devices if d["user_id"] in user_ids and (platform is None or d["platform"] == platform)]


def added(doc):
    return ChangeEvent(ADDED, doc["_id"], dict(doc))


def poll_update(doc):
    return ChangeEvent(MODIFIED, doc["_id"], dict(doc), frozenset({"poll.votes", "poll.total_votes"}))


def permission_denied():
    return PermissionDeniedError("not authorized")


def unavailable():
    return TransientError("connection reset")


async def settle(rounds=5):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def message_repo():
    return MockMessageRepository()


@pytest.fixture
def conversation_repo():
    return MockConversationRepository()


@pytest.fixture
def user_repo():
    repo = MockUserRepository()
    repo.add("alice", "Alice")
    repo.add("bob", "Bob")
    return repo


@pytest.fixture
def device_repo():
    return MockDeviceRepository()
