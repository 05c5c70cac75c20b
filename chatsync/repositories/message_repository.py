import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from chatsync.models.message import MessageDocument, PollDocument
from chatsync.repositories.change_stream import MongoChangeStream
from chatsync.services.polls import apply_vote
from chatsync.utils.errors import ChatValidationError, NotFoundError, translate_errors


logger = logging.getLogger(__name__)

MESSAGES_CHANNEL = "messages"
POLLS_CHANNEL = "polls"


def encode_cursor(doc: Dict[str, Any]) -> str:
    ts_ms = int(doc["created_at"].timestamp() * 1000)
    return f"{ts_ms}:{doc['_id']}"


def decode_cursor(cursor: str) -> Tuple[datetime, ObjectId]:
    # cursor format: ts_ms:oid
    try:
        ts_str, oid_hex = cursor.split(":", 1)
        ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
        return ts, ObjectId(oid_hex)
    except (ValueError, InvalidId) as exc:
        raise ChatValidationError(f"Malformed pagination cursor: {cursor!r}") from exc


def _to_object_id(message_id: str) -> ObjectId:
    try:
        return ObjectId(message_id)
    except (InvalidId, TypeError) as exc:
        raise NotFoundError(f"Message {message_id} not found") from exc


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        with translate_errors():
            await self.collection.create_index(
                [("conversation_id", ASCENDING), ("created_at", DESCENDING), ("_id", DESCENDING)]
            )
            await self.collection.create_index(
                [("conversation_id", ASCENDING), ("sender_id", ASCENDING), ("client_message_id", ASCENDING)],
                unique=True,
                partialFilterExpression={"client_message_id": {"$type": "string"}},
            )

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: Optional[str] = None,
        image_url: Optional[str] = None,
        client_message_id: Optional[str] = None,
        poll: Optional[PollDocument] = None,
    ) -> MessageDocument:
        doc: Dict[str, Any] = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "text": text,
            "image_url": image_url,
            "created_at": datetime.now(timezone.utc),
            "client_message_id": client_message_id,
            "poll": poll,
        }
        with translate_errors():
            if client_message_id is None:
                result = await self.collection.insert_one(doc)
                doc["_id"] = str(result.inserted_id)
                return doc
            # a retried send with the same correlation id returns the original record
            saved = await self.collection.find_one_and_update(
                {
                    "conversation_id": conversation_id,
                    "sender_id": sender_id,
                    "client_message_id": client_message_id,
                },
                {"$setOnInsert": doc},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        saved["_id"] = str(saved["_id"])
        return saved

    async def get_message(self, conversation_id: str, message_id: str) -> MessageDocument:
        with translate_errors():
            doc = await self.collection.find_one({"_id": _to_object_id(message_id), "conversation_id": conversation_id})
        if not doc:
            raise NotFoundError(f"Message {message_id} not found")
        doc["_id"] = str(doc["_id"])
        return doc

    async def get_messages_page(
        self,
        conversation_id: str,
        limit: int = 20,
        cursor: Optional[str] = None,
    ) -> Tuple[List[MessageDocument], Optional[str]]:
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        sort = [("created_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            ts, oid = decode_cursor(cursor)
            query["$or"] = [
                {"created_at": {"$lt": ts}},
                {"created_at": ts, "_id": {"$lt": oid}},
            ]
        with translate_errors():
            cur = self.collection.find(query).sort(sort).limit(limit)
            items = await cur.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        next_cursor = encode_cursor(items[-1]) if items else None
        # newest-first from the query; chronological for callers
        return list(reversed(items)), next_cursor

    async def count_since(self, conversation_id: str, since: datetime) -> int:
        with translate_errors():
            return await self.collection.count_documents(
                {"conversation_id": conversation_id, "created_at": {"$gt": since}}
            )

    async def vote_on_poll(self, conversation_id: str, message_id: str, option_index: int, user_id: str) -> PollDocument:
        oid = _to_object_id(message_id)

        async def _txn(session):
            doc = await self.collection.find_one(
                {"_id": oid, "conversation_id": conversation_id},
                {"poll": 1},
                session=session,
            )
            if not doc or not doc.get("poll"):
                raise NotFoundError(f"Poll message {message_id} not found")
            poll = apply_vote(doc["poll"], option_index, user_id)
            await self.collection.update_one(
                {"_id": oid},
                {"$set": {"poll.votes": poll["votes"], "poll.total_votes": poll["total_votes"]}},
                session=session,
            )
            return poll

        with translate_errors():
            async with await self._db.client.start_session() as session:
                # with_transaction retries on TransientTransactionError (write conflicts)
                poll = await session.with_transaction(_txn)
        logger.debug("User %s voted option %s on message %s", user_id, option_index, message_id)
        return poll

    async def open_change_stream(
        self,
        conversation_id: str,
        channel: str = MESSAGES_CHANNEL,
        resume_token: Optional[Dict[str, Any]] = None,
    ) -> MongoChangeStream:
        if channel == POLLS_CHANNEL:
            match: Dict[str, Any] = {"operationType": "update", "fullDocument.conversation_id": conversation_id}
        else:
            # deletes carry no fullDocument; unknown ids are ignored downstream
            match = {
                "$or": [
                    {"fullDocument.conversation_id": conversation_id},
                    {"operationType": "delete"},
                ]
            }
        with translate_errors():
            stream = self.collection.watch(
                [{"$match": match}],
                full_document="updateLookup",
                resume_after=resume_token,
            )
        return await MongoChangeStream(stream).open()
