import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from chatsync.models.conversation import ConversationDocument, ConversationKind
from chatsync.repositories.change_stream import MongoChangeStream
from chatsync.utils.errors import ChatValidationError, NotFoundError, translate_errors


logger = logging.getLogger(__name__)

METADATA_CHANNEL = "metadata"


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        with translate_errors():
            await self.collection.create_index([("participants", ASCENDING)])
            await self.collection.create_index([("last_message_at", DESCENDING)])

    async def get(self, conversation_id: str) -> ConversationDocument:
        with translate_errors():
            doc = await self.collection.find_one({"_id": conversation_id})
        if not doc:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return doc

    async def create(
        self,
        conversation_id: str,
        kind: ConversationKind,
        participants: Sequence[str],
        crew_id: Optional[str] = None,
    ) -> Optional[ConversationDocument]:
        """Insert a new conversation. Returns None when the id is already taken."""
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {
            "_id": conversation_id,
            "kind": kind,
            "crew_id": crew_id,
            "participants": list(participants),
            "last_read": {},
            "typing": {},
            "has_messages": False,
            "last_message_at": now,
            "last_message_preview": None,
            "created_at": now,
        }
        with translate_errors():
            try:
                await self.collection.insert_one(doc)
            except DuplicateKeyError:
                return None
        return doc

    async def get_or_create(
        self,
        conversation_id: str,
        kind: ConversationKind,
        participants: Sequence[str],
        crew_id: Optional[str] = None,
    ) -> ConversationDocument:
        now = datetime.now(timezone.utc)
        on_insert: Dict[str, Any] = {
            "kind": kind,
            "crew_id": crew_id,
            "last_read": {},
            "typing": {},
            "has_messages": False,
            "last_message_at": now,
            "last_message_preview": None,
            "created_at": now,
        }
        update: Dict[str, Any] = {"$setOnInsert": on_insert}
        if participants:
            update["$addToSet"] = {"participants": {"$each": list(participants)}}
        else:
            on_insert["participants"] = []
        with translate_errors():
            return await self.collection.find_one_and_update(
                {"_id": conversation_id},
                update,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )

    async def update_on_new_message(self, conversation_id: str, preview: Optional[str]) -> None:
        with translate_errors():
            await self.collection.update_one(
                {"_id": conversation_id},
                {
                    "$set": {
                        "has_messages": True,
                        "last_message_at": datetime.now(timezone.utc),
                        "last_message_preview": preview,
                    },
                },
            )

    async def mark_read(self, conversation_id: str, user_id: str) -> datetime:
        now = datetime.now(timezone.utc)
        with translate_errors():
            # merge semantics: creates the document on first read
            await self.collection.update_one(
                {"_id": conversation_id},
                {"$set": {f"last_read.{user_id}": now}},
                upsert=True,
            )
        return now

    async def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        fields = {
            f"typing.{user_id}.is_typing": is_typing,
            f"typing.{user_id}.updated_at": datetime.now(timezone.utc),
        }
        with translate_errors():
            result = await self.collection.update_one({"_id": conversation_id}, {"$set": fields})
            if result.matched_count:
                return
            logger.debug("Typing status for %s has no conversation yet, creating it", conversation_id)
            await self.collection.update_one(
                {"_id": conversation_id},
                {"$set": fields, "$addToSet": {"participants": user_id}},
                upsert=True,
            )

    async def add_member(self, conversation_id: str, user_id: str) -> None:
        if not user_id:
            raise ChatValidationError("Member id cannot be empty")
        now = datetime.now(timezone.utc)
        with translate_errors():
            await self.collection.update_one(
                {"_id": conversation_id},
                {
                    "$addToSet": {"participants": user_id},
                    "$setOnInsert": {"created_at": now, "has_messages": False, "last_read": {}, "typing": {}},
                },
                upsert=True,
            )

    async def remove_member(self, conversation_id: str, user_id: str) -> bool:
        with translate_errors():
            result = await self.collection.update_one(
                {"_id": conversation_id},
                {"$pull": {"participants": user_id}, "$unset": {f"typing.{user_id}": ""}},
            )
        return bool(result.modified_count)

    async def list_for_user(
        self,
        user_id: str,
        limit: int = 20,
        cursor: Optional[str] = None,
        with_messages_only: bool = True,
    ) -> Tuple[List[ConversationDocument], Optional[str]]:
        query: Dict[str, Any] = {"participants": {"$in": [user_id]}}
        if with_messages_only:
            query["has_messages"] = True
        sort = [("last_message_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # Cursor format: timestamp_ms:conversation_id
            try:
                ts_str, last_id = cursor.split(":", 1)
                ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
            except ValueError as exc:
                raise ChatValidationError(f"Malformed pagination cursor: {cursor!r}") from exc
            query["$or"] = [
                {"last_message_at": {"$lt": ts}},
                {"last_message_at": ts, "_id": {"$lt": last_id}},
            ]

        with translate_errors():
            cursor_db = self.collection.find(query).sort(sort).limit(limit)
            items = await cursor_db.to_list(length=limit)
        next_cursor = None
        if items:
            last = items[-1]
            last_ts = int(last["last_message_at"].timestamp() * 1000)
            next_cursor = f"{last_ts}:{last['_id']}"
        return items, next_cursor

    async def list_all_for_user(self, user_id: str) -> List[ConversationDocument]:
        with translate_errors():
            cur = self.collection.find({"participants": {"$in": [user_id]}, "has_messages": True}).sort(
                [("last_message_at", DESCENDING), ("_id", DESCENDING)]
            )
            return await cur.to_list(length=None)

    async def open_change_stream(
        self,
        conversation_id: str,
        channel: str = METADATA_CHANNEL,
        resume_token: Optional[Dict[str, Any]] = None,
    ) -> MongoChangeStream:
        with translate_errors():
            stream = self.collection.watch(
                [{"$match": {"documentKey._id": conversation_id}}],
                full_document="updateLookup",
                resume_after=resume_token,
            )
        return await MongoChangeStream(stream).open()

    async def open_list_change_stream(
        self,
        user_id: str,
        resume_token: Optional[Dict[str, Any]] = None,
    ) -> MongoChangeStream:
        # deletes carry no fullDocument, so they always pass and the list is re-read
        pipeline = [
            {
                "$match": {
                    "$or": [
                        {"fullDocument.participants": user_id},
                        {"operationType": "delete"},
                    ]
                }
            }
        ]
        with translate_errors():
            stream = self.collection.watch(pipeline, full_document="updateLookup", resume_after=resume_token)
        return await MongoChangeStream(stream).open()
