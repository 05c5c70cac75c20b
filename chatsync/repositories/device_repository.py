from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from chatsync.models.device import DeviceDocument, PushPlatform
from chatsync.utils.errors import translate_errors


class DeviceRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["devices"]

    async def ensure_indexes(self) -> None:
        with translate_errors():
            await self.collection.create_index(
                [("user_id", ASCENDING), ("platform", ASCENDING), ("token", ASCENDING)], unique=True
            )

    async def register(self, user_id: str, platform: PushPlatform, token: str) -> DeviceDocument:
        now = datetime.now(timezone.utc)
        key = {"user_id": user_id, "platform": platform, "token": token}
        with translate_errors():
            await self.collection.update_one(
                key,
                {"$set": {"last_seen_at": now}, "$setOnInsert": {"created_at": now}},
                upsert=True,
            )
        return key

    async def get_tokens(self, user_ids: Sequence[str], platform: PushPlatform | None = None) -> List[DeviceDocument]:
        if not user_ids:
            return []
        query: Dict[str, Any] = {"user_id": {"$in": list(user_ids)}}
        if platform:
            query["platform"] = platform
        with translate_errors():
            return await self.collection.find(query, {"_id": 0}).to_list(length=None)
