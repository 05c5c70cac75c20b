from typing import List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase

from chatsync.models.user import UserDocument
from chatsync.utils.errors import translate_errors


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:
        with translate_errors():
            return await self._collection.find_one({"_id": user_id})

    async def get_users_by_ids(self, user_ids: Sequence[str]) -> List[UserDocument]:
        # one round trip; callers keep the id list within the batch limit
        if not user_ids:
            return []
        with translate_errors():
            cur = self._collection.find({"_id": {"$in": list(user_ids)}})
            return await cur.to_list(length=len(user_ids))

    async def set_online(self, user_id: str, is_online: bool) -> None:
        with translate_errors():
            await self._collection.update_one({"_id": user_id}, {"$set": {"is_online": is_online}})

    async def set_active_chat(self, user_id: str, conversation_id: str, active: bool) -> None:
        # push delivery skips chats listed here while the user is online
        update = {"$addToSet" if active else "$pull": {"active_chats": conversation_id}}
        with translate_errors():
            await self._collection.update_one({"_id": user_id}, update)
