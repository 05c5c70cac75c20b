from fastapi import APIRouter

from chatsync.routers.chat import manager
from chatsync.utils.realtime_bus import get_bus


router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{user_id}")
async def presence(user_id: str):
    """Online status from the Redis presence key, or from open sockets on this instance."""
    bus = await get_bus()
    online = manager.is_connected(user_id) or await bus.is_online(user_id)
    return {"user_id": user_id, "online": bool(online)}
