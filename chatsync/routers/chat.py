import asyncio
import json
import logging
from typing import Any, Dict

import jwt
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from chatsync.services.chat_session import ChatSession
from chatsync.utils.dependencies import ChatBackend, get_backend
from chatsync.utils.errors import ChatError
from chatsync.utils.realtime_bus import PRESENCE_TTL_SECONDS, get_bus
from chatsync.utils.security import decode_access_token
from chatsync.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])
manager = ConnectionManager()

HEARTBEAT_INTERVAL = PRESENCE_TTL_SECONDS / 2


async def handle_frame(session: ChatSession, msg: Dict[str, Any]) -> Dict[str, Any]:
    """Run one client frame against the session; returns the ack body."""
    kind = msg.get("type")

    if kind == "open":
        return {"conversation_id": await session.open_conversation(msg["conversation_id"])}
    if kind == "open_direct":
        return {"conversation_id": await session.open_direct(msg["user_id"])}
    if kind == "open_crew_date":
        return {"conversation_id": await session.open_crew_date(msg["crew_id"], msg["date"])}
    if kind == "close":
        await session.close_conversation(msg["conversation_id"])
        return {}
    if kind == "load_earlier":
        return {"has_more": await session.load_earlier(msg["conversation_id"])}
    if kind == "send":
        entry = await session.send_message(msg["conversation_id"], msg.get("text"), msg.get("image_url"))
        return {"client_message_id": entry.client_message_id if entry else None}
    if kind == "poll":
        entry = await session.send_poll(msg["conversation_id"], msg["question"], msg["options"])
        return {"client_message_id": entry.client_message_id if entry else None}
    if kind == "vote":
        poll = await session.vote(msg["conversation_id"], msg["message_id"], int(msg["option_index"]))
        return {"poll": poll.model_dump() if poll else None}
    if kind == "typing":
        await session.text_changed(msg["conversation_id"], msg.get("text") or "")
        return {}
    if kind == "read":
        return {"updated": await session.mark_read(msg["conversation_id"])}
    if kind == "retry":
        return {"retried": await session.retry_message(msg["conversation_id"], msg["client_message_id"])}
    if kind == "discard":
        return {"discarded": await session.discard_message(msg["conversation_id"], msg["client_message_id"])}
    raise ValueError(f"unknown frame type: {kind!r}" if kind else "missing frame type")


@router.websocket("/ws/chat/{user_id}")
async def chat_socket(websocket: WebSocket, user_id: str, backend: ChatBackend = Depends(get_backend)):
    # token comes in the query string: ?token=...
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        payload = decode_access_token(token)
    except jwt.PyJWTError:
        await websocket.close(code=4401)
        return
    if payload.get("sub") != user_id:
        await websocket.close(code=4403)
        return

    await manager.connect(user_id, websocket)

    async def emit(event: Dict[str, Any]) -> None:
        await manager.send_json(websocket, event)

    session = ChatSession(
        user_id,
        backend.chat_service(),
        backend.messages,
        backend.conversations,
        backend.users,
        emit,
    )

    bus = await get_bus()
    heartbeat_task = None
    if getattr(bus, "enabled", False):
        async def _presence_heartbeat():
            while True:
                try:
                    await bus.set_presence(user_id, ttl_seconds=PRESENCE_TTL_SECONDS)
                except Exception as exc:
                    logger.warning("Presence heartbeat failed for %s: %s", user_id, exc)
                await asyncio.sleep(HEARTBEAT_INTERVAL)

        heartbeat_task = asyncio.create_task(_presence_heartbeat())

    try:
        await backend.users.set_online(user_id, True)
    except ChatError as exc:
        logger.warning("Could not mark %s online: %s", user_id, exc)
    logger.info("Chat socket opened for %s", user_id)

    try:
        await session.watch_conversations()
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
                if not isinstance(msg, dict):
                    raise ValueError("frame must be a JSON object")
            except ValueError as exc:
                await emit({"type": "error", "code": "invalid-argument", "detail": str(exc)})
                continue

            ref = msg.get("ref")
            try:
                result = await handle_frame(session, msg)
            except KeyError as exc:
                await emit({"type": "error", "ref": ref, "code": "invalid-argument", "detail": f"missing field {exc.args[0]}"})
            except (TypeError, ValueError) as exc:
                await emit({"type": "error", "ref": ref, "code": "invalid-argument", "detail": str(exc)})
            except ChatError as exc:
                await emit({"type": "error", "ref": ref, "code": exc.code, "detail": str(exc)})
            else:
                await emit({"type": "ack", "ref": ref, "frame": msg.get("type"), **result})
    except WebSocketDisconnect:
        logger.info("Chat socket closed for %s", user_id)
    finally:
        manager.disconnect(user_id, websocket)
        if heartbeat_task is not None:
            heartbeat_task.cancel()
        await session.close()
        if not manager.is_connected(user_id):
            try:
                await backend.users.set_online(user_id, False)
                await bus.clear_presence(user_id)
            except Exception as exc:
                logger.warning("Could not clear presence for %s: %s", user_id, exc)
