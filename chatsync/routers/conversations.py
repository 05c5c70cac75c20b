from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from chatsync.schemas.chat import (
    AddMemberRequest,
    CreateCrewConversationRequest,
    CreateCrewDateConversationRequest,
    CreateDirectConversationRequest,
    CreatePollRequest,
    SendMessageRequest,
    VoteRequest,
)
from chatsync.services.chat_service import ChatService
from chatsync.services.conversation_directory import ConversationRef
from chatsync.utils.dependencies import get_chat_service, get_current_user, http_error
from chatsync.utils.errors import ChatError, ChatValidationError


router = APIRouter(prefix="/conversations", tags=["chat"])


def _serialize(convo: dict) -> dict:
    data = dict(convo)
    data["id"] = data.pop("_id")
    data.pop("typing", None)
    return data


@router.get("")
async def list_conversations(limit: int = Query(20, ge=1, le=100), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        items, next_cursor = await service.list_conversations(current_user["_id"], limit=limit, cursor=cursor)
    except ChatError as exc:
        raise http_error(exc)
    return {"items": [_serialize(c) for c in items], "next_cursor": next_cursor}


@router.get("/unread")
async def total_unread(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return {"unread": await service.total_unread(current_user["_id"])}


@router.post("/direct", status_code=status.HTTP_201_CREATED)
async def create_direct(body: CreateDirectConversationRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        ref = ConversationRef.direct(current_user["_id"], body.other_user_id)
    except ValueError as exc:
        raise http_error(ChatValidationError(str(exc)))
    try:
        convo = await service.ensure_conversation(ref, current_user["_id"])
    except ChatError as exc:
        raise http_error(exc)
    return _serialize(convo)


@router.post("/crew", status_code=status.HTTP_201_CREATED)
async def create_crew(body: CreateCrewConversationRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        ref = ConversationRef.crew(body.crew_id)
    except ValueError as exc:
        raise http_error(ChatValidationError(str(exc)))
    try:
        convo = await service.create_group(ref, current_user["_id"], body.participants)
    except ChatError as exc:
        raise http_error(exc)
    return _serialize(convo)


@router.post("/crew-date", status_code=status.HTTP_201_CREATED)
async def create_crew_date(body: CreateCrewDateConversationRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        ref = ConversationRef.crew_date(body.crew_id, body.date)
    except ValueError as exc:
        raise http_error(ChatValidationError(str(exc)))
    try:
        convo = await service.create_group(ref, current_user["_id"], body.participants)
    except ChatError as exc:
        raise http_error(exc)
    return _serialize(convo)


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, limit: int = Query(20, ge=1, le=200), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        await service.ensure_conversation(conversation_id, current_user["_id"])
        messages, next_cursor = await service.get_history(conversation_id, limit=limit, cursor=cursor)
    except ChatError as exc:
        raise http_error(exc)
    return {"items": messages, "next_cursor": next_cursor}


@router.post("/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(conversation_id: str, body: SendMessageRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        return await service.send_message(
            conversation_id, current_user["_id"], body.text, body.image_url, body.client_message_id
        )
    except ChatError as exc:
        raise http_error(exc)


@router.post("/{conversation_id}/polls", status_code=status.HTTP_201_CREATED)
async def create_poll(conversation_id: str, body: CreatePollRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        return await service.create_poll(conversation_id, current_user["_id"], body.question, body.options)
    except ChatError as exc:
        raise http_error(exc)


@router.post("/{conversation_id}/messages/{message_id}/vote")
async def vote(conversation_id: str, message_id: str, body: VoteRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        await service.ensure_conversation(conversation_id, current_user["_id"])
        poll = await service.vote(conversation_id, message_id, body.option_index, current_user["_id"])
    except ChatError as exc:
        raise http_error(exc)
    return {"message_id": message_id, "poll": poll}


@router.get("/{conversation_id}/unread")
async def unread(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return {"conversation_id": conversation_id, "unread": await service.unread_count(conversation_id, current_user["_id"])}


@router.post("/{conversation_id}/read")
async def mark_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        await service.ensure_conversation(conversation_id, current_user["_id"])
        read_at = await service.mark_read(conversation_id, current_user["_id"])
    except ChatError as exc:
        raise http_error(exc)
    return {"conversation_id": conversation_id, "last_read": read_at}


@router.post("/{conversation_id}/members", status_code=status.HTTP_201_CREATED)
async def add_member(conversation_id: str, body: AddMemberRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        await service.ensure_conversation(conversation_id, current_user["_id"])
        await service.add_member(conversation_id, body.user_id)
    except ChatError as exc:
        raise http_error(exc)
    return {"conversation_id": conversation_id, "user_id": body.user_id}


@router.delete("/{conversation_id}/members/{user_id}")
async def remove_member(conversation_id: str, user_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        await service.ensure_conversation(conversation_id, current_user["_id"])
        removed = await service.remove_member(conversation_id, user_id)
    except ChatError as exc:
        raise http_error(exc)
    return {"conversation_id": conversation_id, "user_id": user_id, "removed": removed}
