from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatsync.database.connection import mongo_db_dependency
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.device_repository import DeviceRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.user_repository import UserRepository
from chatsync.services.chat_service import ChatService
from chatsync.utils.errors import ChatError, ChatValidationError, NotFoundError, PermissionDeniedError
from chatsync.utils.security import decode_access_token


security = HTTPBearer()


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    try:
        payload = decode_access_token(credentials.credentials)
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return {"_id": sub}


def http_error(exc: ChatError) -> HTTPException:
    if isinstance(exc, ChatValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@dataclass
class ChatBackend:
    messages: MessageRepository
    conversations: ConversationRepository
    users: UserRepository
    devices: DeviceRepository

    def chat_service(self) -> ChatService:
        return ChatService(self.messages, self.conversations, self.users, self.devices)


def get_backend(db = Depends(mongo_db_dependency)) -> ChatBackend:
    return ChatBackend(
        messages=MessageRepository(db),
        conversations=ConversationRepository(db),
        users=UserRepository(db),
        devices=DeviceRepository(db),
    )


def get_chat_service(backend: ChatBackend = Depends(get_backend)) -> ChatService:
    return backend.chat_service()
