from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from chatsync.models.device import PushPlatform


class PollState(BaseModel):

    question: str
    options: List[str]
    votes: Dict[str, List[str]] = Field(default_factory=dict)
    total_votes: int = 0

    def voters(self, option_index: int) -> List[str]:
        return self.votes.get(str(option_index), [])


class ChatMessage(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    text: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime
    client_message_id: Optional[str] = None
    poll: Optional[PollState] = None
    sender_name: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "ChatMessage":
        poll = doc.get("poll")
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc["conversation_id"]),
            sender_id=doc["sender_id"],
            text=doc.get("text"),
            image_url=doc.get("image_url"),
            created_at=doc["created_at"],
            client_message_id=doc.get("client_message_id"),
            poll=PollState(**poll) if poll else None,
        )


# REST request bodies

class SendMessageRequest(BaseModel):
    text: Optional[str] = None
    image_url: Optional[str] = None
    client_message_id: Optional[str] = None


class CreatePollRequest(BaseModel):
    question: str
    options: List[str]


class VoteRequest(BaseModel):
    option_index: int


class CreateDirectConversationRequest(BaseModel):
    other_user_id: str


class CreateCrewConversationRequest(BaseModel):
    crew_id: str
    participants: List[str] = Field(default_factory=list)


class CreateCrewDateConversationRequest(BaseModel):
    crew_id: str
    date: str
    participants: List[str] = Field(default_factory=list)


class AddMemberRequest(BaseModel):
    user_id: str


class RegisterDeviceRequest(BaseModel):
    platform: PushPlatform = "fcm"
    token: str
