from datetime import datetime
from typing import Dict, List, Optional, TypedDict


class PollDocument(TypedDict, total=False):
    question: str
    options: List[str]
    # option index (as string) -> voter ids
    votes: Dict[str, List[str]]
    total_votes: int


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    text: Optional[str]
    image_url: Optional[str]
    created_at: datetime
    # client correlation id for optimistic sends
    client_message_id: Optional[str]
    poll: Optional[PollDocument]
