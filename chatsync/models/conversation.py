from datetime import datetime
from typing import Dict, List, Literal, Optional, TypedDict


ConversationKind = Literal["direct", "crew", "crew_date"]


class TypingState(TypedDict, total=False):
    is_typing: bool
    updated_at: datetime


class ConversationDocument(TypedDict, total=False):
    _id: str
    kind: ConversationKind
    participants: List[str]
    crew_id: Optional[str]
    # per-user last read timestamp (user_id -> datetime)
    last_read: Dict[str, datetime]
    typing: Dict[str, TypingState]
    has_messages: bool
    last_message_at: datetime
    last_message_preview: Optional[str]
    created_at: datetime
