"""Deterministic conversation ids.

Direct chats are keyed by their sorted participant ids, crew chats by the
crew id and crew+date chats by ``<crew_id>_<YYYY-MM-DD>``. Everything here is
pure so ids can be derived on either side of the wire without a lookup.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional, Tuple, Union

SEPARATOR = "_"

DIRECT = "direct"
CREW = "crew"
CREW_DATE = "crew_date"


def _check_id(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("participant id cannot be empty")
    return value


def conversation_id_for(participants: Iterable[str]) -> str:
    ids = sorted({_check_id(p) for p in participants})
    if len(ids) < 2:
        raise ValueError("a conversation needs at least two distinct participants")
    return SEPARATOR.join(ids)


def direct_conversation_id(user_a: str, user_b: str) -> str:
    return conversation_id_for([user_a, user_b])


def crew_conversation_id(crew_id: str) -> str:
    return _check_id(crew_id)


def _date_key(day: Union[date, datetime, str]) -> str:
    if isinstance(day, datetime):
        return day.date().isoformat()
    if isinstance(day, date):
        return day.isoformat()
    # ISO dates only; anything else raises ValueError
    return date.fromisoformat(day.strip()).isoformat()


def crew_date_conversation_id(crew_id: str, day: Union[date, datetime, str]) -> str:
    return f"{_check_id(crew_id)}{SEPARATOR}{_date_key(day)}"


def crew_id_from_date_chat(conversation_id: str) -> str:
    crew_id, _, _ = conversation_id.rpartition(SEPARATOR)
    if not crew_id:
        raise ValueError(f"not a crew date chat id: {conversation_id}")
    return crew_id


def participants_of(conversation_id: str) -> list[str]:
    return conversation_id.split(SEPARATOR)


def other_participant(conversation_id: str, user_id: str) -> Optional[str]:
    for uid in participants_of(conversation_id):
        if uid != user_id:
            return uid
    return None


@dataclass(frozen=True)
class ConversationRef:
    """A resolved conversation: its id plus what is needed to create it."""

    id: str
    kind: str
    participants: Tuple[str, ...] = ()
    crew_id: Optional[str] = None

    @classmethod
    def direct(cls, user_a: str, user_b: str) -> "ConversationRef":
        cid = direct_conversation_id(user_a, user_b)
        return cls(cid, DIRECT, tuple(participants_of(cid)))

    @classmethod
    def crew(cls, crew_id: str) -> "ConversationRef":
        return cls(crew_conversation_id(crew_id), CREW, crew_id=crew_id)

    @classmethod
    def crew_date(cls, crew_id: str, day: Union[date, datetime, str]) -> "ConversationRef":
        return cls(crew_date_conversation_id(crew_id, day), CREW_DATE, crew_id=crew_id)
