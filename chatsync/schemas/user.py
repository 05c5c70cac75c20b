from typing import Any, Mapping, Optional

from pydantic import BaseModel


UNKNOWN_USER_NAME = "Unknown User"


class UserProfile(BaseModel):

    uid: str
    display_name: str = UNKNOWN_USER_NAME
    photo_url: Optional[str] = None
    is_online: bool = False

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "UserProfile":
        return cls(
            uid=str(doc["_id"]),
            display_name=doc.get("display_name") or UNKNOWN_USER_NAME,
            photo_url=doc.get("photo_url"),
            is_online=bool(doc.get("is_online", False)),
        )

    @classmethod
    def placeholder(cls, uid: str) -> "UserProfile":
        return cls(uid=uid)
