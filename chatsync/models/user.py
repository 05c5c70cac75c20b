from typing import Dict, List, Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    display_name: str
    email: str
    photo_url: Optional[str]
    is_online: bool
    # notification category -> enabled
    notification_settings: Dict[str, bool]
    active_chats: List[str]
