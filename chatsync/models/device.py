from datetime import datetime
from typing import Literal, TypedDict


PushPlatform = Literal["fcm", "webpush"]


class DeviceDocument(TypedDict, total=False):
    # one document per (user_id, platform, token)
    user_id: str
    platform: PushPlatform
    token: str
    created_at: datetime
    last_seen_at: datetime
