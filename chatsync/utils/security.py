from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

from chatsync import config


def create_access_token(user_id: str, expires_minutes: int = 60) -> str:
    payload = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    # raises jwt.PyJWTError on bad signature or expiry
    return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
