from fastapi import APIRouter, Depends, status

from chatsync.schemas.chat import RegisterDeviceRequest
from chatsync.utils.dependencies import ChatBackend, get_backend, get_current_user, http_error
from chatsync.utils.errors import ChatError


router = APIRouter(prefix="/devices", tags=["push"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_device(body: RegisterDeviceRequest, current_user: dict = Depends(get_current_user), backend: ChatBackend = Depends(get_backend)):
    try:
        doc = await backend.devices.register(current_user["_id"], body.platform, body.token)
    except ChatError as exc:
        raise http_error(exc)
    return {"ok": True, "device": {"platform": doc["platform"], "token": doc["token"]}}
