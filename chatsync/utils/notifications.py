import asyncio
import logging
from typing import Dict, List

from chatsync import config


logger = logging.getLogger(__name__)


class NoopPush:

    enabled = False

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Dict[str, str] | None = None) -> int:
        return 0


class FcmPush:

    enabled = True

    def __init__(self, service_account_file: str, project_id: str) -> None:
        from pyfcm import FCMNotification

        self._client = FCMNotification(service_account_file=service_account_file, project_id=project_id)

    def _send_one(self, token: str, title: str, body: str, data: Dict[str, str]) -> None:
        self._client.notify(
            fcm_token=token,
            notification_title=title,
            notification_body=body,
            data_payload=data,
        )

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Dict[str, str] | None = None) -> int:
        if not tokens:
            return 0
        # FCM data payload values must be strings
        payload = {k: str(v) for k, v in (data or {}).items()}
        sent = 0
        for token in tokens:
            try:
                # pyfcm is sync
                await asyncio.to_thread(self._send_one, token, title, body, payload)
                sent += 1
            except Exception as exc:
                logger.warning("Push to token %s... failed: %s", token[:8], exc)
        return sent


_push = None


async def get_push():
    global _push
    if _push is not None:
        return _push
    if not (config.FCM_SERVICE_ACCOUNT_FILE and config.FCM_PROJECT_ID):
        _push = NoopPush()
    else:
        _push = FcmPush(config.FCM_SERVICE_ACCOUNT_FILE, config.FCM_PROJECT_ID)
        logger.info("FCM push enabled for project %s", config.FCM_PROJECT_ID)
    return _push
