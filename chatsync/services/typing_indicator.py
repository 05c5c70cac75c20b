import asyncio
import logging
from typing import Awaitable, Callable, Optional

from chatsync import config


logger = logging.getLogger(__name__)

TypingWriter = Callable[[bool], Awaitable[None]]


class TypingIndicator:
    """Debounces "is typing" writes for one user in one conversation.

    The first non-empty keystroke writes True; further keystrokes only push
    the idle deadline back. False is written when the deadline passes, when
    the input is cleared, or when the message is sent.
    """

    def __init__(self, write: TypingWriter, timeout: float | None = None) -> None:
        self._write = write
        self._timeout = config.TYPING_TIMEOUT if timeout is None else timeout
        self._typing = False
        self._idle_task: Optional[asyncio.Task] = None

    @property
    def is_typing(self) -> bool:
        return self._typing

    async def on_text_changed(self, text: str) -> None:
        self._cancel_idle()
        if not text:
            await self._set(False)
            return
        if not self._typing:
            await self._set(True)
        self._idle_task = asyncio.create_task(self._expire())

    async def on_message_sent(self) -> None:
        self._cancel_idle()
        await self._set(False)

    async def close(self) -> None:
        await self.on_message_sent()

    def _cancel_idle(self) -> None:
        task, self._idle_task = self._idle_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _expire(self) -> None:
        await asyncio.sleep(self._timeout)
        self._idle_task = None
        await self._set(False)

    async def _set(self, is_typing: bool) -> None:
        if self._typing == is_typing:
            return
        self._typing = is_typing
        try:
            await self._write(is_typing)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # presence is best-effort
            logger.warning("Failed to update typing status: %s", exc)
