"""Real-time subscription lifecycle.

One live change stream per (conversation, channel). The chat-list channel
is keyed by the user id instead of a conversation id. Attaching a key that is
already live cancels the old stream first. Each stream runs in its own task
that classifies change batches and hands the actionable ones to the owner's
callback.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from chatsync import config
from chatsync.models.change import ADDED, MODIFIED, REMOVED, ChangeEvent
from chatsync.utils.errors import PermissionDeniedError, classify_backend_error


logger = logging.getLogger(__name__)

MESSAGES = "messages"
POLLS = "polls"
METADATA = "metadata"
CONVERSATIONS = "conversations"
CONVERSATION_CHANNELS = (MESSAGES, POLLS, METADATA)
CHANNELS = CONVERSATION_CHANNELS + (CONVERSATIONS,)


class ChangeStream(Protocol):

    @property
    def resume_token(self) -> Optional[Dict[str, Any]]: ...

    async def next_batch(self) -> List[ChangeEvent]: ...

    async def close(self) -> None: ...


StreamOpener = Callable[[str, str, Optional[Dict[str, Any]]], Awaitable[ChangeStream]]
ChangeCallback = Callable[[str, List[ChangeEvent]], Awaitable[None]]


def actionable_changes(channel: str, batch: List[ChangeEvent]) -> List[ChangeEvent]:
    if channel == POLLS:
        return [c for c in batch if c.is_poll_update]
    if channel == MESSAGES:
        # vote traffic belongs to the polls channel
        return [c for c in batch if c.kind in (ADDED, REMOVED) or (c.kind == MODIFIED and not c.is_poll_update)]
    if channel == CONVERSATIONS:
        # typing flags churn constantly and never change the chat list
        return [c for c in batch if not c.touches_only("typing")]
    return list(batch)


@dataclass(eq=False)
class ListenerHandle:
    conversation_id: str
    channel: str
    on_changes: ChangeCallback
    task: Optional[asyncio.Task] = None
    stream: Optional[ChangeStream] = None
    resume_token: Optional[Dict[str, Any]] = None
    cancelled: bool = False
    terminated: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return self.conversation_id, self.channel

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.terminated)

    async def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self.task is not None and self.task is not asyncio.current_task():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        await _close_quietly(self.stream)
        self.stream = None


async def _close_quietly(stream: Optional[ChangeStream]) -> None:
    if stream is None:
        return
    try:
        await stream.close()
    except Exception as exc:
        logger.debug("Ignoring error while closing change stream: %s", exc)


class ListenerManager:

    def __init__(self, opener: StreamOpener, retry_delay: float | None = None) -> None:
        self._opener = opener
        self._retry_delay = config.LISTENER_RETRY_DELAY if retry_delay is None else retry_delay
        self._handles: Dict[Tuple[str, str], ListenerHandle] = {}

    def is_attached(self, conversation_id: str, channel: str = MESSAGES) -> bool:
        handle = self._handles.get((conversation_id, channel))
        return handle is not None and handle.active

    def handle_for(self, conversation_id: str, channel: str = MESSAGES) -> Optional[ListenerHandle]:
        return self._handles.get((conversation_id, channel))

    async def attach(self, conversation_id: str, on_changes: ChangeCallback, channel: str = MESSAGES) -> ListenerHandle:
        if channel not in CHANNELS:
            raise ValueError(f"unknown listener channel: {channel}")
        key = (conversation_id, channel)
        previous = self._handles.pop(key, None)
        if previous is not None:
            await previous.cancel()

        handle = ListenerHandle(conversation_id, channel, on_changes)
        self._handles[key] = handle
        try:
            handle.stream = await self._opener(conversation_id, channel, None)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._on_stream_error(handle, exc):
                return handle
        if handle.active:
            handle.task = asyncio.create_task(self._run(handle, delay_first=handle.stream is None), name=f"listener:{channel}:{conversation_id}")
        return handle

    async def detach(self, conversation_id: str, channel: str | None = None) -> None:
        channels = CONVERSATION_CHANNELS if channel is None else (channel,)
        for ch in channels:
            handle = self._handles.pop((conversation_id, ch), None)
            if handle is not None:
                await handle.cancel()

    async def detach_all(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            await handle.cancel()

    def _is_current(self, handle: ListenerHandle) -> bool:
        return handle.active and self._handles.get(handle.key) is handle

    def _on_stream_error(self, handle: ListenerHandle, exc: Exception) -> bool:
        """Log a stream failure; returns False when the listener is finished."""
        error = classify_backend_error(exc)
        if isinstance(error, PermissionDeniedError):
            logger.debug("Listener %s:%s not permitted, stopping", handle.channel, handle.conversation_id)
            handle.terminated = True
            if self._handles.get(handle.key) is handle:
                del self._handles[handle.key]
            return False
        logger.warning(
            "Listener %s:%s failed, retrying in %.1fs: %s",
            handle.channel,
            handle.conversation_id,
            self._retry_delay,
            error,
        )
        return True

    async def _run(self, handle: ListenerHandle, delay_first: bool = False) -> None:
        if delay_first:
            await asyncio.sleep(self._retry_delay)
        while self._is_current(handle):
            try:
                if handle.stream is None:
                    handle.stream = await self._opener(handle.conversation_id, handle.channel, handle.resume_token)
                batch = await handle.stream.next_batch()
                handle.resume_token = handle.stream.resume_token
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                stream, handle.stream = handle.stream, None
                await _close_quietly(stream)
                if not self._on_stream_error(handle, exc):
                    return
                await asyncio.sleep(self._retry_delay)
                continue

            deltas = actionable_changes(handle.channel, batch)
            # a batch that raced with detach/replace is stale
            if not deltas or not self._is_current(handle):
                continue
            try:
                await handle.on_changes(handle.conversation_id, deltas)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error processing %s changes for %s", handle.channel, handle.conversation_id)
