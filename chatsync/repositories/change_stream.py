from typing import Any, List, Mapping, Optional

from chatsync.models.change import ChangeEvent, change_from_stream_event
from chatsync.utils.errors import TransientError, translate_errors


class MongoChangeStream:
    """Adapts a Motor change stream to the listener manager's stream protocol."""

    def __init__(self, stream) -> None:
        self._stream = stream
        self._buffered: List[Mapping[str, Any]] = []

    @property
    def resume_token(self) -> Optional[Mapping[str, Any]]:
        return self._stream.resume_token

    async def open(self) -> "MongoChangeStream":
        # forces the server-side cursor open so nothing written after attach() is missed
        with translate_errors():
            event = await self._stream.try_next()
        if event is not None:
            self._buffered.append(event)
        return self

    async def next_batch(self) -> List[ChangeEvent]:
        with translate_errors():
            if self._buffered:
                events, self._buffered = self._buffered, []
            else:
                try:
                    events = [await self._stream.next()]
                except StopAsyncIteration:
                    raise TransientError("change stream closed") from None
        changes = (change_from_stream_event(e) for e in events)
        return [c for c in changes if c is not None]

    async def close(self) -> None:
        with translate_errors():
            await self._stream.close()
