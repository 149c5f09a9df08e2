"""Progress emitters: how pipeline steps report status to a caller.

The pipeline only knows ``ProgressEmitter.emit(tag, payload)``. Each transport
implements it once: a buffering collector for plain JSON responses and a
bounded queue feeding a Server-Sent-Events stream. Emitting never blocks and
never raises, so a slow or vanished client cannot stall a browser session.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any, Protocol

from src.classutp.logging import get_logger

log = get_logger(__name__)

TERMINAL_TAGS = frozenset({"done", "error"})

Message = tuple[str, dict[str, Any]]


class ProgressEmitter(Protocol):
    def emit(self, tag: str, payload: dict[str, Any]) -> None: ...


class NullEmitter:
    """Discards everything."""

    def emit(self, tag: str, payload: dict[str, Any]) -> None:
        return None


class BufferedEmitter:
    """Collects messages in memory for synchronous JSON responses and tests."""

    def __init__(self) -> None:
        self.messages: list[Message] = []

    def emit(self, tag: str, payload: dict[str, Any]) -> None:
        self.messages.append((tag, payload))

    @property
    def tags(self) -> list[str]:
        return [tag for tag, _ in self.messages]


class StreamEmitter:
    """Bounded, best-effort channel between a running session and an SSE response.

    ``emit`` is a no-op once the stream is closed. When the queue is full,
    progress messages are dropped; terminal messages (``done``/``error``)
    evict the oldest queued message instead so the client always learns how
    the session ended.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 64) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, tag: str, payload: dict[str, Any]) -> None:
        if self._closed:
            return
        message = (tag, payload)
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            if tag not in TERMINAL_TAGS:
                self.dropped += 1
                log.debug("progress_dropped", tag=tag, dropped=self.dropped)
                return
            self._queue.get_nowait()
            self._queue.put_nowait(message)
        if tag in TERMINAL_TAGS:
            self._close_queue()

    def close(self) -> None:
        """Stop accepting messages. Pending messages stay readable."""
        if self._closed:
            return
        self._close_queue()

    def _close_queue(self) -> None:
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(self._CLOSED)

    async def messages(self) -> AsyncIterator[Message]:
        """Yield queued messages until a terminal message or close."""
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
            if item[0] in TERMINAL_TAGS:
                return


def format_sse(tag: str, payload: dict[str, Any]) -> str:
    """Frame one message as a Server-Sent-Event."""
    data = json.dumps(payload, ensure_ascii=False, default=str)
    return f"event: {tag}\ndata: {data}\n\n"
