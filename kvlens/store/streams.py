"""Push-message streams (pubsub, monitor) behind one closeable async iterator."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from ..util.errors import StreamError
from ..util.types import ErrorInfo
from ..util.logging import log


@dataclass(frozen=True)
class StreamMessage:
    kind: str                      # "message", "pmessage" or "monitor"
    payload: Any
    channel: Optional[bytes] = None
    pattern: Optional[bytes] = None
    detail: Dict[str, Any] = field(default_factory=dict)


class StreamHandle:
    """Lazy, unbounded sequence of StreamMessage; close() releases the backend side."""

    def __init__(self, name: str, messages: AsyncIterator[StreamMessage],
                 closer: Optional[Callable[[], Awaitable[None]]] = None,
                 classify: Optional[Callable[[BaseException, str], ErrorInfo]] = None) -> None:
        self.name = name
        self._messages = messages
        self._closer = closer
        self._classify = classify
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "StreamHandle":
        return self

    async def __anext__(self) -> StreamMessage:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._messages.__anext__()
        except StopAsyncIteration:
            raise
        except Exception as e:
            if self._classify is not None:
                raise StreamError(self._classify(e, "stream")) from e
            raise StreamError(ErrorInfo("connection.lost", str(e) or type(e).__name__)) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            aclose = getattr(self._messages, "aclose", None)
            if aclose is not None:
                await aclose()
        except Exception as e:
            log("WARN", "stream", "iterator_close_failed", stream=self.name, error=str(e))
        if self._closer is not None:
            try:
                await self._closer()
            except Exception as e:
                log("WARN", "stream", "release_failed", stream=self.name, error=str(e))
        log("DEBUG", "stream", "closed", stream=self.name)


_DONE = object()


async def merge_streams(sources: List[AsyncIterator[Any]]) -> AsyncIterator[Any]:
    """Interleave several async iterators; ends when all of them end, raises the first error."""
    queue: asyncio.Queue = asyncio.Queue()

    async def pump(source: AsyncIterator[Any]) -> None:
        try:
            async for item in source:
                await queue.put(item)
        except Exception as e:
            await queue.put(e)
        finally:
            await queue.put(_DONE)

    tasks = [asyncio.create_task(pump(s)) for s in sources]
    remaining = len(tasks)
    try:
        while remaining:
            item = await queue.get()
            if item is _DONE:
                remaining -= 1
                continue
            if isinstance(item, Exception):
                raise item
            yield item
    finally:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def pubsub_messages(pubsub) -> AsyncIterator[StreamMessage]:
    async for message in pubsub.listen():
        kind = message.get("type")
        if kind == "message":
            yield StreamMessage("message", message.get("data"), channel=message.get("channel"))
        elif kind == "pmessage":
            yield StreamMessage("pmessage", message.get("data"),
                                channel=message.get("channel"), pattern=message.get("pattern"))


async def monitor_messages(monitor) -> AsyncIterator[StreamMessage]:
    async for info in monitor.listen():
        yield StreamMessage("monitor", info.get("command", ""), detail=dict(info))
