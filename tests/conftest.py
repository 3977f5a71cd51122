"""Pytest configuration for kvlens tests: an in-memory stand-in for the connection manager."""

import asyncio
import fnmatch
from collections import deque
from typing import Any, Dict, List, Optional, Sequence

import pytest
import pytest_asyncio

from kvlens.core.bus import RenderBus
from kvlens.core.dispatcher import Dispatcher
from kvlens.store.streams import StreamHandle
from kvlens.util.types import Result, ErrorInfo


def _b(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8", "surrogateescape")


class FakeStream:
    """Feeds StreamMessages pushed by a test into a StreamHandle."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def messages(self):
        while True:
            item = await self.queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True

    def push(self, item: Any) -> None:
        self.queue.put_nowait(item)


class FakeConnectionManager:
    """Just enough of a Redis keyspace: strings, lists, hashes, sets, zsets and streams.

    ``scan_batch`` follows real SCAN semantics: COUNT keys are examined per call
    and MATCH filters afterwards, so a batch can come back empty with a
    non-zero cursor.
    """

    def __init__(self) -> None:
        self.data: Dict[bytes, tuple] = {}
        self.ttls: Dict[bytes, int] = {}
        self.calls: List[tuple] = []
        self.failures: deque = deque()
        self.delay = 0.0
        self.scan_delay = 0.0
        self.scans_in_flight = 0
        self.max_scans_in_flight = 0
        self.streams: List[FakeStream] = []
        self.opened = False

    # Test helpers

    def set(self, key: str, value: Any) -> None:
        self.data[_b(key)] = ("string", _b(value))

    def add_keys(self, *keys: str) -> None:
        for key in keys:
            self.set(key, "v")

    def fail_next(self, code: str = "connection.lost", message: str = "Connection reset by peer",
                  times: int = 1) -> None:
        for _ in range(times):
            self.failures.append(ErrorInfo(code, message))

    def _failure(self) -> Optional[Result]:
        if self.failures:
            return Result(ok=False, error=self.failures.popleft())
        return None

    # ConnectionManager surface

    async def open(self) -> Result[None]:
        self.opened = True
        return Result(ok=True)

    async def close(self) -> Result[None]:
        self.opened = False
        return Result(ok=True)

    async def execute(self, args: Sequence[Any]) -> Result[Any]:
        args = [_b(a) for a in args]
        self.calls.append(tuple(args))
        if self.delay:
            await asyncio.sleep(self.delay)
        failed = self._failure()
        if failed:
            return failed

        cmd = args[0].upper()
        key = args[1] if len(args) > 1 else None
        kind, value = self.data.get(key, ("none", None))

        if cmd == b"PING":
            return Result(ok=True, value=b"PONG")
        if cmd == b"SET":
            self.data[key] = ("string", args[2])
            return Result(ok=True, value=True)
        if cmd == b"GET":
            return Result(ok=True, value=value if kind == "string" else None)
        if cmd == b"DEL":
            return Result(ok=True, value=sum(1 for k in args[1:] if self.data.pop(k, None)))
        if cmd == b"TYPE":
            return Result(ok=True, value=kind.encode())
        if cmd == b"TTL":
            return Result(ok=True, value=self.ttls.get(key, -1 if kind != "none" else -2))
        if cmd == b"MEMORY":
            return Result(ok=True, value=64)
        if cmd in (b"STRLEN", b"LLEN", b"SCARD", b"ZCARD", b"HLEN", b"XLEN"):
            return Result(ok=True, value=len(value or b""))
        if cmd == b"LRANGE":
            return Result(ok=True, value=list(value)[int(args[2]):int(args[3]) + 1])
        if cmd == b"HSCAN":
            return Result(ok=True, value=(0, dict(value)))
        if cmd == b"SSCAN":
            return Result(ok=True, value=(0, list(value)))
        if cmd == b"ZRANGE":
            flat: List[Any] = []
            for member, score in value:
                flat.extend((member, score))
            return Result(ok=True, value=flat)
        if cmd == b"XRANGE":
            return Result(ok=True, value=list(value))
        return Result(ok=False, error=ErrorInfo(
            "protocol.response_error", f"ERR unknown command '{args[0].decode()}'"))

    async def scan_batch(self, cursor: int, pattern: str, count: int) -> Result[Any]:
        self.calls.append(("SCAN", cursor, pattern, count))
        self.scans_in_flight += 1
        self.max_scans_in_flight = max(self.max_scans_in_flight, self.scans_in_flight)
        try:
            await asyncio.sleep(self.scan_delay)
            failed = self._failure()
            if failed:
                return failed
            keys = sorted(self.data)
            window = keys[cursor:cursor + count]
            matched = [k for k in window if fnmatch.fnmatchcase(k.decode("utf-8", "surrogateescape"), pattern)]
            next_cursor = cursor + count if cursor + count < len(keys) else 0
            return Result(ok=True, value=(next_cursor, matched))
        finally:
            self.scans_in_flight -= 1

    async def open_stream(self, args: Sequence[Any]) -> Result[StreamHandle]:
        name = " ".join(_b(a).decode() for a in args)
        self.calls.append(("STREAM", name))
        failed = self._failure()
        if failed:
            return failed
        stream = FakeStream(name)
        self.streams.append(stream)
        return Result(ok=True, value=StreamHandle(name, stream.messages(), stream.close))


@pytest.fixture
def fake_conn():
    """In-memory connection manager."""
    return FakeConnectionManager()


@pytest_asyncio.fixture
async def dispatcher(fake_conn):
    """Started dispatcher over the fake connection; no retry backoff."""
    d = Dispatcher(fake_conn, workers=2, retry_limit=3, retry_backoff_sec=0)
    d.start()
    yield d
    await d.shutdown()


@pytest.fixture
def bus(dispatcher):
    return RenderBus(dispatcher)


@pytest.fixture
def pump():
    """Tick a bus until `until()` holds (or `timeout` runs out); returns the final predicate value."""
    async def _pump(bus: RenderBus, until, timeout: float = 2.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            bus.tick()
            if until():
                return True
            await asyncio.sleep(0.005)
        bus.tick()
        return bool(until())
    return _pump
