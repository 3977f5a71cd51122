"""Reply rendering in the style of redis-cli."""

from typing import Any, List, Optional

from ..decode import DecoderChain
from ..store.streams import StreamMessage
from ..util.const import ValueKind

STATUS_REPLIES = frozenset({b"OK", b"PONG", b"QUEUED", "OK", "PONG", "QUEUED"})

# redis-py turns these commands' "+OK" into True.
OK_COMMANDS = frozenset({
    "AUTH", "FLUSHALL", "FLUSHDB", "HMSET", "LSET", "LTRIM", "MSET", "PSETEX", "RENAME", "RESTORE",
    "SAVE", "SELECT", "SET", "SETEX", "SWAPDB",
})


def _scalar_lines(value: Any, chain: DecoderChain) -> List[str]:
    if value in STATUS_REPLIES:
        return [value.decode() if isinstance(value, bytes) else value]
    decoded = chain.decode(value)
    if decoded.kind is ValueKind.TEXT and "\n" not in decoded.rendered:
        return ['"' + decoded.rendered.replace("\\", "\\\\").replace('"', '\\"') + '"']
    return decoded.rendered.splitlines() or [""]


def reply_to_lines(reply: Any, chain: Optional[DecoderChain] = None, command: str = "") -> List[str]:
    """Render one reply as display lines: ``(nil)``, ``(integer) n``, numbered arrays, ``(error) ...``."""
    chain = chain or DecoderChain()
    if reply is None:
        return ["(nil)"]
    if isinstance(reply, bool):
        if reply and command.upper() in OK_COMMANDS:
            return ["OK"]
        return [f"(integer) {int(reply)}"]
    if isinstance(reply, int):
        return [f"(integer) {reply}"]
    if isinstance(reply, float):
        return [f'"{reply!r}"']
    if isinstance(reply, BaseException):
        return [f"(error) {reply}"]
    if isinstance(reply, (bytes, bytearray, memoryview, str)):
        return _scalar_lines(bytes(reply) if isinstance(reply, (bytearray, memoryview)) else reply, chain)
    if isinstance(reply, dict):
        flat: List[Any] = []
        for k, v in reply.items():
            flat.extend((k, v))
        reply = flat
    if isinstance(reply, (list, tuple, set, frozenset)):
        items = sorted(reply, key=repr) if isinstance(reply, (set, frozenset)) else list(reply)
        if not items:
            return ["(empty array)"]
        width = len(str(len(items)))
        lines: List[str] = []
        for i, item in enumerate(items, 1):
            prefix = f"{i:>{width}}) "
            sub = reply_to_lines(item, chain)
            lines.append(prefix + sub[0])
            lines.extend(" " * len(prefix) + line for line in sub[1:])
        return lines
    return [str(reply)]


def error_lines(message: str) -> List[str]:
    return [f"(error) {message}"]


def message_to_lines(message: StreamMessage, chain: Optional[DecoderChain] = None) -> List[str]:
    """Render one push message the way redis-cli prints subscription and monitor output."""
    chain = chain or DecoderChain()
    if message.kind == "monitor":
        d = message.detail
        return [f"{d.get('time', '')} [{d.get('db', '')} {d.get('client_address', '')}:"
                f"{d.get('client_port', '')}] {message.payload}"]
    parts: List[Any] = [message.kind.encode()]
    if message.pattern is not None:
        parts.append(message.pattern)
    parts.extend((message.channel, message.payload))
    return reply_to_lines(parts, chain)
