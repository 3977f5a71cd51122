"""Incremental keyspace scanner and key inspector built on the dispatcher.

A scan is a chain of single-batch READ tasks on the ``explorer.scan`` slot.
The next batch is only submitted from the handler that applies the previous
one, so at most one batch is ever in flight.  A new scan builds into a fresh
tree which replaces the visible one when its first batch lands; until then
the old tree stays on screen.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

from .tree import KeyTree, TreeRow
from ..core.bus import RenderBus
from ..core.dispatcher import Dispatcher, Outcome, TaskContext
from ..decode import DecodedValue, DecoderChain
from ..store.connection import key_to_bytes, key_to_str
from ..util.const import DEFAULTS, NoticeKind, Slot, TaskKind, TaskState
from ..util.types import Cursor, ErrorInfo, Result
from ..util.logging import log

LENGTH_COMMANDS = {
    "string": "STRLEN",
    "list": "LLEN",
    "set": "SCARD",
    "zset": "ZCARD",
    "hash": "HLEN",
    "stream": "XLEN",
}


@dataclass(frozen=True)
class ScanCursor:
    token: Cursor
    pattern: str
    batch_size: int
    exhausted: bool = False


@dataclass(frozen=True)
class ScanBatch:
    generation: int
    cursor: Cursor
    keys: Tuple[str, ...]


@dataclass(frozen=True)
class InspectItem:
    label: str
    value: DecodedValue


@dataclass(frozen=True)
class KeyDetail:
    key: str
    type: str
    ttl: Optional[int]           # seconds; None when the key has no expiry
    memory: Optional[int]        # bytes, when MEMORY USAGE is available
    length: Optional[int]
    value: Optional[DecodedValue] = None          # strings
    items: Tuple[InspectItem, ...] = ()           # first page of a collection


@dataclass(frozen=True)
class ExplorerSnapshot:
    rows: Tuple[TreeRow, ...]
    key_names: Tuple[str, ...]
    pattern: str
    filter_text: str
    filter_mode: str
    keys_scanned: int
    batches: int
    exhausted: bool
    scanning: bool
    error: Optional[ErrorInfo] = None
    detail: Optional[KeyDetail] = None


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return key_to_str(value)
    return str(value)


def _pairs(reply: Any) -> List[Tuple[Any, Any]]:
    """Field/value pairs from either a mapping or a flat alternating list."""
    if isinstance(reply, dict):
        return list(reply.items())
    items = list(reply or [])
    if items and all(isinstance(i, (list, tuple)) and len(i) == 2 for i in items):
        return [tuple(i) for i in items]
    return list(zip(items[0::2], items[1::2]))


def _page(reply: Any) -> Any:
    """Strip the cursor off an SSCAN/HSCAN reply."""
    if isinstance(reply, (list, tuple)) and len(reply) == 2 and not isinstance(reply[1], bytes):
        return reply[1]
    return reply


class KeyScanner:
    """Owns the key tree; everything else sees it through snapshots."""

    def __init__(self, dispatcher: Dispatcher, bus: RenderBus, chain: Optional[DecoderChain] = None,
                 delimiter: str = DEFAULTS["KEY_DELIMITER"], batch_size: int = DEFAULTS["SCAN_SIZE"],
                 page_size: int = DEFAULTS["INSPECT_PAGE_SIZE"]) -> None:
        self.dispatcher = dispatcher
        self.bus = bus
        self.chain = chain or DecoderChain()
        self.delimiter = delimiter
        self.batch_size = batch_size
        self.page_size = page_size

        self.tree = KeyTree(delimiter)
        self.cursor: Optional[ScanCursor] = None
        self.generation = 0
        self.batches = 0
        self.last_batch: Optional[ScanBatch] = None
        self.error: Optional[ErrorInfo] = None
        self.detail: Optional[KeyDetail] = None
        self._fresh: Optional[KeyTree] = None
        self._scanning = False
        self._filter_text = ""
        self._filter_mode = "fuzzy"
        self._state_version = 0
        self._snapshot: Optional[ExplorerSnapshot] = None
        self._snapshot_key: Optional[Tuple] = None

        bus.route(Slot.EXPLORER_SCAN.value, self._on_batch)
        bus.route(Slot.EXPLORER_INSPECT.value, self._on_inspect)

    @property
    def scanning(self) -> bool:
        return self._scanning

    def _touch(self) -> None:
        self._state_version += 1

    # Scanning

    def start_scan(self, pattern: str = "*", batch_size: Optional[int] = None) -> str:
        """Supersede any running scan and enumerate `pattern` from cursor 0."""
        size = batch_size or self.batch_size
        if size < 1:
            raise ValueError("batch_size must be positive")
        self.generation += 1
        self.cursor = ScanCursor(token=0, pattern=pattern or "*", batch_size=size)
        self.batches = 0
        self.error = None
        self._fresh = KeyTree(self.delimiter)
        self._scanning = True
        self._touch()
        log("INFO", "explorer", "scan_started", pattern=self.cursor.pattern, batch_size=size,
            generation=self.generation)
        self._submit_next()
        return Slot.EXPLORER_SCAN.value

    def stop(self) -> bool:
        """Abandon the running scan; whatever was built so far stays visible."""
        if not self._scanning:
            return False
        self.dispatcher.cancel(Slot.EXPLORER_SCAN.value)
        self._scanning = False
        self._fresh = None
        self._touch()
        log("INFO", "explorer", "scan_stopped", generation=self.generation, batches=self.batches)
        return True

    def _submit_next(self) -> None:
        cursor = self.cursor

        async def fetch(ctx: TaskContext) -> Result[Tuple[Cursor, List[bytes]]]:
            return await ctx.conn.scan_batch(cursor.token, cursor.pattern, cursor.batch_size)

        self.dispatcher.submit(Slot.EXPLORER_SCAN.value, TaskKind.READ, fetch)

    def _on_batch(self, outcome: Outcome) -> None:
        if not self._scanning or self.cursor is None:
            return
        if outcome.state is TaskState.FAILED:
            self.error = outcome.error
            self._scanning = False
            self._fresh = None
            self._touch()
            self.bus.notify(NoticeKind.ERROR, outcome.error.message, title="Scan failed")
            return

        next_token, raw_keys = outcome.value
        keys = tuple(key_to_str(k) for k in raw_keys)
        if self._fresh is not None:
            self.tree, self._fresh = self._fresh, None
            self.detail = None
        self.tree.insert_many(keys)

        self.batches += 1
        self.last_batch = ScanBatch(self.generation, next_token, keys)
        self.cursor = replace(self.cursor, token=next_token, exhausted=next_token == 0)
        self._touch()

        if self.cursor.exhausted:
            self._scanning = False
            log("INFO", "explorer", "scan_complete", generation=self.generation,
                batches=self.batches, keys=len(self.tree))
            return
        self._submit_next()

    # Filtering

    def set_filter(self, text: str, mode: str = "fuzzy") -> None:
        """Client-side view filter; never touches the tree or the backend."""
        if mode not in ("fuzzy", "pattern"):
            raise ValueError(f"unknown filter mode: {mode}")
        self._filter_text = text
        self._filter_mode = mode
        self._touch()

    # Inspection

    def inspect(self, key: str) -> str:
        """Fetch type, TTL, size and the first page of `key`'s value."""
        page = self.page_size
        raw_key = key_to_bytes(key)

        async def fetch(ctx: TaskContext) -> Result[Dict[str, Any]]:
            conn = ctx.conn
            kind = await conn.execute(["TYPE", raw_key])
            if not kind.ok:
                return kind
            type_name = _text(kind.value).lower()
            if type_name == "none":
                return Result(ok=False, error=ErrorInfo("protocol.no_such_key", f"{key} does not exist"))

            data: Dict[str, Any] = {"key": key, "type": type_name}
            ttl = await conn.execute(["TTL", raw_key])
            data["ttl"] = ttl.value if ttl.ok else None
            memory = await conn.execute(["MEMORY", "USAGE", raw_key])
            data["memory"] = memory.value if memory.ok else None
            length_cmd = LENGTH_COMMANDS.get(type_name)
            if length_cmd:
                length = await conn.execute([length_cmd, raw_key])
                data["length"] = length.value if length.ok else None

            if type_name == "string":
                args = ["GET", raw_key]
            elif type_name == "list":
                args = ["LRANGE", raw_key, 0, page - 1]
            elif type_name == "set":
                args = ["SSCAN", raw_key, 0, "COUNT", page]
            elif type_name == "zset":
                args = ["ZRANGE", raw_key, 0, page - 1, "WITHSCORES"]
            elif type_name == "hash":
                args = ["HSCAN", raw_key, 0, "COUNT", page]
            elif type_name == "stream":
                args = ["XRANGE", raw_key, "-", "+", "COUNT", page]
            else:
                return Result(ok=True, value=data)
            value = await conn.execute(args)
            if not value.ok:
                return value
            data["value"] = value.value
            return Result(ok=True, value=data)

        self.dispatcher.submit(Slot.EXPLORER_INSPECT.value, TaskKind.READ, fetch)
        log("DEBUG", "explorer", "inspect_requested", key=key)
        return Slot.EXPLORER_INSPECT.value

    def _on_inspect(self, outcome: Outcome) -> None:
        if outcome.state is TaskState.FAILED:
            self.bus.notify(NoticeKind.ERROR, outcome.error.message, title="Inspect failed")
            return
        self.detail = self._build_detail(outcome.value)
        self.tree.set_kind(self.detail.key, self.detail.type)
        self._touch()
        fallbacks = [i for i in self.detail.items if not i.value.ok]
        if (self.detail.value is not None and not self.detail.value.ok) or fallbacks:
            self.bus.notify(NoticeKind.INFO, "value shown as raw hex", title=self.detail.key)

    def _build_detail(self, data: Dict[str, Any]) -> KeyDetail:
        type_name = data["type"]
        ttl = data.get("ttl")
        raw = data.get("value")
        value: Optional[DecodedValue] = None
        items: List[InspectItem] = []

        if type_name == "string":
            value = self.chain.decode(raw)
        elif type_name == "list":
            items = [InspectItem(str(i), self.chain.decode(v)) for i, v in enumerate(raw or [])]
        elif type_name == "set":
            items = [InspectItem("", self.chain.decode(v)) for v in sorted(_page(raw) or [])]
        elif type_name == "zset":
            items = [InspectItem(_text(score), self.chain.decode(member)) for member, score in _pairs(raw)]
        elif type_name == "hash":
            items = [InspectItem(_text(f), self.chain.decode(v)) for f, v in _pairs(_page(raw))]
        elif type_name == "stream":
            for entry_id, fields in raw or []:
                for f, v in _pairs(fields):
                    items.append(InspectItem(f"{_text(entry_id)} {_text(f)}", self.chain.decode(v)))

        return KeyDetail(
            key=data["key"],
            type=type_name,
            ttl=ttl if isinstance(ttl, int) and ttl > 0 else None,
            memory=data.get("memory"),
            length=data.get("length"),
            value=value,
            items=tuple(items),
        )

    # Render surface

    def key_names(self) -> Tuple[str, ...]:
        return self.snapshot().key_names

    def snapshot(self) -> ExplorerSnapshot:
        """Immutable view for this tick; rebuilt only when something changed."""
        key = (id(self.tree), self.tree.version, self._state_version)
        if self._snapshot is not None and key == self._snapshot_key:
            return self._snapshot
        cursor = self.cursor
        self._snapshot = ExplorerSnapshot(
            rows=self.tree.rows(self._filter_text, self._filter_mode),
            key_names=tuple(self.tree.leaves()),
            pattern=cursor.pattern if cursor else "*",
            filter_text=self._filter_text,
            filter_mode=self._filter_mode,
            keys_scanned=len(self.tree),
            batches=self.batches,
            exhausted=bool(cursor and cursor.exhausted),
            scanning=self._scanning,
            error=self.error,
            detail=self.detail,
        )
        self._snapshot_key = key
        return self._snapshot
