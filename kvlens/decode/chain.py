"""Ordered decoder chain: the first entry whose sniff and decode both succeed wins.

Priority, highest first:

1. ``text``      printable UTF-8 (declines well-formed structured payloads)
2. ``json``, ``xml``, ``ron``  structured text by leading byte / keyword
3. ``java``      Java serialization stream magic ``AC ED 00 05``
   ``protobuf``  plausible field tag, parsed schema-less
4. ``hex``       raw fallback; always sniffs, never fails

Java is tried before protobuf because its magic number is definitive while the
protobuf test is only a heuristic.
"""

from typing import Iterable, List, Optional, Tuple, Union

from .base import DecodedValue, DecoderEntry
from .binary import HEX_FALLBACK, JAVA_ENTRY, PROTOBUF_ENTRY, hexdump
from .text import JSON_ENTRY, RON_ENTRY, TEXT_ENTRY, XML_ENTRY
from ..util.const import ValueKind
from ..util.logging import log


def default_entries() -> List[DecoderEntry]:
    return [TEXT_ENTRY, JSON_ENTRY, XML_ENTRY, RON_ENTRY, JAVA_ENTRY, PROTOBUF_ENTRY, HEX_FALLBACK]


def _as_bytes(data: Union[bytes, bytearray, memoryview, str, None]) -> bytes:
    if data is None:
        return b""
    if isinstance(data, str):
        return data.encode("utf-8", "surrogateescape")
    return bytes(data)


class DecoderChain:
    def __init__(self, entries: Optional[Iterable[DecoderEntry]] = None) -> None:
        chain = list(entries) if entries is not None else default_entries()
        if not chain or chain[-1] is not HEX_FALLBACK:
            chain = [e for e in chain if e is not HEX_FALLBACK] + [HEX_FALLBACK]
        self._entries: Tuple[DecoderEntry, ...] = tuple(chain)

    @property
    def entries(self) -> Tuple[DecoderEntry, ...]:
        return self._entries

    def register(self, entry: DecoderEntry) -> None:
        """Add a decoder after every existing one except the fallback."""
        self._entries = self._entries[:-1] + (entry, self._entries[-1])

    def decode(self, data: Union[bytes, bytearray, memoryview, str, None]) -> DecodedValue:
        raw = _as_bytes(data)
        for entry in self._entries:
            try:
                if not entry.sniff(raw):
                    continue
                rendered = entry.decode(raw)
            except Exception as e:
                # Any decoder failure, expected or not, just passes control down the chain.
                log("DEBUG", "decode", "entry_declined", entry=entry.name, size=len(raw), error=str(e))
                continue
            return DecodedValue(raw, entry.kind, rendered, ok=entry is not HEX_FALLBACK)
        return DecodedValue(raw, ValueKind.RAW_BINARY, raw.hex(), ok=False)

    def hexdump(self, data: Union[bytes, bytearray, memoryview, str, None]) -> DecodedValue:
        raw = _as_bytes(data)
        return DecodedValue(raw, ValueKind.HEX, hexdump(raw), ok=True)
