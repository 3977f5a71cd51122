from dataclasses import dataclass
from typing import Callable

from ..util.const import ValueKind


@dataclass(frozen=True)
class DecodedValue:
    source_bytes: bytes
    kind: ValueKind
    rendered: str
    ok: bool          # False when only the raw fallback could render it


@dataclass(frozen=True)
class DecoderEntry:
    """One link of the chain: a cheap sniff plus a full decode that may raise DecodeError."""
    name: str
    kind: ValueKind
    sniff: Callable[[bytes], bool]
    decode: Callable[[bytes], str]
