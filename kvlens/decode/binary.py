"""Binary decoders: Java serialization, protobuf (schema-less), and the hex fallback."""

from typing import Any, Dict, Set, Tuple

import javaobj
from google.protobuf import any_pb2
from google.protobuf.unknown_fields import UnknownFieldSet

from .base import DecoderEntry
from .ron import Struct, Variant, to_ron
from ..util.const import ValueKind
from ..util.errors import DecodeError

JAVA_MAGIC = b"\xac\xed\x00\x05"

WIRE_TYPES = {0: "Varint", 1: "Fixed64", 2: "LengthDelimited", 5: "Fixed32"}


def sniff_java(data: bytes) -> bool:
    return data[:4] == JAVA_MAGIC


def _short_name(name: str) -> str:
    return name.rsplit(".", 1)[-1].replace("$", "_") or "Object"


def _java_key(key: Any, seen: Set[int]) -> Any:
    if key is None or isinstance(key, (str, int, float, bool)):
        return key
    return to_ron(_java_value(key, seen))


def _java_value(obj: Any, seen: Set[int]) -> Any:
    if obj is None or isinstance(obj, (bool, int, float, str, bytes)):
        return obj
    if id(obj) in seen:
        desc = getattr(obj, "classdesc", None)
        return Variant("Ref", getattr(desc, "name", type(obj).__name__))
    seen.add(id(obj))

    if isinstance(obj, dict):
        return {_java_key(k, seen): _java_value(v, seen) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_java_value(v, seen) for v in obj]

    desc = getattr(obj, "classdesc", None)
    if desc is None:
        return str(obj)
    if hasattr(obj, "constant"):
        return Variant(_short_name(desc.name), str(obj.constant))

    fields: Dict[str, Any] = {}
    while desc is not None:
        for name in getattr(desc, "fields_names", []) or []:
            if name not in fields and hasattr(obj, name):
                fields[name] = _java_value(getattr(obj, name), seen)
        desc = getattr(desc, "superclass", None)
    annotations = getattr(obj, "annotations", None)
    if annotations:
        fields["annotations"] = [_java_value(a, seen) for a in annotations]
    return Struct(_short_name(obj.classdesc.name), fields)


def decode_java(data: bytes) -> str:
    try:
        obj = javaobj.loads(data)
    except Exception as e:
        raise DecodeError(f"java: {e}") from e
    return to_ron(_java_value(obj, set()))


def _read_varint(data: bytes, pos: int) -> Tuple[int, int]:
    shift = result = 0
    while pos < len(data) and shift < 64:
        b = data[pos]
        result |= (b & 0x7F) << shift
        pos += 1
        if not b & 0x80:
            return result, pos
        shift += 7
    raise DecodeError("truncated varint")


def sniff_protobuf(data: bytes) -> bool:
    """First byte(s) must form a plausible field tag: number >= 1, non-group wire type."""
    try:
        tag, _ = _read_varint(data, 0)
    except DecodeError:
        return False
    return tag >> 3 >= 1 and (tag & 0x7) in WIRE_TYPES


def _utf8(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError("protobuf: length-delimited field is not UTF-8") from e


def decode_protobuf(data: bytes) -> str:
    # Parsed as google.protobuf.Any: fields 1 and 2 land in the message, the rest stay unknown.
    message = any_pb2.Any()
    try:
        message.ParseFromString(data)
    except Exception as e:
        raise DecodeError(f"protobuf: {e}") from e

    fields: Dict[int, Variant] = {}
    if message.type_url:
        fields[1] = Variant("LengthDelimited", message.type_url)
    if message.value:
        fields[2] = Variant("LengthDelimited", _utf8(message.value))
    for unknown in UnknownFieldSet(message):
        name = WIRE_TYPES.get(unknown.wire_type)
        if name is None:
            raise DecodeError("protobuf: group fields are not supported")
        value = _utf8(unknown.data) if unknown.wire_type == 2 else unknown.data
        fields[unknown.field_number] = Variant(name, value)

    if not fields:
        raise DecodeError("protobuf: no fields")
    return to_ron(dict(sorted(fields.items())))


def decode_hex(data: bytes) -> str:
    return data.hex()


def hexdump(data: bytes, width: int = 16) -> str:
    """Offset, hex columns and an ASCII gutter, sixteen bytes per line."""
    lines = []
    for offset in range(0, len(data), width):
        chunk = data[offset:offset + width]
        hex_part = " ".join(f"{b:02x}" for b in chunk)
        ascii_part = "".join(chr(b) if 0x20 <= b < 0x7F else "." for b in chunk)
        lines.append(f"{offset:08x}  {hex_part:<{width * 3 - 1}}  |{ascii_part}|")
    return "\n".join(lines)


JAVA_ENTRY = DecoderEntry("java", ValueKind.JAVA_OBJECT, sniff_java, decode_java)
PROTOBUF_ENTRY = DecoderEntry("protobuf", ValueKind.PROTOBUF, sniff_protobuf, decode_protobuf)
HEX_FALLBACK = DecoderEntry("hex", ValueKind.RAW_BINARY, lambda data: True, decode_hex)
