"""Text-family decoders: plain printable UTF-8 and the structured formats JSON, XML and RON."""

import json
from typing import Tuple
from xml.dom import minidom
from xml.parsers.expat import ExpatError

from .base import DecoderEntry
from .ron import looks_like_ron, pretty_ron
from ..util.const import ValueKind
from ..util.errors import DecodeError


def as_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(f"not UTF-8: {e.reason}") from e


def is_printable(text: str) -> bool:
    return all(ch.isprintable() or ch in "\t\n\r" for ch in text)


def _first_byte(data: bytes) -> bytes:
    return data.lstrip()[:1]


def sniff_json(data: bytes) -> bool:
    return _first_byte(data) in (b"{", b"[")


def decode_json(data: bytes) -> str:
    try:
        value = json.loads(as_text(data))
    except json.JSONDecodeError as e:
        raise DecodeError(f"json: {e.msg}") from e
    return json.dumps(value, indent=2, ensure_ascii=False)


def sniff_xml(data: bytes) -> bool:
    return _first_byte(data) == b"<"


def decode_xml(data: bytes) -> str:
    text = as_text(data).strip()
    try:
        doc = minidom.parseString(text)
    except ExpatError as e:
        raise DecodeError(f"xml: {e}") from e
    pretty = doc.toprettyxml(indent="  ")
    lines = [line for line in pretty.splitlines() if line.strip()]
    if lines and lines[0].startswith("<?xml") and not text.startswith("<?xml"):
        lines = lines[1:]
    return "\n".join(lines)


def sniff_ron(data: bytes) -> bool:
    return looks_like_ron(data[:256].decode("utf-8", "ignore"))


def decode_ron(data: bytes) -> str:
    return pretty_ron(as_text(data))


JSON_ENTRY = DecoderEntry("json", ValueKind.JSON, sniff_json, decode_json)
XML_ENTRY = DecoderEntry("xml", ValueKind.XML, sniff_xml, decode_xml)
RON_ENTRY = DecoderEntry("ron", ValueKind.RON, sniff_ron, decode_ron)

STRUCTURED: Tuple[DecoderEntry, ...] = (JSON_ENTRY, XML_ENTRY, RON_ENTRY)


def sniff_text(data: bytes) -> bool:
    try:
        return is_printable(data.decode("utf-8"))
    except UnicodeDecodeError:
        return False


def decode_text(data: bytes) -> str:
    # Well-formed structured payloads belong to the richer entries further down the chain.
    for entry in STRUCTURED:
        if not entry.sniff(data):
            continue
        try:
            entry.decode(data)
        except Exception:
            continue
        raise DecodeError(f"structured payload ({entry.name})")
    return as_text(data)


TEXT_ENTRY = DecoderEntry("text", ValueKind.TEXT, sniff_text, decode_text)
