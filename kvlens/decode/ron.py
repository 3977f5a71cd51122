"""RON (Rusty Object Notation) rendering for decoded object graphs, and a reformatter for RON text."""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Tuple

from ..util.errors import DecodeError

INDENT = "    "


@dataclass(frozen=True)
class Struct:
    name: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Variant:
    name: str
    value: Any = None


def _scalar(value: Any) -> str:
    if value is None:
        return "None"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, bytes):
        return json.dumps(value.decode("utf-8", "backslashreplace"), ensure_ascii=False)
    return json.dumps(str(value), ensure_ascii=False)


def to_ron(value: Any, depth: int = 0) -> str:
    pad = INDENT * (depth + 1)
    end = INDENT * depth

    if isinstance(value, Variant):
        if value.value is None:
            return value.name
        return f"{value.name}({to_ron(value.value, depth)})"

    if isinstance(value, Struct):
        if not value.fields:
            return f"{value.name}()"
        body = "".join(f"{pad}{k}: {to_ron(v, depth + 1)},\n" for k, v in value.fields.items())
        return f"{value.name}(\n{body}{end})"

    if isinstance(value, dict):
        if not value:
            return "{}"
        body = "".join(f"{pad}{to_ron(k, depth + 1)}: {to_ron(v, depth + 1)},\n" for k, v in value.items())
        return f"{{\n{body}{end}}}"

    if isinstance(value, (list, tuple, set, frozenset)):
        if not value:
            return "[]"
        body = "".join(f"{pad}{to_ron(v, depth + 1)},\n" for v in value)
        return f"[\n{body}{end}]"

    return _scalar(value)


_OPEN = {"(": ")", "[": "]", "{": "}"}
_CLOSE = set(_OPEN.values())
_SPECIAL = set("()[]{},:\"'")
_HEAD = re.compile(r"^\s*(?:[A-Za-z_][A-Za-z0-9_]*)?[(\[{]")


def looks_like_ron(text: str) -> bool:
    return bool(_HEAD.match(text))


def _tokens(text: str) -> Iterator[Tuple[str, str]]:
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
        elif ch in "\"'":
            j = i + 1
            while j < n and text[j] != ch:
                j += 2 if text[j] == "\\" else 1
            if j >= n:
                raise DecodeError("unterminated string literal")
            yield "atom", text[i:j + 1]
            i = j + 1
        elif ch in _OPEN:
            yield "open", ch
            i += 1
        elif ch in _CLOSE:
            yield "close", ch
            i += 1
        elif ch in ",:":
            yield ch, ch
            i += 1
        else:
            j = i
            while j < n and not text[j].isspace() and text[j] not in _SPECIAL:
                j += 1
            yield "atom", text[i:j]
            i = j


def pretty_ron(text: str) -> str:
    """Re-indent RON text; raises DecodeError unless it is one balanced top-level value."""
    if not looks_like_ron(text):
        raise DecodeError("not a RON value")

    out: List[str] = []
    stack: List[str] = []
    prev = ""
    newline = False
    done = False

    for kind, tok in _tokens(text):
        if done:
            raise DecodeError("trailing content after top-level value")

        if kind == "close":
            if not stack or stack.pop() != tok:
                raise DecodeError(f"unbalanced '{tok}'")
            if prev != "open":
                if prev != ",":
                    out.append(",")
                out.append("\n" + INDENT * len(stack))
            out.append(tok)
            newline = False
            done = not stack
        else:
            if newline:
                out.append("\n" + INDENT * len(stack))
                newline = False
            elif kind == "atom" and prev == "atom":
                out.append(" ")
            if kind == "open":
                stack.append(_OPEN[tok])
                out.append(tok)
                newline = True
            elif kind == ",":
                out.append(",")
                newline = True
            elif kind == ":":
                out.append(": ")
            else:
                out.append(tok)
        prev = kind

    if not done:
        raise DecodeError("unclosed bracket")
    return "".join(out)
