"""Tokenizer for console lines: whitespace separated, with quoting and escapes."""

from typing import List

from ..util.errors import CommandParseError

QUOTES = "'\"`"

_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "a": "\a",
    "\\": "\\",
    '"': '"',
    "'": "'",
}


def split_args(line: str) -> List[str]:
    """Split `line` into arguments.

    Single quotes, double quotes and backticks group text (an empty pair gives
    an empty argument); quoted and bare text that touch form one argument.
    Inside double quotes ``\\n \\t \\r \\b \\a \\\\ \\"`` and ``\\xHH`` are
    unescaped; inside single quotes only ``\\'``.  Backticks take text
    literally.  An unterminated quote raises CommandParseError.
    """
    args: List[str] = []
    current: List[str] = []
    has_token = False
    i, n = 0, len(line)

    while i < n:
        ch = line[i]
        if ch.isspace():
            if has_token:
                args.append("".join(current))
                current, has_token = [], False
            i += 1
            continue

        if ch not in QUOTES:
            current.append(ch)
            has_token = True
            i += 1
            continue

        quote = ch
        start = i
        i += 1
        has_token = True
        while True:
            if i >= n:
                raise CommandParseError(f"unterminated {quote} quote at column {start + 1}")
            ch = line[i]
            if ch == quote:
                i += 1
                break
            if ch == "\\" and i + 1 < n and quote != "`":
                nxt = line[i + 1]
                if quote == '"' and nxt == "x":
                    digits = line[i + 2:i + 4]
                    if len(digits) != 2 or any(c not in "0123456789abcdefABCDEF" for c in digits):
                        raise CommandParseError(f"invalid \\x escape at column {i + 1}")
                    value = int(digits, 16)
                    # High bytes ride as lone surrogates so they encode back to the exact byte.
                    current.append(chr(value) if value < 0x80 else chr(0xDC00 + value))
                    i += 4
                    continue
                if quote == '"' and nxt in _ESCAPES:
                    current.append(_ESCAPES[nxt])
                    i += 2
                    continue
                if quote == "'" and nxt == "'":
                    current.append("'")
                    i += 2
                    continue
            current.append(ch)
            i += 1

    if has_token:
        args.append("".join(current))
    return args
