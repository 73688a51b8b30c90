"""
Encodes literal text so it can sit inside a Lua long string.

Literal spans are embedded as ``[[...]]``. A handful of bytes would close the
string early, nest brackets (which older Lua lexers reject) or be rewritten
by the Lua lexer, so each of them is replaced by a two byte sentinel: the
introducer ``\\x1a`` followed by a code byte. The generated program undoes
the substitution at run time with ``string.gsub``; ``decode`` below is the
same transform on the Python side.
"""
import re
from typing import Dict

ESCAPE = b"\x1a"

# raw byte -> code byte following ESCAPE
_CODES: Dict[bytes, bytes] = {
    ESCAPE: ESCAPE,
    b"]": b")",
    b"[": b"(",
    b"\r": b"r",
}
# Decodes to nothing. Guards a leading newline, which Lua drops after '[['.
_EMPTY = b"."

_DECODE: Dict[bytes, bytes] = {code: raw for raw, code in _CODES.items()}
_DECODE[_EMPTY] = b""

_SENTINEL_RE = re.compile(re.escape(ESCAPE) + b"(.)", re.DOTALL)

OPEN_LITERAL = b"[["
CLOSE_LITERAL = b"]]"


def is_reserved(byte: bytes) -> bool:
    return byte in _CODES


def encode_byte(byte: bytes) -> bytes:
    code = _CODES.get(byte)
    if code is None:
        return byte
    return ESCAPE + code


def encode(text: bytes) -> bytes:
    """Encodes a whole span. Newlines are kept as real newlines."""
    return b"".join(encode_byte(text[i:i + 1]) for i in range(len(text)))


def decode(encoded: bytes) -> bytes:
    return _SENTINEL_RE.sub(lambda m: _DECODE.get(m.group(1), m.group(0)), encoded)


def literal(encoded: bytes) -> bytes:
    """Wraps an already encoded span in long brackets."""
    if encoded.startswith(b"\n"):
        encoded = ESCAPE + _EMPTY + encoded
    return OPEN_LITERAL + encoded + CLOSE_LITERAL


def _lua_char(byte: bytes) -> str:
    return "\\%d" % byte[0]


def lua_decode_table() -> str:
    """The code table as a Lua table constructor, e.g. ``{["\\41"]="\\93"}``."""
    entries = []
    for code, raw in sorted(_DECODE.items()):
        entries.append('["%s"]="%s"' % (_lua_char(code), "".join(_lua_char(raw[i:i + 1]) for i in range(len(raw)))))
    return "{" + ", ".join(entries) + "}"


def lua_decode_pattern() -> str:
    return '"%s(.)"' % _lua_char(ESCAPE)
