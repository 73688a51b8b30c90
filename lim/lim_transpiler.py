"""
Turns a markup document into a single Lua program.

The scanner walks the document byte by byte. Literal text is collected and
flushed as a call to the literal emitter, script regions are copied verbatim.
Since literal text becomes ordinary statements of the same chunk, a loop
opened in one script region repeats the text up to the region that closes it.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from lim import lim_escape

logger = logging.getLogger(__name__)

OPEN_MARKER = b"<?lua"
CLOSE_MARKER = b"?>"

# Global installed by the context. The prelude pins it to a chunk local.
TEXT_EMITTER = "__lim_text"
PRELUDE = ("local %s = %s" % (TEXT_EMITTER, TEXT_EMITTER)).encode("ascii")


class ScanState(Enum):
    TEXT = "text"
    SCRIPT = "script"


@dataclass(frozen=True)
class LineMap:
    """Maps generated program lines back to document lines.

    ``starts[i]`` is the document line on which generated line ``i + 1``
    begins, or None for lines that only hold generated code.
    """
    starts: Tuple[Optional[int], ...]

    def source_line(self, line: Optional[int]) -> Optional[int]:
        if line is None or line < 1 or line > len(self.starts):
            return None
        return self.starts[line - 1]

    @classmethod
    def identity(cls, source: bytes) -> 'LineMap':
        return cls(tuple(range(1, source.count(b"\n") + 2)))


@dataclass(frozen=True)
class Program:
    code: bytes
    name: str
    line_map: LineMap


class _ProgramBuffer:
    def __init__(self):
        self.data = bytearray()
        self.starts: List[Optional[int]] = [None]

    def emit(self, chunk: bytes, line: int) -> int:
        """Appends chunk, whose first byte belongs to document line `line`."""
        self.data += chunk
        for _ in range(chunk.count(b"\n")):
            line += 1
            self.starts.append(line)
        return line

    def newline(self, line: int):
        # Generated newline: the next program line still starts on `line`.
        self.data += b"\n"
        self.starts.append(line)


class Transpiler:
    """Scanner state machine over a document's raw bytes."""

    def __init__(self, open_marker: bytes = OPEN_MARKER, close_marker: bytes = CLOSE_MARKER):
        self.open_marker = open_marker
        self.close_marker = close_marker

    def transpile(self, source: bytes, name: str = "<template>") -> Program:
        buf = _ProgramBuffer()
        buf.data += PRELUDE
        buf.newline(1)

        state = ScanState.TEXT
        pending = bytearray()
        pending_line = 1
        line = 1
        i = 0
        n = len(source)

        while i < n:
            if state is ScanState.TEXT:
                # startswith never matches a marker cut short by the end of input
                if source.startswith(self.open_marker, i):
                    self._flush(buf, pending, pending_line)
                    state = ScanState.SCRIPT
                    i += len(self.open_marker)
                    continue
                byte = source[i:i + 1]
                if not pending:
                    pending_line = line
                pending += lim_escape.encode_byte(byte)
            else:
                if source.startswith(self.close_marker, i):
                    # A trailing '--' comment must not reach the next text call.
                    buf.newline(line)
                    state = ScanState.TEXT
                    i += len(self.close_marker)
                    continue
                byte = source[i:i + 1]
                buf.emit(byte, line)
            if byte == b"\n":
                line += 1
            i += 1

        if state is ScanState.TEXT:
            self._flush(buf, pending, pending_line)
        else:
            # Unterminated script block: closed implicitly by the end of the document.
            logger.debug("%s: script block left open at end of document (line %d)", name, line)

        return Program(bytes(buf.data), name, LineMap(tuple(buf.starts)))

    def _flush(self, buf: _ProgramBuffer, pending: bytearray, line: int):
        if not pending:
            return
        buf.emit(b" " + TEXT_EMITTER.encode("ascii") + b"(", line)
        line = buf.emit(lim_escape.literal(bytes(pending)), line)
        buf.emit(b");", line)
        pending.clear()


def transpile(source: bytes, name: str = "<template>") -> Program:
    return Transpiler().transpile(source, name)


def transpile_script(source: bytes, name: str = "<script>") -> Program:
    """Pure Lua documents (`.lua`) run as they are."""
    return Program(bytes(source), name, LineMap.identity(source))
