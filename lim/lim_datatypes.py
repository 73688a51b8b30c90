"""
Defines the error and host-facing types shared by the lim runtime.
"""

from enum import Enum
from typing import Any, List, Optional, Protocol, Tuple


class ErrorKind(Enum):
    FILE_ACCESS = "file-access"
    COMPILE = "compile"
    RUNTIME = "runtime"
    FORMATTING = "formatting"
    CALLBACK = "callback"


class AccessReason(Enum):
    NOT_FOUND = "not-found"
    PERMISSION_DENIED = "permission-denied"
    OTHER = "other"


class TemplateError(Exception):
    """A failure while reading, compiling or running a document.

    `line` is already translated to a line of the document itself. `trace` lists the
    (document, line) include calls the error travelled through, innermost
    first.
    """
    def __init__(self, kind: ErrorKind, message: str, *,
                 path: Optional[str] = None,
                 line: Optional[int] = None,
                 column: Optional[int] = None,
                 token: Optional[str] = None,
                 reason: Optional[AccessReason] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.path = path
        self.line = line
        self.column = column
        self.token = token
        self.reason = reason
        self.cause = cause
        self.trace: List[Tuple[str, Optional[int]]] = []

    def add_frame(self, path: str, line: Optional[int]) -> 'TemplateError':
        self.trace.append((path, line))
        return self

    @property
    def location(self) -> str:
        loc = self.path or "<template>"
        if self.line is not None:
            loc += f":{self.line}"
            if self.column is not None:
                loc += f" (col {self.column})"
        return loc

    def format(self) -> str:
        """Human readable 'file:line: message' report."""
        out = f"{self.location}: {self.message}"
        for path, line in self.trace:
            where = f"{path}:{line}" if line is not None else path
            out += f"\n  included from {where}"
        return out

    def __str__(self):
        return self.format()

    def __repr__(self):
        return f"TemplateError({self.kind.value}, {self.format()!r})"


class OutputSink(Protocol):
    """What the host hands to `interpret`: a body sink that can also set a status."""
    def write(self, data: bytes) -> Any: ...
    def set_status(self, code: int) -> Any: ...


class BufferSink:
    """Collects the rendered body and the status a document asked for."""
    def __init__(self):
        self.body = bytearray()
        self.status: Optional[int] = None
        self.status_calls = 0

    def write(self, data: bytes):
        self.body += data

    def set_status(self, code: int):
        self.status_calls += 1
        if not 100 <= code <= 599:
            raise ValueError(f"invalid status code {code}")
        self.status = code

    def getvalue(self) -> bytes:
        return bytes(self.body)
