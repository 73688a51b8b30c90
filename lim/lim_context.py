"""
The execution context of one interpretation.

A Context owns the output buffer and the deferred callback queue and exposes
the primitives documents call (`write`, `print`, `include`, `log.*`,
`response.status`). Primitives are bound methods installed into one Lua
engine, so two concurrent interpretations never share state.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, List, Optional

from lim.lim_config import Settings
from lim.lim_datatypes import TemplateError, ErrorKind, OutputSink
from lim.lim_file import FileReader
from lim import lim_escape
from lim.lim_transpiler import TEXT_EMITTER, Program, transpile, transpile_script
# NOTE: run_program is imported lazily in include() to avoid a circular import.

logger = logging.getLogger(__name__)
script_logger = logging.getLogger("lim.script")

# Lua glue, run once per runtime. Receives the Python primitives and returns
# the literal emitter and the include wrapper. The wrapper turns a reported
# include failure into a Lua error at the caller's line.
_GLUE = """
local write, include, gsub, raise = ...
local codes = %(codes)s
local function text(s)
  write((gsub(s, %(pattern)s, codes)))
end
local function checked_include(path)
  local err = include(path)
  if err then raise(err, 2) end
end
return text, checked_include
""" % {"codes": lim_escape.lua_decode_table(), "pattern": lim_escape.lua_decode_pattern()}

_LOG_LEVELS = {
    "info": (logging.INFO, "[info] "),
    "warn": (logging.WARNING, "[warning] "),
    "error": (logging.ERROR, "[error] "),
    "debug": (logging.DEBUG, "[debug] "),
}


class Context:
    """Output buffer, deferred callbacks and the primitive surface of one run."""

    def __init__(self, engine, sink: Optional[OutputSink], *,
                 reader: Optional[FileReader] = None,
                 settings: Optional[Settings] = None,
                 name: str = "<template>"):
        self.engine = engine
        runtime = engine.lua
        self.sink = sink
        self.reader = reader or FileReader()
        self.settings = settings or Settings()
        self.name = name

        self.out = bytearray()
        self.callbacks: List[Callable[[], Any]] = []
        self.side_effects: List[Dict] = []
        self.callback_errors: List[TemplateError] = []

        # Documents currently executing, outermost first. Drives relative
        # include resolution and cycle detection.
        self.documents: List[str] = [name]
        # Last failure reported back to Lua by include(); see run_program.
        self.include_failure: Optional[TemplateError] = None

        g = runtime.globals()
        self._tostring = g.tostring
        text, checked_include = runtime.execute(_GLUE, self.write, self._include, g.string.gsub, g.error)

        # The runtime keeps Lua strings as bytes; global names included.
        g[TEXT_EMITTER.encode("ascii")] = text
        g[b"write"] = self.write
        g[b"print"] = self.print
        g[b"include"] = checked_include
        g[b"log"] = runtime.table_from({
            b"info": self.log_info, b"warn": self.log_warn,
            b"error": self.log_error, b"debug": self.log_debug,
        })
        g[b"response"] = runtime.table_from({b"status": self.response_status})

    @property
    def output(self) -> bytes:
        return bytes(self.out)

    # --- Output ---

    def _text(self, value) -> bytes:
        if isinstance(value, bytes):
            return value
        if isinstance(value, str):
            return value.encode("utf-8")
        return self._tostring(value)

    def _str(self, value) -> str:
        return self._text(value).decode("utf-8", errors="replace")

    def write(self, *args):
        """write("foo", "bar"): space-joined, no trailing newline."""
        self.out += b" ".join(self._text(a) for a in args)

    def print(self, *args):
        """print("foo", "bar"): like write, with a trailing newline."""
        self.write(*args)
        self.out += b"\n"

    # --- Logging ---

    def _log(self, level: str, template=None, *args):
        lvl, prefix = _LOG_LEVELS[level]
        tpl = self._str(template)
        if not args:
            message = tpl
        else:
            values = tuple(a if isinstance(a, (int, float)) and not isinstance(a, bool)
                           else self._str(a) for a in args)
            try:
                message = tpl % values
            except (TypeError, ValueError, KeyError) as e:
                err = TemplateError(ErrorKind.FORMATTING, f"log.{level}: {e}", path=self.documents[-1])
                logger.warning("%s", err.format())
                self.side_effects.append({'topics': ['stderr', 'formatting'], 'message': err.format()})
                message = f"{tpl} {values!r}"
        script_logger.log(lvl, "%s%s", prefix, message)
        self.side_effects.append({'topics': ['log', level], 'message': message})

    def log_info(self, *args): self._log("info", *args)
    def log_warn(self, *args): self._log("warn", *args)
    def log_error(self, *args): self._log("error", *args)
    def log_debug(self, *args): self._log("debug", *args)

    # --- Response ---

    def response_status(self, *args):
        """response.status(403): deferred until the whole run succeeds."""
        if not args:
            return
        value = args[-1]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return
        if isinstance(value, float):
            if not value.is_integer():
                logger.debug("response.status: ignoring non-integral code %s", value)
                return
            value = int(value)
        code = value
        self.callbacks.append(lambda: self._set_status(code))

    def _set_status(self, code: int):
        if self.sink is None:
            raise RuntimeError("no host response to set the status on")
        self.sink.set_status(code)

    def run_callbacks(self) -> List[TemplateError]:
        """Runs the deferred callbacks in order. Failures are logged, not raised."""
        callbacks, self.callbacks = self.callbacks, []
        errors = []
        for index, callback in enumerate(callbacks):
            try:
                callback()
            except Exception as e:
                err = TemplateError(ErrorKind.CALLBACK, f"deferred callback #{index + 1} failed: {e}",
                                    path=self.name, cause=e)
                logger.error("%s", err.format())
                self.side_effects.append({'topics': ['stderr', 'callback'], 'message': err.format()})
                errors.append(err)
        self.callback_errors.extend(errors)
        return errors

    # --- Includes ---

    def _include(self, path=None) -> Optional[bytes]:
        self.include_failure = None
        try:
            self.include(path)
        except TemplateError as err:
            self.include_failure = err
            return err.format().encode("utf-8", errors="replace")
        return None

    def _base_dir(self) -> Optional[str]:
        current = self.documents[-1]
        if current.startswith("<"):
            return None
        return os.path.dirname(current) or None

    def include(self, path):
        """Interprets another document in place, sharing this context."""
        from lim.lim_runtime import run_program

        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if not isinstance(path, str) or not path:
            raise TemplateError(ErrorKind.RUNTIME, "include expects a file path",
                                path=self.documents[-1])

        resolved = self.reader.resolve(path, self._base_dir())
        if resolved in self.documents:
            chain = " -> ".join(self.documents[self.documents.index(resolved):] + [resolved])
            raise TemplateError(ErrorKind.RUNTIME, f"include cycle: {chain}", path=self.documents[-1])
        if len(self.documents) > self.settings.max_include_depth:
            raise TemplateError(ErrorKind.RUNTIME,
                                f"include depth exceeds {self.settings.max_include_depth}",
                                path=self.documents[-1])

        source = self.reader.read(resolved)
        program = load_program(source, resolved)
        logger.debug("including %s from %s", resolved, self.documents[-1])

        self.documents.append(resolved)
        try:
            run_program(program, self)
        finally:
            self.documents.pop()


def load_program(source: bytes, name: str) -> Program:
    if name.lower().endswith(".lua"):
        return transpile_script(source, name)
    return transpile(source, name)
