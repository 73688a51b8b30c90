# lim_runtime.py

import os
import re
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Literal, Optional, Dict

from lupa import LuaRuntime, LuaError

from lim.lim_config import Settings
from lim.lim_context import Context, load_program
from lim.lim_datatypes import TemplateError, ErrorKind, OutputSink, BufferSink
from lim.lim_file import FileReader
from lim.lim_transpiler import Program

logger = logging.getLogger(__name__)

BUDGET_MESSAGE = "execution budget exceeded"

# ===================================================================
# 1. Engine
# ===================================================================

_SANDBOX = """
for _, name in ipairs({"io", "dofile", "loadfile", "load", "require", "package", "debug", "python"}) do
  _G[name] = nil
end
string.dump = nil
local os_ = os
os = {clock = os_.clock, date = os_.date, difftime = os_.difftime, time = os_.time}
"""

# Count hook shared by the main thread and every coroutine. Instructions are
# tallied per `step` across all threads; once the budget is spent the hook
# fires on every instruction, so pcall cannot keep a script alive.
_BUDGET_HOOK = """
local raise, message, sethook, budget, step = ...
local used, spent = 0, false
local hook
hook = function()
  if not spent then
    used = used + step
    if used < budget then return end
    spent = true
  end
  sethook(hook, "", 1)
  raise(message, 2)
end

local create, resume, pack, unpack = coroutine.create, coroutine.resume, table.pack, table.unpack
local function hooked(f)
  local co = create(f)
  sethook(co, hook, "", spent and 1 or step)
  return co
end
coroutine.create = hooked
coroutine.wrap = function(f)
  local co = hooked(f)
  return function(...)
    local res = pack(resume(co, ...))
    if not res[1] then raise(res[2], 0) end
    return unpack(res, 2, res.n)
  end
end
return hook
"""

_HOOK_STEP = 1000


def _deny_attributes(obj, attr_name, is_setting):
    raise AttributeError(f"access to '{attr_name}' is not allowed")


def lua_text(message) -> str:
    """Text of a message that came out of Lua.

    The runtime hands strings over as bytes; error messages arrive as str
    decoded byte for byte, so they are re-read as UTF-8.
    """
    if isinstance(message, bytes):
        return message.decode("utf-8", errors="replace")
    message = str(message)
    try:
        return message.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        return message


class Engine:
    """A Lua runtime plus the few engine functions the runner keeps for itself.

    Strings cross between Lua and Python as bytes, so documents in any
    encoding come out unchanged.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        kwargs: Dict[str, Any] = {}
        if self.settings.max_memory:
            kwargs["max_memory"] = self.settings.max_memory
        self.lua = LuaRuntime(encoding=None, register_eval=False, attribute_filter=_deny_attributes, **kwargs)

        g = self.lua.globals()
        # Grabbed before the sandbox strips them from the script's view.
        self.load = g.load
        self.sethook = g.debug.sethook
        self.hook = None
        self.step = 0
        budget = self.settings.max_instructions
        if budget:
            self.step = min(budget, _HOOK_STEP)
            self.hook = self.lua.execute(_BUDGET_HOOK, g.error, BUDGET_MESSAGE.encode("ascii"),
                                         self.sethook, budget, self.step)
        if self.settings.sandbox:
            self.lua.execute(_SANDBOX)

    def arm(self):
        if self.hook is not None:
            self.sethook(self.hook, b"", self.step)

    def disarm(self):
        if self.hook is not None:
            self.sethook()


# ===================================================================
# 2. Runner
# ===================================================================

def _chunk_label(program: Program) -> bytes:
    # Lua cuts chunk names in messages at ~60 bytes; keep ours short.
    return os.fsencode(os.path.basename(program.name))[:40] or b"<template>"


def _parse_lua_message(name: str, message: str):
    """Splits '<name>:<line>: <text>' as produced by the Lua error machinery."""
    message = message.split("\nstack traceback:", 1)[0]
    m = re.search(re.escape(name) + r":(\d+): (.*)", message, re.DOTALL)
    if not m:
        return None, message.strip()
    return int(m.group(1)), m.group(2).strip()


_NEAR_RE = re.compile(r"near (<eof>|'(.*)')$", re.DOTALL)


def run_program(program: Program, context: Context):
    """Compiles and runs `program` against the context's engine.

    Raises TemplateError with the line translated back to the document.
    """
    engine: Engine = context.engine

    label = _chunk_label(program)
    name = lua_text(label)
    loaded = engine.load(program.code, b"=" + label, b"t")
    fn, message = (loaded[0], loaded[1] if len(loaded) > 1 else None) if isinstance(loaded, tuple) else (loaded, None)
    if fn is None:
        line, text = _parse_lua_message(name, lua_text(message))
        token = None
        m = _NEAR_RE.search(text)
        if m:
            token = m.group(2) if m.group(2) is not None else m.group(1)
        raise TemplateError(ErrorKind.COMPILE, text, path=program.name,
                            line=program.line_map.source_line(line), token=token)

    try:
        fn()
    except LuaError as e:
        line, text = _parse_lua_message(name, lua_text(e))
        source_line = program.line_map.source_line(line)
        failure = context.include_failure
        if failure is not None and failure.format() in text:
            # An included document failed; keep its error and note where it was included.
            context.include_failure = None
            if failure.line is None and not failure.trace:
                # Nothing of the included document ran: the include call itself failed.
                failure.path, failure.line = program.name, source_line
                raise failure
            raise failure.add_frame(program.name, source_line)
        raise TemplateError(ErrorKind.RUNTIME, text, path=program.name,
                            line=source_line, cause=e) from e
    except TemplateError:
        raise
    except Exception as e:
        raise TemplateError(ErrorKind.RUNTIME, f"InternalError: {e}", path=program.name, cause=e) from e


def new_context(sink: Optional[OutputSink], *,
                name: str = "<template>",
                settings: Optional[Settings] = None,
                reader: Optional[FileReader] = None) -> Context:
    """A fresh engine and context. Neither may be shared between runs."""
    settings = settings or Settings()
    return Context(Engine(settings), sink, reader=reader, settings=settings, name=name)


def execute(context: Context, source: bytes):
    """Runs a document in `context`, then settles the deferred callbacks.

    On success the callbacks have run and the sink holds the whole output.
    On failure the callbacks are dropped unrun, the sink receives the output
    produced before the failing statement and the TemplateError is raised.
    """
    sink = context.sink
    program = load_program(source, context.name)
    context.engine.arm()
    try:
        run_program(program, context)
    except TemplateError as err:
        context.side_effects.append({'topics': ['stderr'], 'message': err.format()})
        context.callbacks.clear()
        if sink is not None:
            sink.write(context.output)
        raise
    finally:
        context.engine.disarm()

    context.run_callbacks()
    if sink is not None:
        sink.write(context.output)


def interpret(source: bytes, sink: Optional[OutputSink], *,
              name: str = "<template>",
              settings: Optional[Settings] = None,
              reader: Optional[FileReader] = None) -> Context:
    """Renders `source` into `sink`; returns the context, raises TemplateError."""
    context = new_context(sink, name=name, settings=settings, reader=reader)
    execute(context, source)
    return context


# ===================================================================
# 3. Script Execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of rendering a document."""
    status: Literal['success', 'error']
    output: bytes = b""
    error: Optional[TemplateError] = None
    status_code: Optional[int] = None
    side_effects: List[Dict] = field(default_factory=list)
    callback_errors: List[TemplateError] = field(default_factory=list)
    source: Optional[bytes] = None

    @property
    def error_message(self) -> Optional[str]:
        return self.error.format() if self.error else None

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")

    def format_error(self) -> str:
        """Formats the error, with a source excerpt when the line is known."""
        if self.status != 'error' or self.error is None:
            return ""
        msg = self.error.format()
        err = self.error
        # The excerpt is only meaningful for the document we were handed.
        if err.line is not None and self.source is not None and not err.trace:
            context = _source_context(self.source.decode("utf-8", errors="replace"), err.line)
            if context:
                msg = f"{msg}\n{context}"
        return msg


def _source_context(source: str, line: int, radius: int = 2) -> str:
    lines = source.splitlines()
    if not line or line < 1 or line > len(lines):
        return ""
    start = max(1, line - radius)
    end = min(len(lines), line + radius)
    width = len(str(end))
    out = []
    for i in range(start, end + 1):
        prefix = ">" if i == line else " "
        out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
    return "\n".join(out)


class TemplateRunner:
    """Renders documents and reports the outcome as an ExecutionResult."""

    def __init__(self, settings: Optional[Settings] = None, reader: Optional[FileReader] = None):
        self.settings = settings or Settings()
        self.reader = reader or FileReader()

    def render(self, source: bytes | str, name: str = "<template>", sink: Optional[OutputSink] = None) -> ExecutionResult:
        if isinstance(source, str):
            source = source.encode("utf-8")
        sink = sink if sink is not None else BufferSink()
        context = new_context(sink, name=name, settings=self.settings, reader=self.reader)
        try:
            execute(context, source)
        except TemplateError as err:
            logger.error("%s", err.format())
            return ExecutionResult(
                status='error',
                output=context.output,
                error=err,
                side_effects=context.side_effects,
                source=source,
            )
        return ExecutionResult(
            status='success',
            output=context.output,
            status_code=getattr(sink, "status", None),
            side_effects=context.side_effects,
            callback_errors=context.callback_errors,
            source=source,
        )

    async def handle_template(self, source: bytes | str, name: str = "<template>",
                              sink: Optional[OutputSink] = None) -> ExecutionResult:
        """The async entry point. The run itself is synchronous, so it goes to a worker thread."""
        return await asyncio.to_thread(self.render, source, name, sink)

    async def handle_file(self, path: str, sink: Optional[OutputSink] = None) -> ExecutionResult:
        try:
            resolved = self.reader.resolve(path)
            source = await asyncio.to_thread(self.reader.read, resolved)
        except TemplateError as err:
            return ExecutionResult(
                status='error', error=err,
                side_effects=[{'topics': ['stderr'], 'message': err.format()}],
            )
        return await self.handle_template(source, resolved, sink)

