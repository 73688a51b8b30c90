from lim.lim_datatypes import TemplateError, ErrorKind, AccessReason, OutputSink, BufferSink
from lim.lim_transpiler import Transpiler, Program, LineMap, transpile, transpile_script
from lim.lim_config import Settings, load_settings, configure_logging
from lim.lim_file import FileReader
from lim.lim_context import Context
from lim.lim_runtime import Engine, ExecutionResult, TemplateRunner, interpret, new_context, execute, run_program
from lim.lim_http import Handler

__all__ = [
    "TemplateError", "ErrorKind", "AccessReason", "OutputSink", "BufferSink",
    "Transpiler", "Program", "LineMap", "transpile", "transpile_script",
    "Settings", "load_settings", "configure_logging",
    "FileReader", "Context",
    "Engine", "ExecutionResult", "TemplateRunner", "interpret", "new_context", "execute", "run_program",
    "Handler",
]
