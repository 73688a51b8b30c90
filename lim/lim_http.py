import asyncio
import logging
import mimetypes
import posixpath
from http import HTTPStatus
from typing import Any, Awaitable, Callable, List, Optional

from lim.lim_config import Settings
from lim.lim_datatypes import TemplateError, ErrorKind, AccessReason, BufferSink
from lim.lim_file import FileReader
from lim.lim_runtime import interpret

logger = logging.getLogger(__name__)

ASGIApp = Callable[[dict, Callable[[], Awaitable[dict]], Callable[[dict], Awaitable[Any]]], Awaitable[Any]]

mimetypes.add_type("text/html", ".lim")


def path_matches(path: str, base_path: str) -> bool:
    return path.startswith(base_path)


def status_for_error(err: TemplateError) -> int:
    """Maps a failure to the HTTP status the client sees."""
    match err.kind:
        case ErrorKind.FILE_ACCESS:
            match err.reason:
                case AccessReason.NOT_FOUND:
                    return 404
                case AccessReason.PERMISSION_DENIED:
                    return 403
                case _:
                    return 500
        case ErrorKind.COMPILE | ErrorKind.RUNTIME:
            return 500
        case ErrorKind.FORMATTING | ErrorKind.CALLBACK:
            # Never fatal on their own; reaching here is a host bug.
            return 500


class Handler:
    """ASGI application serving lim documents under the configured rules.

    A request is handled by the first rule whose base path prefixes the
    request path; anything else goes to `next_app` (or gets a 404).
    """

    def __init__(self, settings: Optional[Settings] = None, next_app: Optional[ASGIApp] = None,
                 reader: Optional[FileReader] = None):
        self.settings = settings or Settings()
        self.rules: List[str] = list(self.settings.rules)
        self.next_app = next_app
        self.reader = reader or FileReader(self.settings.root)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            if self.next_app is not None:
                return await self.next_app(scope, receive, send)
            return
        # ASGI hands over the path already percent-decoded.
        path = scope.get("path") or "/"
        if not any(path_matches(path, rule) for rule in self.rules):
            if self.next_app is not None:
                return await self.next_app(scope, receive, send)
            return await self._respond(send, 404, b"404 Not Found")

        status, body, content_type = await self.serve(path)
        await self._respond(send, status, body, content_type)

    def _locate(self, path: str) -> str:
        # The URL path is site-absolute; normpath folds any '..' below '/'.
        fpath = self.reader.resolve(posixpath.normpath("/" + path.lstrip("/")))
        if self.reader.is_dir(fpath):
            for page in self.settings.index_pages:
                candidate = posixpath.join(fpath, page)
                if self.reader.is_file(candidate):
                    return candidate
            raise TemplateError(ErrorKind.FILE_ACCESS, f"no index page in '{path}'",
                                path=fpath, reason=AccessReason.NOT_FOUND)
        return fpath

    async def serve(self, path: str):
        """Returns (status, body, content_type) for a matched request path."""
        try:
            fpath = self._locate(path)
            source = await asyncio.to_thread(self.reader.read, fpath)
        except TemplateError as err:
            status = status_for_error(err)
            if status == 500:
                logger.error("%s", err.format())
            return status, f"{status} {_reason(status)}".encode("ascii"), "text/plain; charset=utf-8"

        sink = BufferSink()
        try:
            await asyncio.to_thread(interpret, source, sink, name=fpath,
                                    settings=self.settings, reader=self.reader)
        except TemplateError as err:
            # Partial output stays in the discarded sink.
            logger.error("%s", err.format())
            return 500, b"500 Internal Server Error", "text/plain; charset=utf-8"

        content_type = mimetypes.guess_type(fpath)[0] or "text/html"
        if content_type.startswith("text/"):
            content_type += "; charset=utf-8"
        return sink.status or 200, sink.getvalue(), content_type

    async def _respond(self, send, status: int, body: bytes, content_type: str = "text/plain; charset=utf-8"):
        await send({
            "type": "http.response.start",
            "status": status,
            "headers": [
                (b"content-type", content_type.encode("latin-1")),
                (b"content-length", str(len(body)).encode("ascii")),
            ],
        })
        await send({"type": "http.response.body", "body": body})


def _reason(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""
