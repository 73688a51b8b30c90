from __future__ import annotations
import errno
import os
from typing import Optional

from lim.lim_datatypes import TemplateError, ErrorKind, AccessReason


def _within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def _bad_path(path: str, e: ValueError) -> TemplateError:
    return TemplateError(ErrorKind.FILE_ACCESS, f"cannot read {path!r}: {e}",
                         path=path, reason=AccessReason.OTHER, cause=e)


class FileReader:
    """Reads documents for the runtime (the top-level file and every include).

    Without a root the reader behaves like plain file access. With a root,
    absolute paths are site-absolute ('/partials/nav.lim' lives under root)
    and nothing outside the root can be reached.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = os.path.realpath(root) if root else None

    def resolve(self, path: str, base_dir: Optional[str] = None) -> str:
        if path.startswith("/") or os.path.isabs(path):
            if self.root:
                resolved = os.path.normpath(os.path.join(self.root, path.lstrip("/")))
            else:
                resolved = os.path.normpath(path)
        else:
            base = base_dir or self.root or os.getcwd()
            resolved = os.path.normpath(os.path.join(base, path))

        if self.root:
            try:
                real = os.path.realpath(resolved)
            except ValueError as e:
                # e.g. an embedded NUL byte
                raise _bad_path(path, e) from e
            if not _within(real, self.root):
                raise TemplateError(ErrorKind.FILE_ACCESS, f"'{path}' is outside the document root",
                                    path=path, reason=AccessReason.PERMISSION_DENIED)
        return resolved

    def read(self, path: str) -> bytes:
        try:
            with open(path, "rb") as f:
                return f.read()
        except (FileNotFoundError, NotADirectoryError) as e:
            raise TemplateError(ErrorKind.FILE_ACCESS, f"cannot read '{path}': not found",
                                path=path, reason=AccessReason.NOT_FOUND, cause=e) from e
        except PermissionError as e:
            raise TemplateError(ErrorKind.FILE_ACCESS, f"cannot read '{path}': permission denied",
                                path=path, reason=AccessReason.PERMISSION_DENIED, cause=e) from e
        except OSError as e:
            reason = AccessReason.NOT_FOUND if e.errno == errno.ENOENT else AccessReason.OTHER
            raise TemplateError(ErrorKind.FILE_ACCESS, f"cannot read '{path}': {e.strerror or e}",
                                path=path, reason=reason, cause=e) from e
        except ValueError as e:
            raise _bad_path(path, e) from e

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def is_file(self, path: str) -> bool:
        return os.path.isfile(path)
