"""
ASGI application serving static files along with their pre-compressed
Brotli (".br") and gzip (".gz") siblings.
"""
import functools
import logging
import os

import anyio.to_thread
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.types import Receive, Scope, Send

from .filesystem import (
    DirectoryFileSystem,
    File,
    FileInfo,
    FileSystem,
    MemoryFileSystem,
    anchor_to_executable,
)
from .headers import AcceptedEncoding, select_encoding
from .serving import serve_compressed_file, serve_content

__all__ = [
    "AcceptedEncoding",
    "DirectoryFileSystem",
    "File",
    "FileInfo",
    "FileSystem",
    "MemoryFileSystem",
    "PrecompressedFiles",
    "anchor_to_executable",
    "select_encoding",
    "serve_compressed_file",
    "serve_content",
]

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "HEAD")


class PrecompressedFiles:
    """
    Serves the files of a filesystem, mountable under a Starlette ``Mount``::

        Mount("/static", app=PrecompressedFiles(directory="ui"))

    A request for "/static/app.js" from a client accepting "br" gets
    "app.js.br" when it exists, "app.js" otherwise.
    """

    def __init__(
        self,
        filesystem: FileSystem | None = None,
        *,
        directory: str | os.PathLike | None = None,
        anchor: bool = True,
    ) -> None:
        if (filesystem is None) == (directory is None):
            raise ValueError("Exactly one of 'filesystem' or 'directory' must be given")
        if filesystem is None:
            filesystem = DirectoryFileSystem(directory)
        self.filesystem = anchor_to_executable(filesystem) if anchor else filesystem

    def get_name(self, scope: Scope) -> str:
        """The logical file name: the path below the mount point, without the leading slash."""
        path: str = scope["path"]
        root_path: str = scope.get("root_path", "")
        # Only strip the mount point on a segment boundary, "/apifoo" isn't under "/api"
        if root_path and path.startswith(root_path):
            if path == root_path:
                path = ""
            elif path[len(root_path)] == "/":
                path = path[len(root_path) :]
        return path.lstrip("/")

    async def get_response(self, name: str, request: Request) -> Response:
        if request.method not in ALLOWED_METHODS:
            return PlainTextResponse(
                "Method Not Allowed",
                status_code=405,
                headers={"Allow": ", ".join(ALLOWED_METHODS)},
            )
        return await anyio.to_thread.run_sync(
            functools.partial(
                serve_compressed_file, self.filesystem, request, name, anchor=False
            )
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        assert scope["type"] == "http"
        request = Request(scope, receive)
        name = self.get_name(scope)
        response = await self.get_response(name, request)
        logger.debug("%s %r -> %d", request.method, name, response.status_code)
        await response(scope, receive, send)

