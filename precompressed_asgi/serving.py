"""
Serving a logical file name from a filesystem, preferring a pre-compressed
sibling ("app.js.br", "app.js.gz") when the client accepts its encoding.
"""
import hashlib
import logging
import mimetypes
from email.utils import formatdate, parsedate

from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request
from starlette.responses import FileResponse, Response
from starlette.staticfiles import NotModifiedResponse

from .filesystem import File, FileInfo, FileSystem, LocalFile, anchor_to_executable
from .headers import AcceptedEncoding, select_encoding

logger = logging.getLogger(__name__)


def guess_media_type(name: str) -> str | None:
    media_type, _ = mimetypes.guess_type(name)
    if media_type and media_type.startswith("text/") and "charset" not in media_type:
        media_type += "; charset=utf-8"
    return media_type


def serve_compressed_file(
    fs: FileSystem,
    request: Request,
    name: str,
    *,
    anchor: bool = True,
) -> Response:
    """
    Serves `name` from `fs`, or its pre-compressed sibling when the
    request's 'Accept-Encoding' allows it.

    The 'Content-Type' always comes from `name`, whichever bytes are sent.
    A missing sibling, or one that is a directory, falls back silently to
    the uncompressed file. Failures on the uncompressed file become
    404 (open failed), 500 (stat failed) or 403 (it's a directory).

    Every handle opened here is closed before returning.
    """
    if anchor:
        fs = anchor_to_executable(fs)

    headers = MutableHeaders()
    content_type = guess_media_type(name)
    if content_type:
        headers["content-type"] = content_type

    encoding = select_encoding(request.headers.get("accept-encoding", ""))
    if encoding is not AcceptedEncoding.NONE:
        response = serve_variant(fs, request, name, encoding, headers)
        if response is not None:
            return response

    try:
        file = fs.open(name)
    except OSError as e:
        return error_response(headers, str(e), 404)

    with file:
        try:
            info = file.stat()
        except OSError as e:
            return error_response(headers, str(e), 500)
        if info.is_dir:
            return error_response(headers, "is a directory", 403)
        return serve_content(request, name, info, file, headers)


def serve_variant(
    fs: FileSystem,
    request: Request,
    name: str,
    encoding: AcceptedEncoding,
    headers: MutableHeaders,
) -> Response | None:
    """
    Serves the `encoding` sibling of `name`, or returns None when there's
    no usable sibling. `headers` is only touched when the sibling is served.
    """
    variant = name + encoding.suffix
    try:
        file = fs.open(variant)
    except OSError:
        logger.debug("No %s variant for %r", encoding.value, name)
        return None

    with file:
        try:
            info = file.stat()
        except OSError as e:
            logger.debug("Skipping %r: %s", variant, e)
            return None
        if info.is_dir:
            logger.debug("Skipping %r: is a directory", variant)
            return None
        headers["content-encoding"] = encoding.value
        headers.add_vary_header("Accept-Encoding")
        return serve_content(request, name, info, file, headers)


def error_response(headers: MutableHeaders, message: str, status_code: int) -> Response:
    # None of the asset's headers describe an error body
    del headers["content-encoding"]
    del headers["content-type"]
    headers["x-content-type-options"] = "nosniff"
    return Response(message, status_code=status_code, headers=headers)


def is_not_modified(request_headers: Headers, response_headers: MutableHeaders) -> bool:
    """
    Given the request and response headers, return `True` if an HTTP
    "Not Modified" response could be returned instead.
    """
    if_none_match = request_headers.get("if-none-match")
    if if_none_match is not None:
        etag = response_headers.get("etag")
        return etag in [tag.strip(" W/") for tag in if_none_match.split(",")]

    if_modified_since = parsedate(request_headers.get("if-modified-since", ""))
    last_modified = parsedate(response_headers.get("last-modified", ""))
    return (
        if_modified_since is not None
        and last_modified is not None
        and if_modified_since >= last_modified
    )


def memory_response(
    request: Request, info: FileInfo, file: File, headers: MutableHeaders
) -> Response:
    """
    Response for a handle without a path on disk. Carries the same
    validators as `FileResponse` but no range support.
    """
    etag_base = f"{info.mtime}-{info.size}"
    headers["last-modified"] = formatdate(info.mtime, usegmt=True)
    headers["etag"] = f'"{hashlib.md5(etag_base.encode(), usedforsecurity=False).hexdigest()}"'
    headers["content-length"] = str(info.size)
    body = b"" if request.method == "HEAD" else file.read()
    return Response(body, headers=headers)


def serve_content(
    request: Request,
    name: str,
    info: FileInfo,
    file: File,
    headers: MutableHeaders | None = None,
) -> Response:
    """
    Builds the response for the contents of `file`, using `name` only to
    derive a 'Content-Type' when none is set yet.

    Files on disk are answered with Starlette's `FileResponse`, which
    streams them in chunks and takes care of 'Range', 'If-Range' and
    'HEAD'. Conditional requests get a 304 either way.
    """
    if headers is None:
        headers = MutableHeaders()
    if "content-type" not in headers:
        headers["content-type"] = guess_media_type(name) or "application/octet-stream"

    response: Response
    if isinstance(file, LocalFile):
        response = FileResponse(
            file.path,
            headers=headers,
            media_type=headers["content-type"],
            stat_result=file.stat_result(),
        )
    else:
        response = memory_response(request, info, file, headers)

    if is_not_modified(request.headers, response.headers):
        return NotModifiedResponse(response.headers)
    return response
