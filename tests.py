"""Main tests for pre-compressed static file serving.

The compressed fixtures are opaque bytes unless a test needs the client to
decode them, so bodies are compared with the raw bytes on the wire.
"""

import functools
import gzip
import os

import pytest

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import FileResponse
from starlette.routing import Mount, Route
from starlette.testclient import TestClient

from precompressed_asgi import (
    AcceptedEncoding,
    DirectoryFileSystem,
    File,
    MemoryFileSystem,
    PrecompressedFiles,
    anchor_to_executable,
    select_encoding,
    serve_compressed_file,
)
from precompressed_asgi.filesystem import FileInfo
from precompressed_asgi.headers import parse_tokens

MTIME = 1_700_000_000.0
CSS = b"body { color: #333; }\n" * 20
CSS_BR = b"\x1b\x8f\x01\x00fake-brotli-payload"
CSS_GZ = gzip.compress(CSS)


@pytest.fixture
def test_client_factory(anyio_backend_name, anyio_backend_options):
    return functools.partial(
        TestClient,
        backend=anyio_backend_name,
        backend_options=anyio_backend_options,
    )


def assets(**extra):
    files = {
        "app.css": CSS,
        "app.css.br": CSS_BR,
        "app.css.gz": CSS_GZ,
        "assets/logo.svg": b"<svg/>",
    }
    files.update(extra)
    return MemoryFileSystem(files, mtime=MTIME)


def build_app(fs):
    def endpoint(request):
        return serve_compressed_file(
            fs, request, request.path_params["name"], anchor=False
        )

    return Starlette(routes=[Route("/{name:path}", endpoint)])


def fetch_raw(client, path, headers):
    """Returns the response and its body exactly as sent, without decoding."""
    with client.stream("GET", path, headers=headers) as response:
        body = b"".join(response.iter_raw())
    return response, body


class TrackedFile(File):
    def __init__(self, file):
        self.file = file
        self.closed = False

    def stat(self):
        return self.file.stat()

    def read(self, size=-1):
        return self.file.read(size)

    def seek(self, offset):
        self.file.seek(offset)

    def close(self):
        self.closed = True
        self.file.close()


class TrackingFileSystem:
    def __init__(self, fs):
        self.fs = fs
        self.opened = []

    def open(self, name):
        file = TrackedFile(self.fs.open(name))
        self.opened.append((name, file))
        return file


class BrokenStatFile(File):
    def stat(self):
        raise PermissionError("stat failed")

    def read(self, size=-1):
        return b""

    def seek(self, offset):
        pass

    def close(self):
        pass


class BrokenStatFileSystem:
    def open(self, name):
        return BrokenStatFile()


# --- Encoding selection ---


@pytest.mark.parametrize(
    "accept_encoding, expected",
    [
        # 1. Single supported encodings
        ("br", AcceptedEncoding.BROTLI),
        ("gzip", AcceptedEncoding.GZIP),

        # 2. Brotli wins regardless of order
        ("gzip, br", AcceptedEncoding.BROTLI),
        ("br, gzip", AcceptedEncoding.BROTLI),

        # 3. ...and regardless of q-factors
        ("gzip;q=1.0, br;q=0.1", AcceptedEncoding.BROTLI),
        ("br;q=0, gzip", AcceptedEncoding.BROTLI),

        # 4. gzip without br
        ("deflate, gzip;q=0.5", AcceptedEncoding.GZIP),
        ("identity, gzip", AcceptedEncoding.GZIP),

        # 5. Whitespace and parameters around tokens
        (" br ;q=0.8", AcceptedEncoding.BROTLI),
        ("deflate ,  gzip ; q=0.3", AcceptedEncoding.GZIP),

        # 6. Nothing we can serve
        ("", AcceptedEncoding.NONE),
        ("deflate, identity", AcceptedEncoding.NONE),
        ("*", AcceptedEncoding.NONE),
        ("zstd;q=1.0", AcceptedEncoding.NONE),
        ("brotli, gzipped", AcceptedEncoding.NONE),

        # 7. Matching is case-sensitive
        ("BR, GZIP", AcceptedEncoding.NONE),

        # 8. Malformed headers degrade to no encoding
        (",,;;", AcceptedEncoding.NONE),
        (";q=1, =br", AcceptedEncoding.NONE),
    ],
)
def test_select_encoding(accept_encoding, expected):
    assert select_encoding(accept_encoding) is expected


def test_encoding_suffixes():
    assert AcceptedEncoding.BROTLI.suffix == ".br"
    assert AcceptedEncoding.GZIP.suffix == ".gz"
    assert AcceptedEncoding.NONE.suffix == ""
    assert AcceptedEncoding.NONE.value == ""


def test_parse_tokens():
    assert parse_tokens("gzip;q=0.5, br ; q=1 ,deflate") == ["gzip", "br", "deflate"]


# --- Serving ---


def test_brotli_variant_served(test_client_factory):
    client = test_client_factory(build_app(assets()))
    response, body = fetch_raw(client, "/app.css", {"accept-encoding": "gzip, br"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "br"
    assert "Accept-Encoding" in response.headers["Vary"]
    assert response.headers["Content-Type"] == "text/css; charset=utf-8"
    assert body == CSS_BR
    assert int(response.headers["Content-Length"]) == len(CSS_BR)


def test_gzip_variant_served(test_client_factory):
    client = test_client_factory(build_app(assets()))
    response, body = fetch_raw(client, "/app.css", {"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "gzip"
    assert response.headers["Vary"] == "Accept-Encoding"
    assert response.headers["Content-Type"] == "text/css; charset=utf-8"
    assert body == CSS_GZ


def test_gzip_variant_decoded_by_client(test_client_factory):
    client = test_client_factory(build_app(assets()))
    response = client.get("/app.css", headers={"accept-encoding": "gzip"})
    # TestClient (httpx) decompresses gzip automatically.
    assert response.headers["Content-Encoding"] == "gzip"
    assert response.content == CSS


def test_falls_back_when_variant_missing(test_client_factory):
    fs = MemoryFileSystem({"app.css": CSS, "app.css.gz": CSS_GZ}, mtime=MTIME)
    client = test_client_factory(build_app(fs))
    response, body = fetch_raw(client, "/app.css", {"accept-encoding": "br"})
    assert response.status_code == 200
    assert "Content-Encoding" not in response.headers
    assert "Vary" not in response.headers
    assert body == CSS


def test_no_accept_encoding_never_compressed(test_client_factory):
    client = test_client_factory(build_app(assets()))
    client.headers.pop("accept-encoding", None)
    response, body = fetch_raw(client, "/app.css", {})
    assert response.status_code == 200
    assert "Content-Encoding" not in response.headers
    assert body == CSS


@pytest.mark.parametrize("accept_encoding", ["", "identity", "deflate;q=1.0"])
def test_unsupported_encodings_get_original(test_client_factory, accept_encoding):
    client = test_client_factory(build_app(assets()))
    response, body = fetch_raw(
        client, "/app.css", {"accept-encoding": accept_encoding}
    )
    assert response.status_code == 200
    assert "Content-Encoding" not in response.headers
    assert body == CSS
    assert response.headers["Content-Type"] == "text/css; charset=utf-8"


def test_variant_directory_is_like_missing_variant(test_client_factory):
    with_dir = test_client_factory(
        build_app(
            MemoryFileSystem(
                {"app.css": CSS, "app.css.br/index.html": b"<html/>"}, mtime=MTIME
            )
        )
    )
    without = test_client_factory(
        build_app(MemoryFileSystem({"app.css": CSS}, mtime=MTIME))
    )
    headers = {"accept-encoding": "br"}
    response, body = fetch_raw(with_dir, "/app.css", headers)
    expected, expected_body = fetch_raw(without, "/app.css", headers)
    assert response.status_code == expected.status_code == 200
    assert dict(response.headers) == dict(expected.headers)
    assert "content-encoding" not in response.headers
    assert body == expected_body == CSS


def test_variant_served_without_original(test_client_factory):
    fs = MemoryFileSystem({"bundle.js.br": b"compressed"}, mtime=MTIME)
    client = test_client_factory(build_app(fs))
    response, body = fetch_raw(client, "/bundle.js", {"accept-encoding": "br"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "br"
    assert body == b"compressed"


def test_missing_file_is_404(test_client_factory):
    client = test_client_factory(build_app(assets()))
    response = client.get("/missing.css", headers={"accept-encoding": "br, gzip"})
    assert response.status_code == 404
    assert "No such file or directory" in response.text
    assert "Content-Encoding" not in response.headers
    assert "Content-Type" not in response.headers


def test_directory_is_403(test_client_factory):
    client = test_client_factory(build_app(assets()))
    response = client.get("/assets", headers={"accept-encoding": "gzip"})
    assert response.status_code == 403
    assert response.text == "is a directory"
    assert "Content-Encoding" not in response.headers
    assert "Content-Type" not in response.headers


def test_stat_failure_is_500(test_client_factory):
    client = test_client_factory(build_app(BrokenStatFileSystem()))
    response = client.get("/app.css", headers={"accept-encoding": "br"})
    assert response.status_code == 500
    assert response.text == "stat failed"
    assert "Content-Encoding" not in response.headers
    assert "Content-Type" not in response.headers


@pytest.mark.parametrize(
    "path, accept_encoding",
    [
        ("/app.css", "br"),
        ("/app.css", "gzip"),
        ("/app.css", "identity"),
        ("/assets", "gzip"),
    ],
)
def test_every_handle_is_closed(test_client_factory, path, accept_encoding):
    fs = TrackingFileSystem(assets(**{"assets.gz/x": b"x"}))
    client = test_client_factory(build_app(fs))
    client.get(path, headers={"accept-encoding": accept_encoding})
    assert fs.opened
    assert all(file.closed for _, file in fs.opened)


def test_directory_variant_handle_closed(test_client_factory):
    fs = TrackingFileSystem(
        MemoryFileSystem({"app.css": CSS, "app.css.br/x": b"x"}, mtime=MTIME)
    )
    client = test_client_factory(build_app(fs))
    response = client.get("/app.css", headers={"accept-encoding": "br"})
    assert response.status_code == 200
    assert [name for name, _ in fs.opened] == ["app.css.br", "app.css"]
    assert all(file.closed for _, file in fs.opened)


def test_round_trip_without_compression(test_client_factory, tmp_path):
    data = bytes(range(256)) * 8
    (tmp_path / "blob.bin").write_bytes(data)
    client = test_client_factory(PrecompressedFiles(directory=tmp_path))
    response, body = fetch_raw(client, "/blob.bin", {"accept-encoding": "identity"})
    assert response.status_code == 200
    assert response.headers["Content-Type"] == "application/octet-stream"
    assert body == (tmp_path / "blob.bin").read_bytes()


# --- Conditional and range requests ---


def test_etag_not_modified(test_client_factory):
    client = test_client_factory(build_app(assets()))
    headers = {"accept-encoding": "gzip"}
    first = client.get("/app.css", headers=headers)
    etag = first.headers["ETag"]

    response = client.get("/app.css", headers={**headers, "if-none-match": etag})
    assert response.status_code == 304
    assert response.content == b""
    assert response.headers["ETag"] == etag
    assert response.headers["Vary"] == "Accept-Encoding"


def test_if_modified_since_not_modified(test_client_factory):
    client = test_client_factory(build_app(assets()))
    headers = {"accept-encoding": "identity"}
    last_modified = client.get("/app.css", headers=headers).headers["Last-Modified"]

    response = client.get(
        "/app.css", headers={**headers, "if-modified-since": last_modified}
    )
    assert response.status_code == 304

    response = client.get(
        "/app.css",
        headers={**headers, "if-modified-since": "Thu, 01 Jan 1970 00:00:00 GMT"},
    )
    assert response.status_code == 200
    assert response.content == CSS


def test_variants_have_distinct_etags(test_client_factory):
    client = test_client_factory(build_app(assets()))
    brotli, _ = fetch_raw(client, "/app.css", {"accept-encoding": "br"})
    plain, _ = fetch_raw(client, "/app.css", {"accept-encoding": "identity"})
    assert brotli.headers["ETag"] != plain.headers["ETag"]


@pytest.fixture
def disk_assets(tmp_path):
    (tmp_path / "app.css").write_bytes(CSS)
    (tmp_path / "app.css.br").write_bytes(CSS_BR)
    return DirectoryFileSystem(tmp_path)


def make_request(accept_encoding="identity", method="GET"):
    return Request(
        {
            "type": "http",
            "method": method,
            "path": "/",
            "headers": [(b"accept-encoding", accept_encoding.encode())],
        }
    )


def test_disk_files_are_streamed(disk_assets, tmp_path):
    (tmp_path / "big.bin").write_bytes(b"\0" * (4 * 1024 * 1024))
    response = serve_compressed_file(
        disk_assets, make_request(), "big.bin", anchor=False
    )
    assert isinstance(response, FileResponse)
    assert response.path == str(tmp_path / "big.bin")
    assert int(response.headers["content-length"]) == 4 * 1024 * 1024

    response = serve_compressed_file(
        disk_assets, make_request("br"), "app.css", anchor=False
    )
    assert isinstance(response, FileResponse)
    assert response.path == str(tmp_path / "app.css.br")
    assert response.headers["content-encoding"] == "br"
    assert response.headers["content-type"] == "text/css; charset=utf-8"


def test_disk_not_modified(test_client_factory, disk_assets):
    client = test_client_factory(build_app(disk_assets))
    headers = {"accept-encoding": "br"}
    etag = client.get("/app.css", headers=headers).headers["ETag"]

    response = client.get("/app.css", headers={**headers, "if-none-match": etag})
    assert response.status_code == 304
    assert response.content == b""
    assert response.headers["Vary"] == "Accept-Encoding"


@pytest.mark.parametrize(
    "range_header, content_range, expected",
    [
        ("bytes=0-3", "bytes 0-3/440", CSS[:4]),
        ("bytes=430-", "bytes 430-439/440", CSS[430:]),
        ("bytes=-5", "bytes 435-439/440", CSS[-5:]),
        ("bytes=438-1000", "bytes 438-439/440", CSS[438:]),
    ],
)
def test_range_request(
    test_client_factory, disk_assets, range_header, content_range, expected
):
    assert len(CSS) == 440
    client = test_client_factory(build_app(disk_assets))
    response = client.get(
        "/app.css", headers={"accept-encoding": "identity", "range": range_header}
    )
    assert response.status_code == 206
    assert response.headers["Content-Range"] == content_range
    assert response.content == expected


def test_range_not_satisfiable(test_client_factory, disk_assets):
    client = test_client_factory(build_app(disk_assets))
    response = client.get(
        "/app.css", headers={"accept-encoding": "identity", "range": "bytes=1000-"}
    )
    assert response.status_code == 416
    assert response.headers["Content-Range"].endswith("*/440")
    # Validators of the file don't describe the error body
    assert "ETag" not in response.headers
    assert "Last-Modified" not in response.headers


def test_stale_if_range_gets_whole_file(test_client_factory, disk_assets):
    client = test_client_factory(build_app(disk_assets))
    response = client.get(
        "/app.css",
        headers={
            "accept-encoding": "identity",
            "range": "bytes=0-3",
            "if-range": '"stale"',
        },
    )
    assert response.status_code == 200
    assert response.content == CSS


def test_disk_head_request(test_client_factory, disk_assets):
    client = test_client_factory(build_app(disk_assets))
    response = client.head("/app.css", headers={"accept-encoding": "br"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "br"
    assert int(response.headers["Content-Length"]) == len(CSS_BR)
    assert response.content == b""


def test_head_request(test_client_factory):
    client = test_client_factory(build_app(assets()))
    response = client.head("/app.css", headers={"accept-encoding": "br"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "br"
    assert int(response.headers["Content-Length"]) == len(CSS_BR)
    assert response.content == b""


# --- ASGI application ---


def test_mounted_app(test_client_factory):
    app = Starlette(
        routes=[Mount("/static", app=PrecompressedFiles(assets(), anchor=False))]
    )
    client = test_client_factory(app)
    response, body = fetch_raw(client, "/static/app.css", {"accept-encoding": "br"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "br"
    assert body == CSS_BR

    response = client.get("/static/assets/logo.svg", headers={"accept-encoding": "br"})
    assert response.status_code == 200
    assert response.headers["Content-Type"].startswith("image/svg+xml")
    assert response.content == b"<svg/>"


@pytest.mark.parametrize(
    "path, root_path, expected",
    [
        ("/api/foo.js", "/api", "foo.js"),
        ("/api", "/api", ""),
        # A sibling prefix is not below the mount point
        ("/apifoo.js", "/api", "apifoo.js"),
        ("/foo.js", "", "foo.js"),
    ],
)
def test_name_below_mount_point(path, root_path, expected):
    app = PrecompressedFiles(assets(), anchor=False)
    assert app.get_name({"path": path, "root_path": root_path}) == expected


def test_method_not_allowed(test_client_factory):
    client = test_client_factory(PrecompressedFiles(assets()))
    response = client.post("/app.css")
    assert response.status_code == 405
    assert response.headers["Allow"] == "GET, HEAD"


def test_directory_app(test_client_factory, tmp_path):
    (tmp_path / "app.js").write_bytes(b"console.log('hi');" * 10)
    (tmp_path / "app.js.gz").write_bytes(gzip.compress(b"console.log('hi');" * 10))
    (tmp_path / "app.js.br").mkdir()

    client = test_client_factory(PrecompressedFiles(directory=tmp_path))

    response = client.get("/app.js", headers={"accept-encoding": "br, gzip"})
    # app.js.br is a directory, so the brotli choice falls back to the original
    assert response.status_code == 200
    assert "Content-Encoding" not in response.headers
    assert response.content == b"console.log('hi');" * 10

    response = client.get("/app.js", headers={"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "gzip"
    assert response.content == b"console.log('hi');" * 10

    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 403


def test_app_arguments():
    with pytest.raises(ValueError):
        PrecompressedFiles()
    with pytest.raises(ValueError):
        PrecompressedFiles(assets(), directory="ui")


# --- Filesystems ---


def test_directory_filesystem_stays_in_root(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    (tmp_path / "secret.txt").write_text("secret")
    (root / "public.txt").write_text("public")

    fs = DirectoryFileSystem(root)
    with fs.open("../public.txt") as file:
        assert file.read() == b"public"
    with pytest.raises(FileNotFoundError):
        fs.open("../secret.txt")
    with pytest.raises(OSError):
        fs.open("public.txt\0")


def test_directory_filesystem_directories(tmp_path):
    (tmp_path / "sub").mkdir()
    fs = DirectoryFileSystem(tmp_path)
    with fs.open("sub") as file:
        assert file.stat().is_dir
        with pytest.raises(IsADirectoryError):
            file.read()


def test_memory_filesystem():
    fs = MemoryFileSystem({"/a/b.txt": b"hello"}, mtime=MTIME)
    with fs.open("a/b.txt") as file:
        assert file.stat() == FileInfo(5, MTIME, False)
        file.seek(1)
        assert file.read(3) == b"ell"
    with fs.open("a") as file:
        assert file.stat().is_dir
    with fs.open("") as file:
        assert file.stat().is_dir
    with pytest.raises(FileNotFoundError):
        fs.open("a/c.txt")


# --- Anchoring ---


def make_executable(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n")
    return path


def test_anchor_relative_directory(tmp_path, monkeypatch):
    program = make_executable(tmp_path / "bin" / "server")
    monkeypatch.setattr("sys.argv", [str(program)])

    anchored = anchor_to_executable(DirectoryFileSystem("ui"))
    assert isinstance(anchored, DirectoryFileSystem)
    assert anchored.root == tmp_path.resolve() / "ui"


def test_anchor_follows_symlinks(tmp_path, monkeypatch):
    program = make_executable(tmp_path / "opt" / "bin" / "server")
    link = tmp_path / "usr" / "bin" / "server"
    link.parent.mkdir(parents=True)
    os.symlink(program, link)
    monkeypatch.setattr("sys.argv", [str(link)])

    anchored = anchor_to_executable(DirectoryFileSystem("ui"))
    assert anchored.root == tmp_path.resolve() / "opt" / "ui"


def test_anchor_passthrough(tmp_path, monkeypatch):
    program = make_executable(tmp_path / "bin" / "server")
    monkeypatch.setattr("sys.argv", [str(program)])

    memory = assets()
    assert anchor_to_executable(memory) is memory

    absolute = DirectoryFileSystem(tmp_path / "ui")
    assert anchor_to_executable(absolute) is absolute


def test_anchor_without_executable(monkeypatch):
    monkeypatch.setattr("sys.argv", ["-c"])
    fs = DirectoryFileSystem("ui")
    assert anchor_to_executable(fs) is fs


def test_anchored_app_serves_from_prefix(test_client_factory, tmp_path, monkeypatch):
    program = make_executable(tmp_path / "bin" / "server")
    (tmp_path / "ui").mkdir()
    (tmp_path / "ui" / "index.html").write_bytes(b"<h1>hi</h1>")
    monkeypatch.setattr("sys.argv", [str(program)])
    monkeypatch.chdir(tmp_path / "bin")

    client = test_client_factory(PrecompressedFiles(directory="ui"))
    response = client.get("/index.html", headers={"accept-encoding": "br"})
    assert response.status_code == 200
    assert response.headers["Content-Type"] == "text/html; charset=utf-8"
    assert response.content == b"<h1>hi</h1>"
