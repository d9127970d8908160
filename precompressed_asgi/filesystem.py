"""
Virtual filesystems the file server reads from.

A filesystem is anything with an ``open(name)`` method returning a `File`
and raising `OSError` when the name cannot be opened. Two are provided:
`DirectoryFileSystem`, backed by a directory on disk, and
`MemoryFileSystem`, backed by a mapping of names to bytes.
"""
import errno
import io
import logging
import os
import posixpath
import stat
import sys
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path
from typing import NamedTuple, Protocol

logger = logging.getLogger(__name__)


class FileInfo(NamedTuple):
    size: int
    mtime: float
    is_dir: bool


class File(ABC):
    """An open file (or directory) handle. Closed on exiting a ``with`` block."""

    @abstractmethod
    def stat(self) -> FileInfo: ...

    @abstractmethod
    def read(self, size: int = -1) -> bytes: ...

    @abstractmethod
    def seek(self, offset: int) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    def __enter__(self) -> "File":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class FileSystem(Protocol):
    def open(self, name: str) -> File: ...


def clean_name(name: str) -> str:
    """
    Normalises a slash-separated name as a rooted URL path and returns it
    without the leading slash, so "../a/./b" becomes "a/b".
    """
    return posixpath.normpath("/" + name).lstrip("/")


class LocalFile(File):
    def __init__(self, path: str):
        self.path = path
        self._file = open(path, "rb")

    def stat_result(self) -> os.stat_result:
        return os.fstat(self._file.fileno())

    def stat(self) -> FileInfo:
        st = self.stat_result()
        return FileInfo(st.st_size, st.st_mtime, stat.S_ISDIR(st.st_mode))

    def read(self, size: int = -1) -> bytes:
        return self._file.read(size)

    def seek(self, offset: int) -> None:
        self._file.seek(offset)

    def close(self) -> None:
        self._file.close()


class LocalDirectory(File):
    def __init__(self, path: str):
        self.path = path

    def stat(self) -> FileInfo:
        st = os.stat(self.path)
        return FileInfo(st.st_size, st.st_mtime, stat.S_ISDIR(st.st_mode))

    def read(self, size: int = -1) -> bytes:
        raise IsADirectoryError(errno.EISDIR, os.strerror(errno.EISDIR), self.path)

    def seek(self, offset: int) -> None:
        pass

    def close(self) -> None:
        pass


class DirectoryFileSystem:
    """Serves files from `root`. Names can't escape it, ".." is resolved first."""

    def __init__(self, root: str | os.PathLike):
        self.root = Path(root)

    def resolve(self, name: str) -> str:
        if "\0" in name or (os.sep != "/" and os.sep in name):
            raise OSError(errno.EINVAL, "invalid character in file path", name)
        return os.path.join(self.root, *clean_name(name).split("/"))

    def open(self, name: str) -> File:
        path = self.resolve(name)
        if os.path.isdir(path):
            return LocalDirectory(path)
        return LocalFile(path)

    def __repr__(self) -> str:
        return f"DirectoryFileSystem({str(self.root)!r})"


class MemoryFile(File):
    def __init__(self, name: str, data: bytes | None, mtime: float):
        self.name = name
        self.data = data
        self.mtime = mtime
        self._buffer = io.BytesIO(data or b"")

    def stat(self) -> FileInfo:
        if self.data is None:
            return FileInfo(0, self.mtime, True)
        return FileInfo(len(self.data), self.mtime, False)

    def read(self, size: int = -1) -> bytes:
        if self.data is None:
            raise IsADirectoryError(errno.EISDIR, os.strerror(errno.EISDIR), self.name)
        return self._buffer.read(size)

    def seek(self, offset: int) -> None:
        self._buffer.seek(offset)

    def close(self) -> None:
        self._buffer.close()


class MemoryFileSystem:
    """
    An in-memory filesystem over a mapping of slash-separated names to
    bytes, e.g. ``{"css/site.css": b"...", "css/site.css.gz": b"..."}``.
    Directories are implied: "css" opens as a directory because a name
    lives below it.
    """

    def __init__(self, files: Mapping[str, bytes], mtime: float | None = None):
        self.files = {clean_name(k): v for k, v in files.items()}
        self.mtime = time.time() if mtime is None else mtime

    def is_dir(self, name: str) -> bool:
        if not name:
            return True
        prefix = name + "/"
        return any(_.startswith(prefix) for _ in self.files)

    def open(self, name: str) -> File:
        name = clean_name(name)
        if name in self.files:
            return MemoryFile(name, self.files[name], self.mtime)
        elif self.is_dir(name):
            return MemoryFile(name, None, self.mtime)
        else:
            raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), name)


def executable_path() -> str:
    """Path of the running program, as it was invoked."""
    path = sys.argv[0] if sys.argv else ""
    if not path or path == "-c" or not os.path.exists(path):
        raise FileNotFoundError(errno.ENOENT, "executable not found", path)
    return os.path.abspath(path)


def anchor_to_executable(fs: FileSystem) -> FileSystem:
    """
    Re-roots a `DirectoryFileSystem` with a relative root against the
    directory holding the program's ``bin/`` directory, so that
    ``DirectoryFileSystem("ui")`` means ``<prefix>/ui`` for a program
    installed as ``<prefix>/bin/program``, whatever the current directory.

    Any other filesystem is returned as-is, and so is an absolute root:
    "/srv/ui" means exactly that directory and is never nested under the
    prefix as "<prefix>/srv/ui". When the executable can't be found, `fs`
    is returned unchanged.
    """
    if not isinstance(fs, DirectoryFileSystem) or fs.root.is_absolute():
        return fs
    try:
        path = executable_path()
    except OSError as e:
        logger.debug("Not anchoring %r: %s", fs, e)
        return fs
    try:
        path = str(Path(path).resolve(strict=True))
    except (OSError, RuntimeError):
        # Symlink loop or dangling link: use the path as invoked
        pass
    base = os.path.dirname(os.path.dirname(path))
    anchored = DirectoryFileSystem(os.path.join(base, fs.root))
    logger.debug("Anchored %r to %r", fs, anchored)
    return anchored

