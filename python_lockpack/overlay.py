"""Filesystem overlay.

:class:`FileProvider` is the set of filesystem primitives handed to the
execution layer. :class:`OverlayFileProvider` serves virtual paths from the
VFS and delegates every other path, unchanged, to a fallback provider
(normally :class:`RealFileProvider`).

The async primitives validate their arguments when called and return an
awaitable. Virtual results are delivered one event-loop turn later, the same
as a real threaded read would be.
"""

from abc import ABC, abstractmethod
import asyncio
import codecs
from collections.abc import Awaitable, Iterator, Mapping
from dataclasses import dataclass
import os
from typing import Any, BinaryIO, TypeVar

from python_lockpack.vfs import ContentKind, StatDescriptor, VirtualEntry, VirtualFileSystem


DEFAULT_CHUNK_SIZE: int = 64 * 1024

# Stat for directories that only exist because virtual entries live below them.
IMPLICIT_DIR_STAT: StatDescriptor = StatDescriptor(atime=None, mtime=None, ctime=None, birthtime=None, directory=True)

PathArg = str | bytes | os.PathLike[str]
Options = str | Mapping[str, Any] | None

_T = TypeVar("_T")


class OverlayOptionsError(TypeError):
    """Raised when an options argument has the wrong shape."""


class UnknownEncodingError(LookupError):
    """Raised when a requested text encoding is not known."""


@dataclass(frozen=True, slots=True)
class ReadOptions:
    encoding: str | None
    flag: str


@dataclass(frozen=True, slots=True)
class StreamOptions:
    encoding: str | None
    start: int | None
    end: int | None
    chunk_size: int


def _assert_encoding(encoding: object) -> str | None:
    if encoding is None:
        return None
    if isinstance(encoding, str) is False:
        raise OverlayOptionsError(f"encoding must be a string, got {type(encoding).__name__}")
    try:
        codecs.lookup(encoding)
    except LookupError as e:
        raise UnknownEncodingError(f"Unknown encoding: {encoding}") from e
    return encoding


def _options_mapping(options: Options) -> Mapping[str, Any]:
    if options is None:
        return {}
    if isinstance(options, str) is True:
        return {"encoding": options}
    if isinstance(options, Mapping) is True:
        return options
    raise OverlayOptionsError(
        f"Expected options to be either a mapping or a string, but got {type(options).__name__} instead"
    )


def parse_read_options(options: Options) -> ReadOptions:
    """Normalize a read/list options argument.

    :param options: ``None``, an encoding name, or a mapping.
    :returns: Normalized options.
    :raises OverlayOptionsError: If the options have the wrong shape.
    :raises UnknownEncodingError: If the encoding is unknown.
    """

    m: Mapping[str, Any] = _options_mapping(options)
    flag = m.get("flag", "r")
    if isinstance(flag, str) is False:
        raise OverlayOptionsError(f"flag must be a string, got {type(flag).__name__}")
    return ReadOptions(encoding=_assert_encoding(m.get("encoding")), flag=flag)


def _optional_int(m: Mapping[str, Any], key: str) -> int | None:
    value = m.get(key)
    if value is None:
        return None
    if isinstance(value, bool) is True or isinstance(value, int) is False:
        raise OverlayOptionsError(f"{key} option must be an int")
    if value < 0:
        raise ValueError(f"{key} option must be >= 0")
    return value


def parse_stream_options(options: Options, *, default_chunk_size: int = DEFAULT_CHUNK_SIZE) -> StreamOptions:
    """Normalize a read-stream options argument.

    :param options: ``None``, an encoding name, or a mapping with
        ``encoding``, ``start``, ``end`` (inclusive) and ``chunk_size``.
    :param default_chunk_size: Chunk size used when none is given.
    :returns: Normalized options.
    :raises OverlayOptionsError: If the options have the wrong shape.
    :raises ValueError: If ``start > end`` or ``chunk_size`` is not positive.
    """

    m: Mapping[str, Any] = _options_mapping(options)
    start: int | None = _optional_int(m, "start")
    end: int | None = _optional_int(m, "end")
    if start is not None and end is not None and start > end:
        raise ValueError("start option must be <= end option")

    chunk_size = m.get("chunk_size", default_chunk_size)
    if isinstance(chunk_size, bool) is True or isinstance(chunk_size, int) is False:
        raise OverlayOptionsError("chunk_size option must be an int")
    if chunk_size <= 0:
        raise ValueError("chunk_size option must be > 0")

    return StreamOptions(
        encoding=_assert_encoding(m.get("encoding")),
        start=start,
        end=end,
        chunk_size=chunk_size,
    )


def _decode(data: bytes, encoding: str | None) -> bytes | str:
    if encoding is None:
        return data
    return data.decode(encoding)


async def _deferred(value: _T) -> _T:
    await asyncio.sleep(0)
    return value


async def _deferred_call(fn: Any, *args: Any) -> Any:
    await asyncio.sleep(0)
    return fn(*args)


class ReadStream(ABC):
    """Finite, non-restartable chunked byte stream.

    Iterating yields chunks of at most ``chunk_size`` bytes (or decoded text
    when an encoding was requested) covering ``[start, end]`` inclusive.
    :meth:`read_chunk` returns ``None`` once the stream has ended or was closed.
    """

    path: str
    chunk_size: int
    start: int
    end: int | None
    bytes_read: int
    _ended: bool
    _closed: bool

    def __init__(self, path: str, options: StreamOptions) -> None:
        self.path = path
        self.chunk_size = options.chunk_size
        self.start = options.start if options.start is not None else 0
        self.end = options.end
        self.bytes_read = 0
        self._ended = False
        self._closed = False
        self._decoder = None
        if options.encoding is not None:
            self._decoder = codecs.getincrementaldecoder(options.encoding)()

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    def _read_raw(self, n: int) -> bytes:
        """Read up to ``n`` bytes from the current position; ``b""`` at the end."""

    def _release(self) -> None:
        """Release underlying resources."""

    def _remaining(self) -> int | None:
        if self.end is None:
            return None
        return self.end - self.start + 1 - self.bytes_read

    def read_chunk(self) -> bytes | str | None:
        """Return the next chunk, or ``None`` at end of stream."""

        while self._ended is False and self._closed is False:
            n: int = self.chunk_size
            remaining: int | None = self._remaining()
            if remaining is not None:
                n = min(n, remaining)

            data: bytes = self._read_raw(n) if n > 0 else b""
            if len(data) == 0:
                self._finish()
                if self._decoder is not None:
                    tail: str = self._decoder.decode(b"", final=True)
                    if len(tail) > 0:
                        return tail
                return None

            self.bytes_read += len(data)
            if self._decoder is None:
                return data
            text: str = self._decoder.decode(data)
            if len(text) > 0:
                return text
        return None

    def _finish(self) -> None:
        self._ended = True
        self.close()

    def close(self) -> None:
        if self._closed is True:
            return
        self._closed = True
        self._release()

    def __iter__(self) -> Iterator[bytes | str]:
        while True:
            chunk = self.read_chunk()
            if chunk is None:
                return
            yield chunk

    def __enter__(self) -> "ReadStream":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        self.close()
        return False


class VirtualReadStream(ReadStream):
    """Read stream over a virtual entry's content."""

    def __init__(self, entry: VirtualEntry, options: StreamOptions) -> None:
        if entry.content is None:
            raise IsADirectoryError(f"Is a directory: {entry.path}")
        super().__init__(entry.path, options)
        last: int = len(entry.content) - 1
        end: int = last if self.end is None else min(self.end, last)
        self._buf: memoryview = memoryview(entry.content)[self.start : end + 1]
        self._pos: int = 0

    def _read_raw(self, n: int) -> bytes:
        chunk: bytes = bytes(self._buf[self._pos : self._pos + n])
        self._pos += len(chunk)
        return chunk


class FileReadStream(ReadStream):
    """Read stream over a real file."""

    _f: BinaryIO

    def __init__(self, path: PathArg, options: StreamOptions) -> None:
        super().__init__(os.fsdecode(os.fspath(path)), options)
        self._f = open(self.path, "rb")
        if self.start > 0:
            self._f.seek(self.start)

    def _read_raw(self, n: int) -> bytes:
        return self._f.read(n)

    def _release(self) -> None:
        self._f.close()


class FileProvider(ABC):
    """Filesystem primitives used by loaded modules."""

    @abstractmethod
    def read_sync(self, path: PathArg, options: Options = None) -> bytes | str:
        """Read a whole file; text when an encoding is given."""

    @abstractmethod
    def read(self, path: PathArg, options: Options = None) -> Awaitable[bytes | str]:
        """Asynchronous :meth:`read_sync`."""

    @abstractmethod
    def list_directory_sync(self, path: PathArg, options: Options = None) -> list[str]:
        """List the immediate child names of a directory."""

    @abstractmethod
    def list_directory(self, path: PathArg, options: Options = None) -> Awaitable[list[str]]:
        """Asynchronous :meth:`list_directory_sync`."""

    @abstractmethod
    def stat_sync(self, path: PathArg) -> StatDescriptor:
        """Stat a path, following symlinks."""

    @abstractmethod
    def stat(self, path: PathArg) -> Awaitable[StatDescriptor]:
        """Asynchronous :meth:`stat_sync`."""

    @abstractmethod
    def link_stat_sync(self, path: PathArg) -> StatDescriptor:
        """Stat a path without following symlinks."""

    @abstractmethod
    def link_stat(self, path: PathArg) -> Awaitable[StatDescriptor]:
        """Asynchronous :meth:`link_stat_sync`."""

    @abstractmethod
    def exists_sync(self, path: PathArg) -> bool:
        """Return whether a path exists."""

    @abstractmethod
    def exists(self, path: PathArg) -> Awaitable[bool]:
        """Asynchronous :meth:`exists_sync`."""

    @abstractmethod
    def open_read_stream(self, path: PathArg, options: Options = None) -> ReadStream:
        """Open a chunked read stream."""


class RealFileProvider(FileProvider):
    """The real filesystem."""

    chunk_size: int

    def __init__(self, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size

    def _read(self, path: PathArg, opts: ReadOptions) -> bytes | str:
        with open(path, "rb") as f:
            data: bytes = f.read()
        return _decode(data, opts.encoding)

    def read_sync(self, path: PathArg, options: Options = None) -> bytes | str:
        return self._read(path, parse_read_options(options))

    def read(self, path: PathArg, options: Options = None) -> Awaitable[bytes | str]:
        return asyncio.to_thread(self._read, path, parse_read_options(options))

    def list_directory_sync(self, path: PathArg, options: Options = None) -> list[str]:
        parse_read_options(options)
        return os.listdir(os.fsdecode(os.fspath(path)))

    def list_directory(self, path: PathArg, options: Options = None) -> Awaitable[list[str]]:
        parse_read_options(options)
        return asyncio.to_thread(os.listdir, os.fsdecode(os.fspath(path)))

    def stat_sync(self, path: PathArg) -> StatDescriptor:
        return StatDescriptor.from_stat_result(os.stat(path))

    def stat(self, path: PathArg) -> Awaitable[StatDescriptor]:
        return asyncio.to_thread(self.stat_sync, path)

    def link_stat_sync(self, path: PathArg) -> StatDescriptor:
        return StatDescriptor.from_stat_result(os.lstat(path))

    def link_stat(self, path: PathArg) -> Awaitable[StatDescriptor]:
        return asyncio.to_thread(self.link_stat_sync, path)

    def exists_sync(self, path: PathArg) -> bool:
        return os.path.exists(path)

    def exists(self, path: PathArg) -> Awaitable[bool]:
        return asyncio.to_thread(os.path.exists, path)

    def open_read_stream(self, path: PathArg, options: Options = None) -> ReadStream:
        return FileReadStream(path, parse_stream_options(options, default_chunk_size=self.chunk_size))


class OverlayFileProvider(FileProvider):
    """Serve virtual paths from the VFS, everything else from ``fallback``.

    A directory with virtual entries below it (the VFS root included) is
    virtual even when the container holds no record for it: it lists,
    stats and exists like a recorded one, with :data:`IMPLICIT_DIR_STAT`.
    """

    _vfs: VirtualFileSystem
    _fallback: FileProvider
    chunk_size: int

    def __init__(
        self,
        vfs: VirtualFileSystem,
        *,
        fallback: FileProvider | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._vfs = vfs
        self._fallback = fallback if fallback is not None else RealFileProvider(chunk_size=chunk_size)
        self.chunk_size = chunk_size

    @property
    def vfs(self) -> VirtualFileSystem:
        return self._vfs

    def _content(self, entry: VirtualEntry, opts: ReadOptions) -> bytes | str:
        if entry.kind is ContentKind.ABSENT or entry.content is None:
            raise IsADirectoryError(f"Is a directory: {entry.path}")
        return _decode(entry.content, opts.encoding)

    def read_sync(self, path: PathArg, options: Options = None) -> bytes | str:
        opts: ReadOptions = parse_read_options(options)
        entry: VirtualEntry | None = self._vfs.get(path)
        if entry is None:
            return self._fallback.read_sync(path, options)
        return self._content(entry, opts)

    def read(self, path: PathArg, options: Options = None) -> Awaitable[bytes | str]:
        opts: ReadOptions = parse_read_options(options)
        entry: VirtualEntry | None = self._vfs.get(path)
        if entry is None:
            return self._fallback.read(path, options)
        return _deferred_call(self._content, entry, opts)

    def _virtual_stat(self, path: PathArg) -> StatDescriptor | None:
        entry: VirtualEntry | None = self._vfs.get(path)
        if entry is not None:
            return entry.stat
        if self._vfs.has_descendants(path) is True:
            return IMPLICIT_DIR_STAT
        return None

    def _is_virtual_dir(self, path: PathArg) -> bool:
        return self._vfs.get(path) is not None or self._vfs.has_descendants(path)

    def _children(self, path: PathArg) -> list[str]:
        entry: VirtualEntry | None = self._vfs.get(path)
        if entry is not None and entry.stat.is_file() is True:
            raise NotADirectoryError(f"Not a directory: {entry.path}")
        return self._vfs.children(path)

    def list_directory_sync(self, path: PathArg, options: Options = None) -> list[str]:
        parse_read_options(options)
        if self._is_virtual_dir(path) is False:
            return self._fallback.list_directory_sync(path, options)
        return self._children(path)

    def list_directory(self, path: PathArg, options: Options = None) -> Awaitable[list[str]]:
        parse_read_options(options)
        if self._is_virtual_dir(path) is False:
            return self._fallback.list_directory(path, options)
        return _deferred_call(self._children, path)

    def stat_sync(self, path: PathArg) -> StatDescriptor:
        st: StatDescriptor | None = self._virtual_stat(path)
        if st is None:
            return self._fallback.stat_sync(path)
        return st

    def stat(self, path: PathArg) -> Awaitable[StatDescriptor]:
        st: StatDescriptor | None = self._virtual_stat(path)
        if st is None:
            return self._fallback.stat(path)
        return _deferred(st)

    # Virtual entries are never symlinks, so lstat and stat agree.
    def link_stat_sync(self, path: PathArg) -> StatDescriptor:
        st: StatDescriptor | None = self._virtual_stat(path)
        if st is None:
            return self._fallback.link_stat_sync(path)
        return st

    def link_stat(self, path: PathArg) -> Awaitable[StatDescriptor]:
        st: StatDescriptor | None = self._virtual_stat(path)
        if st is None:
            return self._fallback.link_stat(path)
        return _deferred(st)

    def exists_sync(self, path: PathArg) -> bool:
        if self._virtual_stat(path) is not None:
            return True
        return self._fallback.exists_sync(path)

    def exists(self, path: PathArg) -> Awaitable[bool]:
        if self._virtual_stat(path) is not None:
            return _deferred(True)
        return self._fallback.exists(path)

    def open_read_stream(self, path: PathArg, options: Options = None) -> ReadStream:
        opts: StreamOptions = parse_stream_options(options, default_chunk_size=self.chunk_size)
        entry: VirtualEntry | None = self._vfs.get(path)
        if entry is None:
            return self._fallback.open_read_stream(path, options)
        return VirtualReadStream(entry, opts)
