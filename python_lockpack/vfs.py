"""In-memory virtual filesystem built from a parsed container."""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
import datetime
import enum
import logging
import os
import stat as stat_mod

from python_lockpack.container import (
    ContainerIntegrityError,
    ContainerParseError,
    ContainerSections,
    HeaderEntry,
)
from python_lockpack.crypto import CipherInputError, decrypt


_TIME_KEYS: tuple[str, ...] = ("atime", "mtime", "ctime", "birthtime")


def _parse_timestamp(value: object) -> datetime.datetime | None:
    """Parse a header timestamp.

    :param value: ISO-8601 string, epoch milliseconds, or ``None``.
    :returns: Aware datetime, or ``None`` when absent.
    :raises ContainerParseError: If the value cannot be parsed.
    """

    if value is None:
        return None
    if isinstance(value, (int, float)) is True and isinstance(value, bool) is False:
        return datetime.datetime.fromtimestamp(value / 1000.0, tz=datetime.timezone.utc)
    if isinstance(value, str) is True:
        try:
            dt = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ContainerParseError(f"Invalid timestamp {value!r}") from e
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=datetime.timezone.utc)
        return dt
    raise ContainerParseError(f"Invalid timestamp {value!r}")


def _from_epoch(seconds: float) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(seconds, tz=datetime.timezone.utc)


@dataclass(frozen=True, slots=True)
class StatDescriptor:
    """Immutable stat record shared by virtual and real paths.

    Capability flags are fixed when the record is built; the query methods
    only read them back.
    """

    atime: datetime.datetime | None
    mtime: datetime.datetime | None
    ctime: datetime.datetime | None
    birthtime: datetime.datetime | None
    regular_file: bool = False
    directory: bool = False
    block_device: bool = False
    character_device: bool = False
    symlink: bool = False
    fifo: bool = False
    socket: bool = False
    binary: bool = False
    size: int = 0

    def is_file(self) -> bool:
        return self.regular_file

    def is_dir(self) -> bool:
        return self.directory

    def is_block_device(self) -> bool:
        return self.block_device

    def is_char_device(self) -> bool:
        return self.character_device

    def is_symlink(self) -> bool:
        return self.symlink

    def is_fifo(self) -> bool:
        return self.fifo

    def is_socket(self) -> bool:
        return self.socket

    @classmethod
    def from_header(cls, raw: Mapping[str, object], *, size: int = 0) -> "StatDescriptor":
        """Build a descriptor from a container header ``stat`` mapping.

        :param raw: Header stat mapping (camelCase keys as written by the packer).
        :param size: Content size in bytes.
        :returns: Stat descriptor.
        """

        times: dict[str, datetime.datetime | None] = {k: _parse_timestamp(raw.get(k)) for k in _TIME_KEYS}
        return cls(
            **times,
            regular_file=bool(raw.get("isFile", False)),
            directory=bool(raw.get("isDirectory", False)),
            block_device=bool(raw.get("isBlockDevice", False)),
            character_device=bool(raw.get("isCharacterDevice", False)),
            symlink=bool(raw.get("isSymbolicLink", False)),
            fifo=bool(raw.get("isFIFO", False)),
            socket=bool(raw.get("isSocket", False)),
            binary=bool(raw.get("isBinary", False)),
            size=size,
        )

    @classmethod
    def from_stat_result(cls, st: os.stat_result) -> "StatDescriptor":
        """Build a descriptor from an ``os.stat`` / ``os.lstat`` result.

        :param st: Real stat result.
        :returns: Stat descriptor.
        """

        mode: int = st.st_mode
        birth: float = getattr(st, "st_birthtime", st.st_ctime)
        return cls(
            atime=_from_epoch(st.st_atime),
            mtime=_from_epoch(st.st_mtime),
            ctime=_from_epoch(st.st_ctime),
            birthtime=_from_epoch(birth),
            regular_file=stat_mod.S_ISREG(mode),
            directory=stat_mod.S_ISDIR(mode),
            block_device=stat_mod.S_ISBLK(mode),
            character_device=stat_mod.S_ISCHR(mode),
            symlink=stat_mod.S_ISLNK(mode),
            fifo=stat_mod.S_ISFIFO(mode),
            socket=stat_mod.S_ISSOCK(mode),
            size=st.st_size,
        )


class ContentKind(enum.Enum):
    """How a virtual entry's content was produced."""

    ABSENT = "absent"
    RAW = "raw"
    TEXT = "text"


@dataclass(frozen=True, slots=True)
class VirtualEntry:
    """A single VFS entity.

    :ivar path: Canonical absolute path.
    :ivar stat: Stat descriptor.
    :ivar kind: Content classification.
    :ivar content: Content bytes (``None`` for directories).
    """

    path: str
    stat: StatDescriptor
    kind: ContentKind
    content: bytes | None

    @property
    def text(self) -> str:
        """Content decoded as UTF-8.

        :raises IsADirectoryError: If the entry has no content.
        """

        if self.content is None:
            raise IsADirectoryError(f"Virtual entry has no content: {self.path}")
        return self.content.decode("utf-8")


class VirtualFileSystem:
    """Mapping from canonical absolute path to :class:`VirtualEntry`.

    Populated once by :func:`build_vfs`; read-only afterwards.
    """

    _root: str
    _entries: dict[str, VirtualEntry]

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self._root = os.path.abspath(os.fspath(root))
        self._entries = {}

    @property
    def root(self) -> str:
        return self._root

    def canonicalize(self, path: str | bytes | os.PathLike[str]) -> str:
        """Map a requested path to its VFS key form.

        :param path: Absolute or root-relative path.
        :returns: Normalized absolute path without a trailing separator.
        """

        p: str = os.fsdecode(os.fspath(path))
        if len(p) > 1 and p.endswith(os.sep) is True:
            p = p[:-1]
        if os.path.isabs(p) is True:
            return os.path.normpath(p)
        return os.path.normpath(os.path.join(self._root, p))

    def _add(self, entry: VirtualEntry) -> None:
        self._entries[entry.path] = entry

    def get(self, path: str | os.PathLike[str]) -> VirtualEntry | None:
        return self._entries.get(self.canonicalize(path))

    def __contains__(self, path: object) -> bool:
        if isinstance(path, (str, bytes, os.PathLike)) is False:
            return False
        return self.get(path) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._entries))

    def is_file(self, path: str | os.PathLike[str]) -> bool:
        entry: VirtualEntry | None = self.get(path)
        return entry is not None and entry.stat.is_file()

    def is_dir(self, path: str | os.PathLike[str]) -> bool:
        entry: VirtualEntry | None = self.get(path)
        return entry is not None and entry.stat.is_dir()

    def _prefix(self, canonical: str) -> str:
        if canonical.endswith(os.sep) is True:
            return canonical
        return canonical + os.sep

    def has_descendants(self, path: str | os.PathLike[str]) -> bool:
        prefix: str = self._prefix(self.canonicalize(path))
        for key in self._entries:
            if key.startswith(prefix) is True:
                return True
        return False

    def children(self, path: str | os.PathLike[str]) -> list[str]:
        """List the distinct immediate child names of a directory.

        :param path: Directory path.
        :returns: Child names in sorted key order, without duplicates.
        """

        prefix: str = self._prefix(self.canonicalize(path))
        names: dict[str, None] = {}
        for key in sorted(self._entries):
            if key.startswith(prefix) is False:
                continue
            rest: str = key[len(prefix) :]
            name: str = rest.split(os.sep, 1)[0]
            if len(name) > 0:
                names.setdefault(name, None)
        return list(names)


def _classify(entry: HeaderEntry, raw: bytes, working_key: str) -> tuple[ContentKind, bytes | None]:
    if bool(entry.stat.get("isFile", False)) is False:
        return ContentKind.ABSENT, None
    try:
        if bool(entry.stat.get("isBinary", False)) is True:
            return ContentKind.RAW, bytes.fromhex(raw.decode("ascii"))
        return ContentKind.TEXT, decrypt(raw, working_key)
    except (CipherInputError, UnicodeDecodeError, ValueError) as e:
        raise ContainerParseError(f"unable to decode {entry.path}: {e}") from e


def build_vfs(
    sections: ContainerSections,
    *,
    root: str | os.PathLike[str] | None = None,
    logger: logging.Logger | None = None,
) -> VirtualFileSystem:
    """Populate a :class:`VirtualFileSystem` from parsed container sections.

    :param sections: Parsed container.
    :param root: Project root the stored paths are relative to (defaults to cwd).
    :param logger: Optional logger.
    :returns: The populated VFS.
    :raises ContainerIntegrityError: If an entry's range lies outside the data region.
    :raises ContainerParseError: If an entry's content cannot be decoded.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("python_lockpack")
    vfs = VirtualFileSystem(root if root is not None else os.getcwd())
    data: memoryview = sections.data

    n_text: int = 0
    n_raw: int = 0
    for entry in sections.header.values():
        end: int = entry.offset + entry.size
        chunk: memoryview = data[entry.offset : end]
        if len(chunk) != entry.size:
            raise ContainerIntegrityError(f"unable to unlock {entry.path}.")

        kind: ContentKind
        content: bytes | None
        kind, content = _classify(entry, bytes(chunk), sections.working_key)
        if kind is ContentKind.TEXT:
            n_text += 1
        elif kind is ContentKind.RAW:
            n_raw += 1

        canonical: str = vfs.canonicalize(entry.path)
        size: int = len(content) if content is not None else 0
        vfs._add(
            VirtualEntry(
                path=canonical,
                stat=StatDescriptor.from_header(entry.stat, size=size),
                kind=kind,
                content=content,
            )
        )

    log.info(f"python-lockpack: virtual filesystem ready ({len(vfs)} entries)")
    if log.isEnabledFor(logging.DEBUG) is True:
        log.debug(f"python-lockpack: root={vfs.root} text={n_text} native={n_raw}")
    return vfs
