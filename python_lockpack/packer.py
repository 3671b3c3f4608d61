"""Container builder.

Walks a project directory and writes the container consumed by
:func:`python_lockpack.container.parse_container`:

- Text files are RC4-encrypted with the working key and stored as hex.
- Native artifacts (see :data:`NATIVE_SUFFIXES`) are stored as plain hex.
- Directories are recorded in the header with an empty data range.
"""

from dataclasses import dataclass
import datetime
import hashlib
import json
import logging
import os
import pathlib
import re
import secrets
import stat as stat_mod
import time

from python_lockpack.container import LENGTH_FIELD_SIZE, encode_length_field
from python_lockpack.crypto import encrypt


NATIVE_SUFFIXES: frozenset[str] = frozenset({".node", ".so", ".pyd", ".dylib", ".dll"})

_IGNORE_NAMES: frozenset[str] = frozenset(
    {
        "__pycache__",
        ".git",
        ".hg",
        ".svn",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
        ".venv",
        "venv",
        ".DS_Store",
    }
)

_LENGTH_FIELD_RE: re.Pattern[bytes] = re.compile(rb"^\$+\d+$")


class PackError(RuntimeError):
    """Raised when a container cannot be built."""


@dataclass(frozen=True, slots=True)
class PackStats:
    """Stats collected while packing.

    :ivar files: Number of regular files packed.
    :ivar directories: Number of directories recorded.
    :ivar native: Number of native artifacts stored unencrypted.
    :ivar data_bytes: Size of the data region.
    """

    files: int
    directories: int
    native: int
    data_bytes: int


def _iso(ts: float) -> str:
    dt = datetime.datetime.fromtimestamp(ts, tz=datetime.timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _is_native(path: pathlib.Path) -> bool:
    name: str = path.name.lower()
    if path.suffix.lower() in NATIVE_SUFFIXES:
        return True
    return ".so." in name


def _stat_record(st: os.stat_result, *, binary: bool) -> dict[str, object]:
    """Serialize a real stat result into a header ``stat`` object.

    :param st: ``os.stat`` result.
    :param binary: Whether content is stored as a native artifact.
    :returns: JSON-serializable mapping.
    """

    mode: int = st.st_mode
    return {
        "atime": _iso(st.st_atime),
        "mtime": _iso(st.st_mtime),
        "ctime": _iso(st.st_ctime),
        "birthtime": _iso(getattr(st, "st_birthtime", st.st_ctime)),
        "isFile": stat_mod.S_ISREG(mode),
        "isDirectory": stat_mod.S_ISDIR(mode),
        "isBlockDevice": stat_mod.S_ISBLK(mode),
        "isCharacterDevice": stat_mod.S_ISCHR(mode),
        "isSymbolicLink": stat_mod.S_ISLNK(mode),
        "isFIFO": stat_mod.S_ISFIFO(mode),
        "isSocket": stat_mod.S_ISSOCK(mode),
        "isBinary": binary,
    }


def looks_like_container(path: pathlib.Path) -> bool:
    """Check if a file appears to be a previously written container.

    :param path: Candidate file path.
    :returns: ``True`` if it starts with a container length field.
    """

    try:
        with open(path, "rb") as f:
            head: bytes = f.read(LENGTH_FIELD_SIZE)
    except OSError:
        return False
    return len(head) == LENGTH_FIELD_SIZE and _LENGTH_FIELD_RE.match(head) is not None


def _collect(input_dir: pathlib.Path, exclude: set[pathlib.Path]) -> list[pathlib.Path]:
    """Collect directories and files to pack, in sorted order.

    :param input_dir: Project root.
    :param exclude: Resolved paths to skip.
    :returns: Paths under ``input_dir`` (the root itself excluded).
    """

    out: list[pathlib.Path] = []
    for root_str, dirs, files in os.walk(input_dir, topdown=True):
        root_path: pathlib.Path = pathlib.Path(root_str)
        keep_dirs: list[str] = []
        for d in sorted(dirs):
            p: pathlib.Path = root_path / d
            if d in _IGNORE_NAMES or p.resolve() in exclude:
                continue
            keep_dirs.append(d)
            out.append(p)
        dirs[:] = keep_dirs

        for name in sorted(files):
            p = root_path / name
            if name in _IGNORE_NAMES or p.suffix in {".pyc", ".pyo"}:
                continue
            if p.resolve() in exclude or looks_like_container(p) is True:
                continue
            out.append(p)
    return sorted(out)


def pack_project(
    *,
    input_dir: pathlib.Path,
    entry_relpath: str,
    public_key: str,
    private_key: str | None = None,
    exclude: set[pathlib.Path] | None = None,
    logger: logging.Logger | None = None,
) -> tuple[bytes, PackStats]:
    """Build container bytes for a project directory.

    :param input_dir: Project root directory.
    :param entry_relpath: Entry-point path relative to ``input_dir``.
    :param public_key: Public secret used to protect the private key.
    :param private_key: Private key; a random one is generated if omitted.
    :param exclude: Extra paths to leave out (e.g. the output file).
    :param logger: Optional logger.
    :returns: ``(container_bytes, stats)``.
    :raises PackError: If the input or entry point is invalid.
    """

    if logger is None:
        logger = logging.getLogger("python_lockpack")

    if input_dir.is_dir() is False:
        raise PackError(f"Input directory does not exist: {input_dir}")
    if len(public_key) == 0:
        raise PackError("Public key must not be empty.")

    root: pathlib.Path = input_dir.resolve()
    entry_path: pathlib.Path = (root / entry_relpath).resolve()
    if entry_path.is_relative_to(root) is False:
        raise PackError(f"Entry point escapes the project directory: {entry_relpath!r}")
    if entry_path.is_file() is False:
        raise PackError(f"Entry point is not a file: {entry_relpath!r}")

    if private_key is None:
        private_key = secrets.token_hex(16)
    working_key: str = f"{public_key}{private_key}"

    excluded: set[pathlib.Path] = {p.resolve() for p in (exclude or set())}
    header: dict[str, dict[str, object]] = {}
    data: list[bytes] = []
    offset: int = 0
    n_files: int = 0
    n_dirs: int = 0
    n_native: int = 0

    for p in _collect(root, excluded):
        rel: str = p.relative_to(root).as_posix()
        st: os.stat_result = p.stat()
        payload: bytes = b""
        native: bool = False
        if stat_mod.S_ISREG(st.st_mode):
            raw: bytes = p.read_bytes()
            native = _is_native(p)
            if native is True:
                payload = raw.hex().encode("ascii")
                n_native += 1
            else:
                payload = encrypt(raw, working_key)
            n_files += 1
        elif stat_mod.S_ISDIR(st.st_mode):
            n_dirs += 1
        else:
            logger.warning(f"python-lockpack: skipping special file {rel}")
            continue

        header[rel] = {"offset": offset, "size": len(payload), "stat": _stat_record(st, binary=native)}
        data.append(payload)
        offset += len(payload)

    entry_rel: str = entry_path.relative_to(root).as_posix()
    sections: list[bytes] = [
        encrypt(private_key, public_key),
        encrypt(entry_rel, working_key),
        encrypt(json.dumps(header, separators=(",", ":")), working_key),
    ]

    parts: list[bytes] = []
    for section in sections:
        parts.append(encode_length_field(len(section)))
        parts.append(section)
    parts.extend(data)

    stats = PackStats(files=n_files, directories=n_dirs, native=n_native, data_bytes=offset)
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"python-lockpack: entry={entry_rel} header_entries={len(header)}")
    return b"".join(parts), stats


def write_container(
    *,
    input_dir: pathlib.Path,
    entry_relpath: str,
    output_path: pathlib.Path,
    public_key: str,
    private_key: str | None = None,
    logger: logging.Logger | None = None,
) -> PackStats:
    """Pack a project and write the container to disk.

    :param input_dir: Project root directory.
    :param entry_relpath: Entry-point path relative to ``input_dir``.
    :param output_path: Container output path.
    :param public_key: Public secret.
    :param private_key: Optional private key.
    :param logger: Optional logger.
    :returns: Pack statistics.
    :raises PackError: If packing fails.
    """

    if logger is None:
        logger = logging.getLogger("python_lockpack")

    t0: float = time.perf_counter()
    logger.info(f"python-lockpack: input={input_dir}")
    logger.info(f"python-lockpack: output={output_path}")

    blob, stats = pack_project(
        input_dir=input_dir,
        entry_relpath=entry_relpath,
        public_key=public_key,
        private_key=private_key,
        exclude={output_path},
        logger=logger,
    )

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(blob)
    t1: float = time.perf_counter()

    sha256: str = hashlib.sha256(blob).hexdigest()
    logger.info(
        f"python-lockpack: packed {stats.files} files ({stats.native} native), {stats.directories} dirs "
        f"into {output_path} ({len(blob) / 1024:.1f} KiB) in {t1 - t0:.2f}s"
    )
    logger.info(f"python-lockpack: sha256={sha256}")
    return stats
